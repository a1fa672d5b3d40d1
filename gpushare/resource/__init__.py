"""Device managers and devices: interfaces, a null manager, a fallback wrapper and NVML-backed types."""