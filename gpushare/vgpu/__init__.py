"""PCI configuration space reading, vGPU detection and host driver information."""