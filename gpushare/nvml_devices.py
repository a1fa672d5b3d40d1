"""Device information for NVML-managed GPUs, MIG devices and WSL GPUs."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Union

from gpushare.devices import c_string

NVIDIA_PROC_DRIVER_PATH = "/proc/driver/nvidia"
NVIDIA_CAPABILITIES_PATH = NVIDIA_PROC_DRIVER_PATH + "/capabilities"
PCI_DEVICES_ROOT = Path("/sys/bus/pci/devices")

_SIGNED = re.compile(r"[+-]?[0-9]+")

CapabilityPaths = Union[Mapping[str, str], Callable[[], Mapping[str, str]]]


def _bus_id(raw: Any) -> str:
    if isinstance(raw, str):
        return raw.split("\x00", 1)[0]
    return c_string(raw)


def _device_node(minor: int) -> str:
    return f"/dev/nvidia{minor}"


@dataclass
class NvmlGpuDevice:
    """Device information for a full GPU behind an NVML device handle.

    The handle offers ``uuid()``, ``minor_number()``, ``cuda_compute_capability()``,
    ``pci_bus_id()`` and ``memory_info()`` (with a ``total`` attribute).
    """

    device: Any
    sysfs_root: Path = field(default=PCI_DEVICES_ROOT)

    def uuid(self) -> str:
        return self.device.uuid()

    def paths(self) -> list[str]:
        try:
            minor = self.device.minor_number()
        except Exception as err:
            raise RuntimeError(f"error getting GPU device minor number: {err}") from err
        return [_device_node(minor)]

    def numa_node(self) -> Optional[int]:
        """Return the NUMA node from sysfs, or None if it is unknown or negative."""
        try:
            raw = self.device.pci_bus_id()
        except Exception as err:
            raise RuntimeError(f"error getting PCI Bus Info of device: {err}") from err

        bus_id = _bus_id(raw).removeprefix("0000").lower()
        try:
            content = (Path(self.sysfs_root) / bus_id / "numa_node").read_text()
        except OSError:
            return None

        value = content.strip()
        if not _SIGNED.fullmatch(value):
            raise ValueError(f"error parsing value for NUMA node: {value!r}")
        node = int(value)
        return node if node >= 0 else None

    def total_memory(self) -> int:
        return self.device.memory_info().total

    def compute_capability(self) -> str:
        major, minor = self.device.cuda_compute_capability()
        return f"{major}.{minor}"


@dataclass
class NvmlMigDevice:
    """Device information for a MIG device behind an NVML device handle.

    The handle additionally offers ``gpu_instance_id()``, ``compute_instance_id()``
    and ``parent_device()``. ``capability_paths`` maps capability files under
    /proc to their device nodes, or is a callable returning such a mapping.
    """

    device: Any
    capability_paths: CapabilityPaths = field(default_factory=dict)
    sysfs_root: Path = field(default=PCI_DEVICES_ROOT)

    def uuid(self) -> str:
        return self.device.uuid()

    def _parent(self, message: str) -> Any:
        try:
            return self.device.parent_device()
        except Exception as err:
            raise RuntimeError(f"{message}: {err}") from err

    def paths(self) -> list[str]:
        try:
            source = self.capability_paths
            cap_paths = source() if callable(source) else source
        except Exception as err:
            raise RuntimeError(f"error getting MIG capability device paths: {err}") from err

        try:
            gi = self.device.gpu_instance_id()
        except Exception as err:
            raise RuntimeError(f"error getting GPU Instance ID: {err}") from err
        try:
            ci = self.device.compute_instance_id()
        except Exception as err:
            raise RuntimeError(f"error getting Compute Instance ID: {err}") from err

        parent = self._parent("error getting parent device")
        try:
            minor = parent.minor_number()
        except Exception as err:
            raise RuntimeError(f"error getting GPU device minor number: {err}") from err

        gi_cap_path = f"{NVIDIA_CAPABILITIES_PATH}/gpu{minor}/mig/gi{gi}/access"
        if gi_cap_path not in cap_paths:
            raise RuntimeError(f"missing MIG GPU instance capability path: {gi_cap_path}")

        ci_cap_path = f"{NVIDIA_CAPABILITIES_PATH}/gpu{minor}/mig/gi{gi}/ci{ci}/access"
        if ci_cap_path not in cap_paths:
            raise RuntimeError(f"missing MIG compute instance capability path: {ci_cap_path}")

        return [_device_node(minor), cap_paths[gi_cap_path], cap_paths[ci_cap_path]]

    def numa_node(self) -> Optional[int]:
        """Return the NUMA node of the parent GPU."""
        parent = self._parent("error getting parent GPU device from MIG device")
        return NvmlGpuDevice(parent, self.sysfs_root).numa_node()

    def total_memory(self) -> int:
        return self.device.memory_info().total

    def compute_capability(self) -> str:
        """Return the compute capability of the parent GPU."""
        parent = self._parent("failed to get parent device")
        return NvmlGpuDevice(parent, self.sysfs_root).compute_capability()


class WslDevice(NvmlGpuDevice):
    """A GPU exposed through WSL, reachable only via /dev/dxg."""

    def paths(self) -> list[str]:
        return ["/dev/dxg"]


def new_nvml_gpu_device(index: int, gpu: Any) -> tuple[str, NvmlGpuDevice]:
    return str(index), NvmlGpuDevice(gpu)


def new_wsl_gpu_device(index: int, gpu: Any) -> tuple[str, WslDevice]:
    return str(index), WslDevice(gpu)


def new_mig_device(
    gpu_index: int, mig_index: int, mig: Any, capability_paths: CapabilityPaths
) -> tuple[str, NvmlMigDevice]:
    return f"{gpu_index}:{mig_index}", NvmlMigDevice(mig, capability_paths)