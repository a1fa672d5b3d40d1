"""Device managers and devices backed by an NVML library handle."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from gpushare.devices import c_string
from gpushare.resource.base import Device, Manager, ResourceError

PCI_DEVICES_ROOT = Path("/sys/bus/pci/devices")

# GPUs that support MIG cannot switch to graphics mode, so they are always 3D controllers.
PCI_3D_CONTROLLER_CLASS = 0x030200

_MIB = 1024 * 1024

# Attribute names reported for a MIG device, keyed by the NVML attribute they come from.
_MIG_ATTRIBUTES = (
    ("memory", "memory_size_mb"),
    ("multiprocessors", "multiprocessor_count"),
    ("slices.gi", "gpu_instance_slice_count"),
    ("slices.ci", "compute_instance_slice_count"),
    ("engines.copy", "shared_copy_engine_count"),
    ("engines.decoder", "shared_decoder_count"),
    ("engines.encoder", "shared_encoder_count"),
    ("engines.jpeg", "shared_jpeg_count"),
    ("engines.ofa", "shared_ofa_count"),
)


def _normalise_bus_id(raw: Any) -> str:
    text = raw.split("\x00", 1)[0] if isinstance(raw, str) else c_string(raw)
    bus_id = text.lower()
    if bus_id != "0000":
        bus_id = bus_id.removeprefix("0000")
    return bus_id


def _read_pci_class(sysfs_root: Path, bus_id: str) -> int:
    path = Path(sysfs_root) / bus_id / "class"
    try:
        content = path.read_text().strip()
    except OSError as err:
        raise ResourceError(f"unable to read PCI device class for {bus_id}: {err}") from err
    try:
        return int(content, 16)
    except ValueError as err:
        raise ResourceError(f"unable to parse PCI device class {content!r} for {bus_id}") from err


def total_memory(attributes: Mapping[str, Any]) -> int:
    """Return the 'memory' attribute of a MIG device's attributes."""
    if "memory" not in attributes:
        raise ResourceError("no 'memory' attribute available")
    value = attributes["memory"]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ResourceError(f"unsupported attribute type {type(value).__name__}")
    return value


@dataclass
class NvmlDevice(Device):
    """A full GPU behind a device-library handle.

    The handle offers ``name()``, ``memory_info()`` (with ``total``),
    ``cuda_compute_capability()``, ``is_mig_enabled()``, ``is_mig_capable()``,
    ``mig_devices()`` and ``pci_bus_id()``.
    """

    handle: Any
    device_lib: Any = None
    sysfs_root: Path = field(default=PCI_DEVICES_ROOT)

    def mig_devices(self) -> list[Device]:
        return [
            NvmlMigDevice(mig, self.device_lib, self.sysfs_root)
            for mig in self.handle.mig_devices()
        ]

    def cuda_compute_capability(self) -> tuple[int, int]:
        major, minor = self.handle.cuda_compute_capability()
        return major, minor

    def attributes(self) -> dict[str, Any]:
        raise ResourceError("attributes are not supported for non-MIG devices")

    def parent_device(self) -> Device:
        raise ResourceError("parent device is not supported for non-MIG devices")

    def name(self) -> str:
        return self.handle.name()

    def total_memory_mb(self) -> int:
        return self.handle.memory_info().total // _MIB

    def is_mig_enabled(self) -> bool:
        return bool(self.handle.is_mig_enabled())

    def is_mig_capable(self) -> bool:
        return bool(self.handle.is_mig_capable())

    def pci_class(self) -> int:
        """Return the PCI class code read from sysfs for the device's bus ID."""
        bus_id = _normalise_bus_id(self.handle.pci_bus_id())
        return _read_pci_class(self.sysfs_root, bus_id)


@dataclass
class NvmlMigDevice(Device):
    """A MIG device behind a device-library handle.

    The handle offers ``attributes()``, ``profile()`` and ``parent_device()``;
    ``device_lib.new_device(handle)`` turns a raw parent handle into a device.
    """

    handle: Any
    device_lib: Any = None
    sysfs_root: Path = field(default=PCI_DEVICES_ROOT)

    def mig_devices(self) -> list[Device]:
        raise ResourceError("MIG devices are not available for MIG devices")

    def cuda_compute_capability(self) -> tuple[int, int]:
        raise ResourceError("CUDA compute capability is not supported for MIG devices")

    def attributes(self) -> dict[str, Any]:
        raw = self.handle.attributes()
        return {key: getattr(raw, source) for key, source in _MIG_ATTRIBUTES}

    def parent_device(self) -> Device:
        raw_parent = self.handle.parent_device()
        try:
            parent = self.device_lib.new_device(raw_parent)
        except Exception as err:
            raise ResourceError(f"failed to construct device: {err}") from err
        return NvmlDevice(parent, self.device_lib, self.sysfs_root)

    def name(self) -> str:
        """Return the MIG profile, with '+' replaced by '.'."""
        try:
            profile = self.handle.profile()
        except Exception as err:
            raise ResourceError(f"failed to get MIG profile: {err}") from err
        return str(profile).replace("+", ".")

    def total_memory_mb(self) -> int:
        return total_memory(self.attributes())

    def is_mig_enabled(self) -> bool:
        raise ResourceError("MIG enabled state is not supported for MIG devices")

    def is_mig_capable(self) -> bool:
        raise ResourceError("MIG capability is not supported for MIG devices")

    def pci_class(self) -> int:
        return PCI_3D_CONTROLLER_CLASS


@dataclass
class NvmlManager(Manager):
    """Discovers and queries devices through NVML.

    ``nvml`` offers ``init()``, ``shutdown()``, ``system_driver_version()`` and
    ``system_cuda_driver_version()``; ``device_lib.devices()`` yields GPU handles.
    """

    nvml: Any
    device_lib: Any

    def init(self) -> None:
        self.nvml.init()

    def shutdown(self) -> None:
        self.nvml.shutdown()

    def devices(self) -> list[Device]:
        return [NvmlDevice(handle, self.device_lib) for handle in self.device_lib.devices()]

    def driver_version(self) -> str:
        return self.nvml.system_driver_version()

    def cuda_driver_version(self) -> tuple[int, int]:
        version = int(self.nvml.system_cuda_driver_version())
        return version // 1000, version % 1000 // 10