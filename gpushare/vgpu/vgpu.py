"""Detecting vGPU devices and reading the host driver information they carry."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from gpushare.vgpu.pciutil import MockNvidiaPCI, PCIDevice

# Offset of the first record in the vGPU capability.
VGPU_CAPABILITY_RECORD_START = 5
# Maximum lengths of the host driver version and branch.
HOST_DRIVER_VERSION_LENGTH = 10
HOST_DRIVER_BRANCH_LENGTH = 10

_VGPU_SIGNATURE = b"VF"


class _PCISource(Protocol):
    def devices(self) -> list[PCIDevice]: ...


@dataclass(frozen=True)
class VGPUInfo:
    """The vGPU driver running on the hypervisor host."""

    host_driver_version: str
    host_driver_branch: str


def _text(data: bytes) -> str:
    return data.decode("latin-1").strip("\x00")


@dataclass
class VGPUDevice:
    """A PCI device exposed to the guest as a vGPU."""

    pci: PCIDevice
    capability: bytes

    def info(self) -> VGPUInfo:
        """Return the host driver version and branch from the capability records."""
        cap = self.capability
        address = self.pci.address
        if not cap:
            raise ValueError(f"vendor capability record is not populated for device {address}")

        pos = VGPU_CAPABILITY_RECORD_START
        record = cap[pos] if pos < len(cap) else None
        while record and pos < len(cap):
            if pos + 1 >= len(cap) or cap[pos + 1] == 0:
                record = None
                break
            pos += cap[pos + 1]
            record = cap[pos] if pos < len(cap) else None

        data_start = pos + 2
        branch_start = data_start + HOST_DRIVER_VERSION_LENGTH
        end = branch_start + HOST_DRIVER_BRANCH_LENGTH
        if record != 0 or end > len(cap):
            raise ValueError(
                "cannot find driver version record in vendor specific capability "
                f"for device {address}"
            )

        return VGPUInfo(
            host_driver_version=_text(cap[data_start:branch_start]),
            host_driver_branch=_text(cap[branch_start:end]),
        )


@dataclass
class VGPULib:
    """Finds the vGPU devices among the NVIDIA PCI devices attached to the guest."""

    pci: _PCISource

    def devices(self) -> list[VGPUDevice]:
        try:
            pci_devices = self.pci.devices()
        except Exception as err:
            raise RuntimeError(f"error getting NVIDIA specific PCI devices: {err}") from err

        vgpus: list[VGPUDevice] = []
        for device in pci_devices:
            try:
                capability = device.vendor_specific_capability()
            except Exception as err:
                raise RuntimeError(
                    f"unable to read vendor specific capability for {device.address}: {err}"
                ) from err
            if capability is None:
                continue
            if self.is_vgpu_device(capability):
                vgpus.append(VGPUDevice(pci=device, capability=capability))
        return vgpus

    def is_vgpu_device(self, capability: bytes) -> bool:
        """Return True if the capability carries the vGPU signature "VF"."""
        if len(capability) < 5:
            return False
        return bytes(capability[3:5]) == _VGPU_SIGNATURE


def new_mock_vgpu() -> VGPULib:
    """Return a VGPULib over the mock PCI devices."""
    return VGPULib(MockNvidiaPCI())