"""Reading NVIDIA PCI devices and their vendor-specific capability from sysfs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

# Base path for all PCI devices under sysfs.
PCI_DEVICES_ROOT = Path("/sys/bus/pci/devices")
# Offset of the status byte.
PCI_STATUS_BYTE = 0x06
# Status bit set when the capability list is supported.
PCI_STATUS_CAPABILITY_LIST = 0x10
# Offset of the first capability list entry.
PCI_CAPABILITY_LIST = 0x34
# Offsets within a capability entry.
PCI_CAPABILITY_LIST_ID = 0
PCI_CAPABILITY_LIST_NEXT = 1
PCI_CAPABILITY_LENGTH = 2
# Capability ID of a vendor-specific capability.
PCI_CAPABILITY_VENDOR_SPECIFIC_ID = 0x09
# PCI vendor ID of NVIDIA.
PCI_NVIDIA_VENDOR_ID = "0x10de"

_FULL_CONFIG_SPACE = 256


def get_byte(buffer: bytes, pos: int) -> int:
    """Return the byte at pos."""
    return buffer[pos]


def get_word(buffer: bytes, pos: int) -> int:
    """Return the little-endian 16-bit value at pos."""
    return buffer[pos] | (buffer[pos + 1] << 8)


def get_long(buffer: bytes, pos: int) -> int:
    """Return the little-endian 32-bit value at pos."""
    return (
        buffer[pos]
        | buffer[pos + 1] << 8
        | buffer[pos + 2] << 16
        | buffer[pos + 3] << 24
    )


@dataclass
class PCIDevice:
    """A single PCI device and its configuration space."""

    path: str
    address: str
    device_class: str
    vendor: str
    config: bytes

    def vendor_specific_capability(self) -> Optional[bytes]:
        """Return the vendor-specific capability, or None if the device has none.

        Raises ValueError if the full configuration space was not read.
        """
        config = self.config
        if len(config) < _FULL_CONFIG_SPACE:
            raise ValueError(
                f"entire PCI configuration is not read for device {self.address}. "
                "Please run GFD with privileged mode to read complete PCI configuration data"
            )

        if config[PCI_STATUS_BYTE] & PCI_STATUS_CAPABILITY_LIST == 0:
            return None

        visited: set[int] = set()
        pos = get_byte(config, PCI_CAPABILITY_LIST)
        while pos != 0:
            cap_id = get_byte(config, pos + PCI_CAPABILITY_LIST_ID)
            following = get_byte(config, pos + PCI_CAPABILITY_LIST_NEXT)
            length = get_byte(config, pos + PCI_CAPABILITY_LENGTH)

            if pos in visited:
                # The chain loops.
                break
            if cap_id == 0xFF:
                # The chain is broken.
                break
            if cap_id == PCI_CAPABILITY_VENDOR_SPECIFIC_ID:
                start = pos + PCI_CAPABILITY_LIST_ID
                return bytes(config[start : start + length])

            visited.add(pos)
            pos = following

        return None


def _read(path: Path, what: str, address: str) -> bytes:
    try:
        return path.read_bytes()
    except OSError as err:
        raise RuntimeError(f"unable to read {what} for {address}: {err}") from err


@dataclass
class NvidiaPCILib:
    """Lists the NVIDIA PCI devices found under a sysfs PCI devices directory."""

    root: Union[str, os.PathLike] = PCI_DEVICES_ROOT

    def devices(self) -> list[PCIDevice]:
        """Return the NVIDIA PCI devices, ordered by address."""
        root = Path(self.root)
        try:
            entries = sorted(os.listdir(root))
        except OSError as err:
            raise RuntimeError(f"unable to read PCI bus devices: {err}") from err

        devices: list[PCIDevice] = []
        for address in entries:
            device_path = root / address
            vendor = _read(device_path / "vendor", "PCI device vendor id", address)
            vendor_id = vendor.decode("latin-1").strip()
            if vendor_id != PCI_NVIDIA_VENDOR_ID:
                continue

            device_class = _read(device_path / "class", "PCI device class", address)
            config = _read(device_path / "config", "PCI configuration space", address)

            devices.append(
                PCIDevice(
                    path=str(device_path),
                    address=address,
                    device_class=device_class.decode("latin-1")[:4],
                    vendor=vendor_id,
                    config=config,
                )
            )
        return devices


def _config_space(segments: dict[int, str]) -> bytes:
    buffer = bytearray(_FULL_CONFIG_SPACE)
    for offset, hex_data in segments.items():
        data = bytes.fromhex(hex_data)
        buffer[offset : offset + len(data)] = data
    return bytes(buffer)


_PASSTHROUGH_CONFIG = _config_space(
    {
        0x00: "de108a1107041000a100000300f80000",
        0x10: "000000ec0c0000e0000000000c0000ea",
        0x20: "0000000001c1000000000000de101410",
        0x30: "000000ee600000000000000005010000",
        0x40: "de101410000000000000000000000000",
        0x50: "0100000001000000ced6230000000000",
        0x60: "0168030008000000057881000070e6fe",
        0x70: "000000000043000010b40200e18d6400",
        0x80: "10290000033d45100000011100000000",
        0x90: "00000000000000000000000013000000",
        0xA0: "000000000e00000003003e0000000000",
        0xB0: "0000000009001401",
    }
)

_VGPU_CONFIG = _config_space(
    {
        0x00: "de10b81e0205ff06a100000300000000",
        0x10: "000000fc0c0000d000000000040000fa",
        0x20: "000000000000000000000000de100f13",
        0x30: "00000000d000000000000000" "0a010000",
        0x50: "0100000001000000ced6230000000000",
        0x60: "0000000000000000050081000000e0fe",
        0x70: "000000004e400000",
        0xD0: "09681b564600163436302e313600000000723436305f3030",
    }
)


def _mock_devices() -> list[PCIDevice]:
    return [
        PCIDevice(
            path="",
            address="passthrough",
            device_class="300",
            vendor=PCI_NVIDIA_VENDOR_ID,
            config=_PASSTHROUGH_CONFIG,
        ),
        PCIDevice(
            path="",
            address="vgpu",
            device_class="300",
            vendor=PCI_NVIDIA_VENDOR_ID,
            config=_VGPU_CONFIG,
        ),
    ]


@dataclass
class MockNvidiaPCI:
    """A fixed set of PCI devices: one passed-through GPU and one vGPU."""

    pci_devices: list[PCIDevice] = field(default_factory=_mock_devices)

    def devices(self) -> list[PCIDevice]:
        return self.pci_devices