import pytest

from gpushare.vgpu.pciutil import MockNvidiaPCI, PCIDevice, get_byte, get_word
from gpushare.vgpu.vgpu import VGPUDevice, VGPUInfo, VGPULib, new_mock_vgpu


def test_is_vgpu_device_on_mock_devices():
    lib = new_mock_vgpu()
    for device in lib.pci.devices():
        assert f"0x{get_word(device.config, 0):x}" == "0x10de"
        capability = device.vendor_specific_capability()
        assert len(capability) != 0
        if device.address == "passthrough":
            assert lib.is_vgpu_device(capability) is False
            assert len(capability) == 20
        if device.address == "vgpu":
            assert len(capability) == 27
            assert get_byte(capability, 0) == 9
            assert lib.is_vgpu_device(capability) is True


def test_devices_returns_only_vgpus():
    devices = new_mock_vgpu().devices()
    assert [d.pci.address for d in devices] == ["vgpu"]


def test_vgpu_get_info():
    for device in new_mock_vgpu().devices():
        if device.pci.address == "vgpu":
            assert len(device.pci.config) == 256
            assert len(device.capability) == 27
            assert device.capability[0] == 9
            info = device.info()
            assert info == VGPUInfo(host_driver_version="460.16", host_driver_branch="r460_00")


def test_is_vgpu_device_short_capability():
    lib = new_mock_vgpu()
    assert lib.is_vgpu_device(bytes([0x09, 0x00, 0x05, 0x56])) is False
    assert lib.is_vgpu_device(bytes([0x09, 0x00, 0x05, 0x56, 0x46])) is True
    assert lib.is_vgpu_device(bytes([0x09, 0x00, 0x05, 0x46, 0x56])) is False


def _pci(address: str = "dev") -> PCIDevice:
    return PCIDevice(path="", address=address, device_class="0x03", vendor="0x10de", config=bytes(256))


def test_info_with_empty_capability_raises():
    with pytest.raises(ValueError, match="not populated for device dev"):
        VGPUDevice(pci=_pci(), capability=b"").info()


def test_info_without_version_record_raises():
    capability = bytes([0x09, 0x00, 0x10, 0x56, 0x46, 0x01, 0x03, 0x00, 0x00, 0x00])
    with pytest.raises(ValueError, match="cannot find driver version record"):
        VGPUDevice(pci=_pci(), capability=capability).info()


def test_info_follows_records_to_version_record():
    capability = bytearray([0x09, 0x00, 0x00, 0x56, 0x46])
    capability += bytes([0x07, 0x03, 0xAA])  # a record of another type, length 3
    capability += bytes([0x00, 0x16])
    capability += b"535.54\x00\x00\x00\x00"
    capability += b"r535_00\x00\x00\x00"
    info = VGPUDevice(pci=_pci(), capability=bytes(capability)).info()
    assert info.host_driver_version == "535.54"
    assert info.host_driver_branch == "r535_00"


class _FailingPCI:
    def devices(self):
        raise OSError("no bus")


def test_devices_wraps_pci_errors():
    with pytest.raises(RuntimeError, match="error getting NVIDIA specific PCI devices"):
        VGPULib(_FailingPCI()).devices()


def test_devices_skips_devices_without_capability():
    without = _pci("plain")
    lib = VGPULib(MockNvidiaPCI([without] + MockNvidiaPCI().devices()))
    assert [d.pci.address for d in lib.devices()] == ["vgpu"]


def test_devices_wraps_capability_errors():
    short = PCIDevice(path="", address="short", device_class="0x03", vendor="0x10de", config=bytes(16))
    with pytest.raises(RuntimeError, match="unable to read vendor specific capability for short"):
        VGPULib(MockNvidiaPCI([short])).devices()