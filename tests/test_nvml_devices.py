from types import SimpleNamespace

import pytest

from gpushare.devices import build_device
from gpushare.nvml_devices import (
    NvmlGpuDevice,
    NvmlMigDevice,
    WslDevice,
    new_mig_device,
    new_nvml_gpu_device,
    new_wsl_gpu_device,
)

BUS_ID = "00000000:3B:00.0"
SYSFS_BUS_ID = "0000:3b:00.0"


class FakeHandle:
    def __init__(
        self,
        uuid="GPU-made-up-0",
        minor=3,
        capability=(8, 0),
        bus_id=BUS_ID,
        memory=1024,
        parent=None,
        gi=1,
        ci=0,
        fail_parent=False,
    ):
        self._uuid = uuid
        self._minor = minor
        self._capability = capability
        self._bus_id = bus_id
        self._memory = memory
        self._parent = parent
        self._gi = gi
        self._ci = ci
        self._fail_parent = fail_parent

    def uuid(self):
        return self._uuid

    def minor_number(self):
        return self._minor

    def cuda_compute_capability(self):
        return self._capability

    def pci_bus_id(self):
        return self._bus_id

    def memory_info(self):
        return SimpleNamespace(total=self._memory)

    def parent_device(self):
        if self._fail_parent:
            raise RuntimeError("no parent")
        return self._parent

    def gpu_instance_id(self):
        return self._gi

    def compute_instance_id(self):
        return self._ci


def _numa_file(root, content):
    directory = root / SYSFS_BUS_ID
    directory.mkdir()
    (directory / "numa_node").write_text(content)


def test_gpu_device_basic_information():
    device = NvmlGpuDevice(FakeHandle(minor=3, capability=(7, 5), memory=4096))
    assert device.uuid() == "GPU-made-up-0"
    assert device.paths() == ["/dev/nvidia3"]
    assert device.compute_capability() == "7.5"
    assert device.total_memory() == 4096


def test_numa_node_read_from_sysfs(tmp_path):
    _numa_file(tmp_path, "1\n")
    assert NvmlGpuDevice(FakeHandle(), tmp_path).numa_node() == 1


def test_numa_node_from_c_string_bus_id(tmp_path):
    _numa_file(tmp_path, "0")
    raw = [ord(c) for c in BUS_ID] + [0, 0, 0]
    assert NvmlGpuDevice(FakeHandle(bus_id=raw), tmp_path).numa_node() == 0


def test_negative_numa_node_is_none(tmp_path):
    _numa_file(tmp_path, "-1")
    assert NvmlGpuDevice(FakeHandle(), tmp_path).numa_node() is None


def test_missing_numa_node_is_none(tmp_path):
    assert NvmlGpuDevice(FakeHandle(), tmp_path).numa_node() is None


def test_malformed_numa_node_raises(tmp_path):
    _numa_file(tmp_path, "garbage")
    with pytest.raises(ValueError):
        NvmlGpuDevice(FakeHandle(), tmp_path).numa_node()


def _capability_paths(minor, gi, ci):
    base = f"/proc/driver/nvidia/capabilities/gpu{minor}/mig/gi{gi}"
    return {
        f"{base}/access": "/dev/nvidia-caps/nvidia-cap-gi",
        f"{base}/ci{ci}/access": "/dev/nvidia-caps/nvidia-cap-ci",
    }


def test_mig_device_paths():
    parent = FakeHandle(minor=0)
    mig = FakeHandle(uuid="MIG-made-up", parent=parent, gi=2, ci=1)
    device = NvmlMigDevice(mig, _capability_paths(0, 2, 1))
    assert device.paths() == [
        "/dev/nvidia0",
        "/dev/nvidia-caps/nvidia-cap-gi",
        "/dev/nvidia-caps/nvidia-cap-ci",
    ]


def test_mig_device_paths_accept_callable():
    parent = FakeHandle(minor=0)
    mig = FakeHandle(parent=parent, gi=2, ci=1)
    device = NvmlMigDevice(mig, lambda: _capability_paths(0, 2, 1))
    assert device.paths()[0] == "/dev/nvidia0"


def test_mig_device_paths_missing_capability():
    parent = FakeHandle(minor=0)
    mig = FakeHandle(parent=parent, gi=2, ci=1)
    paths = _capability_paths(0, 2, 1)
    paths.pop("/proc/driver/nvidia/capabilities/gpu0/mig/gi2/ci1/access")
    with pytest.raises(RuntimeError, match="missing MIG"):
        NvmlMigDevice(mig, paths).paths()


def test_mig_device_uses_parent_information(tmp_path):
    _numa_file(tmp_path, "1")
    parent = FakeHandle(capability=(9, 0))
    mig = FakeHandle(uuid="MIG-made-up", parent=parent, capability=(0, 0), memory=512)
    device = NvmlMigDevice(mig, {}, tmp_path)
    assert device.compute_capability() == "9.0"
    assert device.numa_node() == 1
    assert device.total_memory() == 512
    assert device.uuid() == "MIG-made-up"


def test_mig_device_parent_failure():
    mig = FakeHandle(fail_parent=True)
    with pytest.raises(RuntimeError, match="failed to get parent device"):
        NvmlMigDevice(mig, {}).compute_capability()


def test_wsl_device_paths_and_delegation():
    device = WslDevice(FakeHandle(capability=(8, 6)))
    assert device.paths() == ["/dev/dxg"]
    assert device.compute_capability() == "8.6"
    assert device.uuid() == "GPU-made-up-0"


def test_factories_build_indices():
    gpu = FakeHandle()
    index, info = new_nvml_gpu_device(2, gpu)
    assert index == "2"
    assert isinstance(info, NvmlGpuDevice) and not isinstance(info, WslDevice)
    index, info = new_wsl_gpu_device(1, gpu)
    assert index == "1"
    assert info.paths() == ["/dev/dxg"]
    index, info = new_mig_device(1, 2, gpu, {})
    assert index == "1:2"
    assert info.device is gpu


def test_build_device_from_nvml_information(tmp_path):
    index, info = new_nvml_gpu_device(0, FakeHandle(minor=3))
    info.sysfs_root = tmp_path
    device = build_device(index, info)
    assert device.id == "GPU-made-up-0"
    assert device.paths == ["/dev/nvidia3"]
    assert device.numa_node is None
    assert device.aligned_allocation_supported()


def test_wsl_device_is_not_aligned(tmp_path):
    index, info = new_wsl_gpu_device(0, FakeHandle())
    info.sysfs_root = tmp_path
    device = build_device(index, info)
    assert not device.aligned_allocation_supported()