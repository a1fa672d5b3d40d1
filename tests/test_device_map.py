import pytest

from gpushare.device_map import (
    DeviceMap,
    DeviceMapBuilder,
    DeviceMapError,
    MigStrategy,
    ReplicatedResource,
    ResourceRule,
    update_device_map_with_replicas,
)
from gpushare.devices import Device, Devices


class FakeMig:
    def __init__(self, uuid, profile, attributes=None):
        self._uuid = uuid
        self._profile = profile
        self._attributes = attributes if attributes is not None else {"memory": 5}

    def profile(self):
        return self._profile

    def attributes(self):
        return self._attributes

    def uuid(self):
        return self._uuid

    def paths(self):
        return ["/dev/nvidia0"]

    def numa_node(self):
        return None

    def total_memory(self):
        return 5

    def compute_capability(self):
        return "8.0"


class FakeGpu:
    def __init__(self, uuid, name, migs=None, mig_enabled=False):
        self._uuid = uuid
        self._name = name
        self._migs = migs or []
        self._mig_enabled = mig_enabled

    def name(self):
        return self._name

    def is_mig_enabled(self):
        return self._mig_enabled

    def mig_devices(self):
        return list(self._migs)

    def uuid(self):
        return self._uuid

    def paths(self):
        return ["/dev/nvidia" + self._uuid[-1]]

    def numa_node(self):
        return 0

    def total_memory(self):
        return 1024

    def compute_capability(self):
        return "8.0"


class FakeLib:
    def __init__(self, gpus):
        self._gpus = gpus

    def devices(self):
        return list(self._gpus)


device0 = Device(id="0")
device0_with_index = Device(id="0", index="index")
device1 = Device(id="1")


@pytest.mark.parametrize(
    "device_map, key, value, expected",
    [
        ({}, "resource", device0, {"resource": {"0": device0}}),
        (
            {"resource": {"0": device0}},
            "resource",
            device1,
            {"resource": {"0": device0, "1": device1}},
        ),
        (
            {"resource": {"0": device0}},
            "resource1",
            device0,
            {"resource": {"0": device0}, "resource1": {"0": device0}},
        ),
        (
            {"resource": {"0": device0}},
            "resource",
            device0_with_index,
            {"resource": {"0": device0_with_index}},
        ),
    ],
    ids=["empty", "existing-resource", "new-resource", "overwrite"],
)
def test_device_map_insert(device_map, key, value, expected):
    dm = DeviceMap({k: Devices(v) for k, v in device_map.items()})
    dm.insert(key, value)
    assert dm == expected


def test_merge_and_is_empty():
    a = DeviceMap()
    assert a.is_empty()
    b = DeviceMap({"gpu": Devices({"1": device1})})
    a.merge(b)
    assert a == {"gpu": {"1": device1}}
    assert not a.is_empty()
    assert DeviceMap({"gpu": Devices()}).is_empty()


def test_resource_rule_matches():
    assert ResourceRule("*", "gpu").matches("Tesla T4")
    assert ResourceRule("1g.5gb", "mig").matches("1g.5gb")
    assert not ResourceRule("A100*", "gpu").matches("Tesla T4")


def _two_gpu_map():
    return DeviceMap(
        {
            "gpu": Devices(
                {
                    "GPU-a": Device(id="GPU-a", index="0"),
                    "GPU-b": Device(id="GPU-b", index="1"),
                }
            )
        }
    )


def test_ids_to_replicate_variants():
    dm = _two_gpu_map()
    assert dm.ids_to_replicate(ReplicatedResource("gpu", 2)) == ["GPU-a", "GPU-b"]
    assert dm.ids_to_replicate(ReplicatedResource("gpu", 2, count=1)) == ["GPU-a"]
    assert dm.ids_to_replicate(ReplicatedResource("gpu", 2, device_refs=["1"])) == ["GPU-b"]
    assert dm.ids_to_replicate(ReplicatedResource("gpu", 2, device_refs=["GPU-a"])) == ["GPU-a"]
    assert dm.ids_to_replicate(ReplicatedResource("other", 2)) == []


def test_ids_to_replicate_errors():
    dm = _two_gpu_map()
    with pytest.raises(DeviceMapError, match="requested 3 devices"):
        dm.ids_to_replicate(ReplicatedResource("gpu", 2, count=3))
    with pytest.raises(DeviceMapError, match="no matching device with UUID"):
        dm.ids_to_replicate(ReplicatedResource("gpu", 2, device_refs=["GPU-z"]))
    with pytest.raises(DeviceMapError, match="no matching device at index"):
        dm.ids_to_replicate(ReplicatedResource("gpu", 2, device_refs=["7"]))


def test_update_with_replicas_partial():
    dm = _two_gpu_map()
    updated = update_device_map_with_replicas([ReplicatedResource("gpu", 2, count=1)], dm)
    assert sorted(updated["gpu"]) == ["GPU-a::0", "GPU-a::1", "GPU-b"]
    assert updated["gpu"]["GPU-a::1"].replicas == 2
    assert updated["gpu"]["GPU-a::1"].uuid() == "GPU-a"
    assert updated["gpu"]["GPU-b"].replicas == 0


def test_update_with_replicas_rename_and_untouched():
    dm = _two_gpu_map()
    dm.insert("other", Device(id="X"))
    updated = update_device_map_with_replicas(
        [ReplicatedResource("gpu", 3, rename="gpu.shared")], dm
    )
    assert len(updated["gpu.shared"]) == 6
    assert "gpu" not in updated
    assert list(updated["other"]) == ["X"]


def test_update_with_replicas_error_wrapped():
    with pytest.raises(DeviceMapError, match="unable to get IDs of devices to replicate"):
        update_device_map_with_replicas(
            [ReplicatedResource("gpu", 2, count=5)], _two_gpu_map()
        )


def test_builder_full_gpus():
    lib = FakeLib([FakeGpu("GPU-0", "Tesla T4"), FakeGpu("GPU-1", "Tesla T4")])
    builder = DeviceMapBuilder(lib, "none", [ResourceRule("*", "gpu")], [], [])
    dm = builder.build()
    assert sorted(dm["gpu"]) == ["GPU-0", "GPU-1"]
    assert dm["gpu"]["GPU-1"].index == "1"
    assert dm["gpu"]["GPU-0"].numa_node == 0


def test_builder_unmatched_gpu_name():
    lib = FakeLib([FakeGpu("GPU-0", "Tesla T4")])
    builder = DeviceMapBuilder(lib, MigStrategy.NONE, [ResourceRule("A100*", "gpu")], [], [])
    with pytest.raises(DeviceMapError, match="does not match any resource patterns"):
        builder.build()


def test_builder_mixed_mig():
    migs = [FakeMig("MIG-0", "1g.5gb"), FakeMig("MIG-1", "2g.10gb", {"memory": 10})]
    lib = FakeLib(
        [FakeGpu("GPU-0", "A100", migs=migs, mig_enabled=True), FakeGpu("GPU-1", "A100")]
    )
    builder = DeviceMapBuilder(
        lib,
        "mixed",
        [ResourceRule("*", "gpu")],
        [ResourceRule("1g.5gb", "mig-1g.5gb"), ResourceRule("2g.10gb", "mig-2g.10gb")],
        [],
    )
    dm = builder.build()
    assert list(dm["gpu"]) == ["GPU-1"]
    assert dm["mig-1g.5gb"]["MIG-0"].index == "0:0"
    assert dm["mig-2g.10gb"]["MIG-1"].index == "0:1"
    assert dm["mig-1g.5gb"]["MIG-0"].is_mig_device()


def test_builder_single_requires_uniform_mig_enabled():
    lib = FakeLib(
        [
            FakeGpu("GPU-0", "A100", migs=[FakeMig("MIG-0", "1g.5gb")], mig_enabled=True),
            FakeGpu("GPU-1", "A100"),
        ]
    )
    builder = DeviceMapBuilder(
        lib, "single", [ResourceRule("*", "gpu")], [ResourceRule("*", "gpu")], []
    )
    with pytest.raises(DeviceMapError, match="same migEnabled value"):
        builder.build()


def test_builder_single_requires_mig_devices():
    lib = FakeLib([FakeGpu("GPU-0", "A100", migs=[], mig_enabled=True)])
    builder = DeviceMapBuilder(
        lib, "single", [ResourceRule("*", "gpu")], [ResourceRule("*", "gpu")], []
    )
    with pytest.raises(DeviceMapError, match="has no MIG devices configured"):
        builder.build()


def test_builder_single_rejects_mixed_mig_types():
    migs = [FakeMig("MIG-0", "1g.5gb"), FakeMig("MIG-1", "2g.10gb", {"memory": 10})]
    lib = FakeLib([FakeGpu("GPU-0", "A100", migs=migs, mig_enabled=True)])
    builder = DeviceMapBuilder(
        lib, "single", [ResourceRule("*", "gpu")], [ResourceRule("*", "gpu")], []
    )
    with pytest.raises(DeviceMapError, match="more than one MIG device type"):
        builder.build()


def test_builder_applies_replicas():
    lib = FakeLib([FakeGpu("GPU-0", "Tesla T4")])
    builder = DeviceMapBuilder(
        lib, "none", [ResourceRule("*", "gpu")], [], [ReplicatedResource("gpu", 2)]
    )
    dm = builder.build()
    assert sorted(dm["gpu"]) == ["GPU-0::0", "GPU-0::1"]