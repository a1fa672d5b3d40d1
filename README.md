# gpushare

`gpushare` models the GPUs on a node as schedulable resources. It works out
which devices belong to which resource names and replicates devices for
time-slicing and MPS sharing. It validates allocation requests, picks
preferred allocations, and watches devices for critical errors. It can also
read vGPU host driver details from PCI configuration space.

The GPU management library is always passed in as an object: real bindings
or test doubles. The package never loads a native library by itself.

## Installation

```
pip install gpushare
```

With the test dependencies:

```
pip install "gpushare[test]"
```

## Modules

- `gpushare.devices`
  - `Device`: a schedulable device with its ID, index, device paths, memory,
    compute capability, replica count, health and NUMA node.
  - `Devices`: a dict of ID to `Device`. Its helpers are `contains`,
    `get_by_id`, `get_by_index`, `subset`, `difference`, `ids`, `uuids`,
    `indices`, `paths` and `aligned_allocation_supported`.
  - `AnnotatedID`: an ID that may carry a replica number, written as
    `<id>::<n>`. Related helpers are `new_annotated_id`, `any_has_annotations`
    and `strip_annotations`.
  - `build_device(index, info)`: builds a healthy `Device` from any object
    that provides `uuid()`, `paths()`, `numa_node()`, `total_memory()` and
    `compute_capability()`.
- `gpushare.device_map`
  - `ResourceRule`: maps device names that match a glob pattern to a resource name.
  - `MigStrategy`: one of `none`, `single` or `mixed`.
  - `DeviceMap`: maps resource names to `Devices`.
  - `DeviceMapBuilder`: builds a `DeviceMap` from a device library.
  - `ReplicatedResource` and `update_device_map_with_replicas`: replace
    devices with `<id>::<n>` replicas. They can replicate all devices, the
    first N devices, or the devices given by UUID, GPU index or MIG index.
    They can also rename the resource.
- `gpushare.resource_manager`
  - `ResourceManager`: provides `validate_request`, `distributed_alloc`,
    `get_preferred_allocation`, `get_device_paths` and `check_health`.
  - `SharingSettings` and `SharingStrategy`: the sharing settings a manager uses.
  - `InvalidRequestError` and `AllocationError`: the errors a manager raises.
- `gpushare.nvml_manager`
  - `NvmlResourceManager`: uses an aligned allocation for full GPUs without
    replicas, and a replica-balanced allocation otherwise. The aligned
    allocation comes from an `aligned_allocator` callable that you supply.
    `get_device_paths` adds the NVIDIA control device nodes. `check_health`
    delegates to `gpushare.health.check_health`.
  - `new_nvml_resource_managers`: creates one manager per non-empty resource.
- `gpushare.nvml_devices`
  - `NvmlGpuDevice`, `NvmlMigDevice` and `WslDevice`: device information
    objects built over NVML-style handles. They are meant for use with
    `build_device`. `NvmlGpuDevice` reads the NUMA node from sysfs.
- `gpushare.tegra`
  - `TegraDevice`, `build_tegra_device_map`, `TegraResourceManager` and
    `new_tegra_resource_managers`: support for a single integrated GPU.
    A Tegra device has no device paths and no health checks.
- `gpushare.health`
  - `check_health`: watches for Xid critical error events until `stop.is_set()`
    is true. It passes unhealthy devices to a callable, or to an object with
    `put`, such as a `queue.Queue`.
  - `additional_xids`, `parse_mig_device_uuid`, `mig_device_parts` and
    `device_placement`: helpers used by the health check.
- `gpushare.resource.base`
  - `Manager` and `Device`: abstract interfaces.
  - `NullManager`: a manager with no devices.
  - `FallbackToNullOnInitError`: a wrapper that switches to the null manager
    if `init()` fails.
  - `ResourceError`: the error these classes raise.
- `gpushare.resource.nvml`
  - `NvmlManager`, `NvmlDevice` and `NvmlMigDevice`.
  - `total_memory(attributes)`: reads the memory size from MIG attributes.
- `gpushare.vgpu.pciutil`
  - `PCIDevice.vendor_specific_capability()`: reads the vendor-specific
    capability from configuration space.
  - `NvidiaPCILib`: lists NVIDIA devices under a sysfs PCI directory.
  - `MockNvidiaPCI`: a fixed set of sample devices.
  - `get_byte`, `get_word` and `get_long`: read values from a buffer.
- `gpushare.vgpu.vgpu`
  - `VGPULib.devices()` and `VGPULib.is_vgpu_device()`: find vGPU devices.
  - `VGPUDevice.info()`: returns a `VGPUInfo` with the host driver version and branch.
  - `new_mock_vgpu()`: a `VGPULib` over `MockNvidiaPCI`.
- `gpushare.watch`
  - `watch_files(*paths)`: returns a `FileWatcher` whose `events` queue
    receives change events. It can be used as a context manager.
  - `watch_signals(*signals)`: returns a queue that holds at most one pending signal.

## Example

```python
from gpushare.devices import Device, Devices, new_annotated_id
from gpushare.resource_manager import (
    InvalidRequestError,
    ResourceManager,
    SharingSettings,
    SharingStrategy,
)

ids = [str(new_annotated_id(gpu, n)) for gpu in ("GPU-a", "GPU-b") for n in range(2)]
devices = Devices({i: Device(id=i, replicas=2) for i in ids})

rm = ResourceManager("nvidia.com/gpu", devices, SharingSettings(SharingStrategy.MPS))
rm.validate_request(["GPU-a::0"])                    # accepted
print(rm.distributed_alloc(ids, [], 2))              # ['GPU-a::0', 'GPU-b::0']

try:
    rm.validate_request(["GPU-a::0", "GPU-b::1"])
except InvalidRequestError as err:
    print(err)  # invalid request: maximum request size for shared resources is 1; found 2
```

## Disabling health checks

`check_health` reads `DP_DISABLE_HEALTHCHECKS` from the environment, or from
the mapping passed as `environ`. The value works as follows:

- `all`, or any value that contains `xids`, turns the checks off.
- Otherwise the value is a comma-separated list of Xid numbers. These are
  ignored in addition to the application errors 13, 31, 43, 45 and 68.
  Malformed entries are skipped.

## What the package does not do

- It has no command-line program.
- It does not run a device-plugin server or register with a node agent.
- It does not read configuration files. Resource rules, replication settings
  and sharing settings are built in code.
- It does not include NVML bindings or a topology-aware allocation policy.
  You supply them as objects and callables.
- It does not discover MIG capability device paths. Pass them to
  `new_mig_device`/`NvmlMigDevice` as a mapping or a callable.

## Tests

```
pytest
```