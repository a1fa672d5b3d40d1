"""Mapping of resource names to devices, including replicated (shared) devices."""

from __future__ import annotations

import enum
import fnmatch
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence

from gpushare.devices import Device, DeviceInfo, Devices, build_device, new_annotated_id

logger = logging.getLogger(__name__)

_MIG_INDEX_PATTERN = re.compile(r"[0-9]+:[0-9]+")


class MigStrategy(enum.Enum):
    NONE = "none"
    SINGLE = "single"
    MIXED = "mixed"


class DeviceMapError(RuntimeError):
    """The device map could not be built from the devices and configuration."""


@dataclass(frozen=True)
class ResourceRule:
    """Maps device names matching a glob pattern onto a resource name."""

    pattern: str
    name: str

    def matches(self, name: str) -> bool:
        return fnmatch.fnmatchcase(name, self.pattern)


@dataclass
class ReplicatedResource:
    """Describes which devices of a resource are replicated and how often.

    When neither ``count`` nor ``device_refs`` is given, all devices are replicated.
    Device references are UUIDs (``GPU-...``/``MIG-...``), GPU indices (``"0"``)
    or MIG indices (``"0:1"``).
    """

    name: str
    replicas: int
    rename: str = ""
    all_devices: bool = False
    count: int = 0
    device_refs: Sequence[str] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        self.device_refs = tuple(self.device_refs)
        if not self.all_devices and self.count == 0 and not self.device_refs:
            self.all_devices = True


def _is_uuid(ref: str) -> bool:
    return ref.startswith("GPU-") or ref.startswith("MIG-")


def _is_gpu_index(ref: str) -> bool:
    return ref.isdigit()


def _is_mig_index(ref: str) -> bool:
    return _MIG_INDEX_PATTERN.fullmatch(ref) is not None


class DeviceMap(dict):
    """A mapping of resource name to the Devices that provide it."""

    def insert(self, name: str, device: Device) -> None:
        """Add device under the named resource, replacing any device with its ID."""
        self.setdefault(name, Devices())[device.id] = device

    def merge(self, other: "DeviceMap") -> None:
        for name, devices in other.items():
            for device in devices.values():
                self.insert(name, device)

    def is_empty(self) -> bool:
        return not any(self.values())

    def set_entry(self, name: str, index: str, info: DeviceInfo) -> None:
        """Build a device from its information and insert it under name."""
        try:
            device = build_device(index, info)
        except Exception as err:
            raise DeviceMapError(f"error building Device: {err}") from err
        self.insert(name, device)

    def ids_to_replicate(self, resource: ReplicatedResource) -> list[str]:
        """Return the IDs of the devices of resource.name that are to be replicated."""
        devices = self.get(resource.name)
        if devices is None:
            return []

        if resource.all_devices:
            return devices.ids()

        if resource.count > 0:
            if resource.count > len(devices):
                raise DeviceMapError(
                    f"requested {resource.count} devices to be replicated, "
                    f"but only {len(devices)} devices available"
                )
            return devices.ids()[: resource.count]

        if resource.device_refs:
            ids: list[str] = []
            for ref in resource.device_refs:
                if _is_uuid(ref):
                    device = devices.get_by_id(ref)
                    if device is None:
                        raise DeviceMapError(f"no matching device with UUID: {ref}")
                    ids.append(device.id)
                if _is_gpu_index(ref) or _is_mig_index(ref):
                    device = devices.get_by_index(ref)
                    if device is None:
                        raise DeviceMapError(f"no matching device at index: {ref}")
                    ids.append(device.id)
            return ids

        raise DeviceMapError("unexpected error")


def update_device_map_with_replicas(
    replicated: Iterable[ReplicatedResource], devices: DeviceMap
) -> DeviceMap:
    """Return a new device map with the requested devices replaced by replicas."""
    replicated = list(replicated)
    updated = DeviceMap()

    names = {r.name for r in replicated}
    for name, ds in devices.items():
        if name not in names:
            updated[name] = ds

    for resource in replicated:
        try:
            ids = devices.ids_to_replicate(resource)
        except DeviceMapError as err:
            raise DeviceMapError(
                f"unable to get IDs of devices to replicate for '{resource.name}' resource: {err}"
            ) from err
        if not ids:
            continue

        original = devices[resource.name]
        for device in original.difference(original.subset(ids)).values():
            updated.insert(resource.name, device)

        name = resource.rename or resource.name
        for device_id in ids:
            source = original[device_id]
            for replica in range(resource.replicas):
                updated.insert(
                    name,
                    replace(
                        source,
                        id=str(new_annotated_id(device_id, replica)),
                        replicas=resource.replicas,
                        paths=list(source.paths),
                    ),
                )

    return updated


def _default_gpu_device(index: int, gpu: Any) -> tuple[str, DeviceInfo]:
    return str(index), gpu


def _default_mig_device(gpu_index: int, mig_index: int, mig: Any) -> tuple[str, DeviceInfo]:
    return f"{gpu_index}:{mig_index}", mig


class DeviceMapBuilder:
    """Builds a DeviceMap from a device library and the resource configuration.

    ``device_lib.devices()`` yields GPU handles offering ``name()``,
    ``is_mig_enabled()`` and ``mig_devices()``; MIG handles offer ``profile()``
    and ``attributes()``. ``new_gpu_device(i, gpu)`` and the ``new_mig_device``
    attribute turn handles into an index and device information.
    """

    def __init__(
        self,
        device_lib: Any,
        mig_strategy: Any,
        gpu_rules: Iterable[ResourceRule],
        mig_rules: Iterable[ResourceRule],
        replicated: Iterable[ReplicatedResource],
        new_gpu_device: Optional[Callable[[int, Any], tuple[str, DeviceInfo]]] = None,
    ):
        self.device_lib = device_lib
        self.mig_strategy = MigStrategy(
            mig_strategy.value if isinstance(mig_strategy, MigStrategy) else mig_strategy
        )
        self.gpu_rules = list(gpu_rules)
        self.mig_rules = list(mig_rules)
        self.replicated = list(replicated)
        self.new_gpu_device = new_gpu_device or _default_gpu_device
        self.new_mig_device: Callable[[int, int, Any], tuple[str, DeviceInfo]] = _default_mig_device

    def build(self) -> DeviceMap:
        try:
            devices = self._from_config_resources()
        except DeviceMapError as err:
            raise DeviceMapError(f"error building device map from config.resources: {err}") from err
        try:
            return update_device_map_with_replicas(self.replicated, devices)
        except DeviceMapError as err:
            raise DeviceMapError(
                "error updating device map with replicas from replicatedResources config: "
                f"{err}"
            ) from err

    def _gpus(self) -> list[Any]:
        return list(self.device_lib.devices())

    def _visit_mig_devices(self) -> Iterator[tuple[int, Any, int, Any]]:
        for i, gpu in enumerate(self._gpus()):
            if not gpu.is_mig_enabled():
                continue
            for j, mig in enumerate(gpu.mig_devices()):
                yield i, gpu, j, mig

    def _from_config_resources(self) -> DeviceMap:
        try:
            device_map = self._gpu_device_map()
        except Exception as err:
            raise DeviceMapError(f"error building GPU device map: {err}") from err

        if self.mig_strategy is MigStrategy.NONE:
            return device_map

        try:
            mig_map = self._mig_device_map()
        except Exception as err:
            raise DeviceMapError(f"error building MIG device map: {err}") from err

        uniform = self.mig_strategy is MigStrategy.SINGLE
        try:
            self._assert_all_mig_devices_are_valid(uniform)
        except Exception as err:
            raise DeviceMapError(f"invalid MIG configuration: {err}") from err

        if uniform and not device_map.is_empty() and not mig_map.is_empty():
            raise DeviceMapError(
                "all devices on the node must be configured with the same migEnabled value"
            )

        device_map.merge(mig_map)
        return device_map

    def _gpu_device_map(self) -> DeviceMap:
        devices = DeviceMap()
        for i, gpu in enumerate(self._gpus()):
            try:
                name = gpu.name()
            except Exception as err:
                raise DeviceMapError(f"error getting product name for GPU: {err}") from err
            try:
                mig_enabled = gpu.is_mig_enabled()
            except Exception as err:
                raise DeviceMapError(f"error checking if MIG is enabled on GPU: {err}") from err
            if mig_enabled and self.mig_strategy is not MigStrategy.NONE:
                continue
            rule = next((r for r in self.gpu_rules if r.matches(name)), None)
            if rule is None:
                raise DeviceMapError(f"GPU name '{name}' does not match any resource patterns")
            index, info = self.new_gpu_device(i, gpu)
            devices.set_entry(rule.name, index, info)
        return devices

    def _mig_device_map(self) -> DeviceMap:
        devices = DeviceMap()
        for i, _gpu, j, mig in self._visit_mig_devices():
            try:
                profile = str(mig.profile())
            except Exception as err:
                raise DeviceMapError(
                    f"error getting MIG profile for MIG device at index '({i}, {j})': {err}"
                ) from err
            rule = next((r for r in self.mig_rules if r.matches(profile)), None)
            if rule is None:
                raise DeviceMapError(f"MIG profile '{profile}' does not match any resource patterns")
            index, info = self.new_mig_device(i, j, mig)
            devices.set_entry(rule.name, index, info)
        return devices

    def _assert_all_mig_devices_are_valid(self, uniform: bool) -> None:
        try:
            for i, gpu in enumerate(self._gpus()):
                if not gpu.is_mig_enabled():
                    continue
                if not list(gpu.mig_devices()):
                    if uniform:
                        raise DeviceMapError(f"device {i} has no MIG devices configured")
                    logger.warning("device %s has no MIG devices configured", i)
        except Exception as err:
            raise DeviceMapError(
                f"at least one device with migEnabled=true was not configured correctly: {err}"
            ) from err

        if not uniform:
            return

        previous = None
        for _i, _gpu, _j, mig in self._visit_mig_devices():
            try:
                attributes = mig.attributes()
            except Exception as err:
                raise DeviceMapError(f"error getting device attributes: {err}") from err
            if previous is None:
                previous = attributes
            elif attributes != previous:
                raise DeviceMapError("more than one MIG device type present on node")