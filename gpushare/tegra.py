"""Device information and resource managers for integrated (Tegra) GPUs."""

from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence

from gpushare.device_map import (
    DeviceMap,
    DeviceMapError,
    ReplicatedResource,
    ResourceRule,
    update_device_map_with_replicas,
)
from gpushare.resource_manager import ResourceManager, SharingSettings

TEGRA_DEVICE_NAME = "tegra"


class TegraDevice:
    """Device information for the single integrated GPU of a Tegra system."""

    # Tegra devices report no NUMA affinity.
    _numa: Optional[int] = None

    def uuid(self) -> str:
        return TEGRA_DEVICE_NAME

    def paths(self) -> list[str]:
        """A Tegra device has no device nodes of its own."""
        return []

    def numa_node(self) -> Optional[int]:
        """Return the NUMA node of the device; unsupported, so always None."""
        return self._numa

    def total_memory(self) -> int:
        return 0

    def compute_capability(self) -> str:
        return "0.0"


def build_tegra_device_map(gpu_rules: Iterable[ResourceRule]) -> DeviceMap:
    """Build a device map with a Tegra device for each rule matching its name."""
    devices = DeviceMap()
    matching = (rule for rule in gpu_rules if rule.matches(TEGRA_DEVICE_NAME))
    for i, rule in enumerate(matching):
        devices.set_entry(rule.name, str(i), TegraDevice())
    return devices


class TegraResourceManager(ResourceManager):
    """Resource manager for Tegra devices: no device paths and no health checks."""

    def get_preferred_allocation(
        self, available: Sequence[str], required: Sequence[str], size: int
    ) -> list[str]:
        return self.distributed_alloc(available, required, size)

    def get_device_paths(self, ids: Sequence[str]) -> list[str]:
        return []

    def check_health(self, stop: Any, unhealthy: Any) -> None:
        return None


def new_tegra_resource_managers(
    gpu_rules: Iterable[ResourceRule],
    replicated: Iterable[ReplicatedResource],
    sharing: Optional[SharingSettings] = None,
) -> list[TegraResourceManager]:
    """Return one resource manager for each non-empty Tegra resource."""
    try:
        device_map = build_tegra_device_map(gpu_rules)
    except DeviceMapError as err:
        raise DeviceMapError(f"error building Tegra device map: {err}") from err

    try:
        device_map = update_device_map_with_replicas(replicated, device_map)
    except DeviceMapError as err:
        raise DeviceMapError(
            f"error updating device map with replicas from sharing resources: {err}"
        ) from err

    return [
        TegraResourceManager(name, devices, sharing)
        for name, devices in device_map.items()
        if devices
    ]