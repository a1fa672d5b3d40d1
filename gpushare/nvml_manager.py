"""Resource managers for GPUs and MIG devices managed through NVML."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Sequence

from gpushare.device_map import DeviceMapError
from gpushare.devices import Devices, any_has_annotations
from gpushare.health import check_health as _check_health
from gpushare.resource_manager import AllocationError, ResourceManager, SharingSettings

logger = logging.getLogger(__name__)

# Device nodes that every NVML-managed container needs, whatever it requests.
CONTROL_DEVICE_PATHS = (
    "/dev/nvidiactl",
    "/dev/nvidia-uvm",
    "/dev/nvidia-uvm-tools",
    "/dev/nvidia-modeset",
)

AlignedAllocator = Callable[[Sequence[str], Sequence[str], int], Sequence[str]]


class NvmlResourceManager(ResourceManager):
    """Resource manager for NVML devices with aligned allocation and health checks.

    ``aligned_allocator(available, required, size)`` returns the UUIDs of a
    topology-aligned allocation; it is used when every device is a full GPU
    and none of the available IDs carries a replica annotation.
    """

    def __init__(
        self,
        resource: str,
        devices: Devices,
        sharing: Optional[SharingSettings],
        nvml: Any,
        aligned_allocator: Optional[AlignedAllocator] = None,
        fail_on_init_error: bool = True,
    ):
        super().__init__(resource, devices, sharing)
        self.nvml = nvml
        self.aligned_allocator = aligned_allocator
        self.fail_on_init_error = fail_on_init_error

    def get_preferred_allocation(
        self, available: Sequence[str], required: Sequence[str], size: int
    ) -> list[str]:
        """Use an aligned allocation for full GPUs, otherwise spread over replicas."""
        if self.devices.aligned_allocation_supported() and not any_has_annotations(available):
            return self.aligned_alloc(available, required, size)
        return self.distributed_alloc(available, required, size)

    def aligned_alloc(
        self, available: Sequence[str], required: Sequence[str], size: int
    ) -> list[str]:
        """Delegate to the aligned allocation policy and return the chosen UUIDs."""
        if self.aligned_allocator is None:
            raise AllocationError(
                "unable to get device link information: no aligned allocator configured"
            )
        try:
            allocated = self.aligned_allocator(list(available), list(required), size)
        except Exception as err:
            raise AllocationError(f"unable to compute aligned allocation: {err}") from err
        return [str(uuid) for uuid in allocated]

    def get_device_paths(self, ids: Sequence[str]) -> list[str]:
        """Return the control device nodes followed by those of the requested devices."""
        return [*CONTROL_DEVICE_PATHS, *self.devices.subset(ids).paths()]

    def check_health(self, stop: Any, unhealthy: Any) -> None:
        """Watch the managed devices for critical errors until ``stop`` is set."""
        return _check_health(
            self.nvml,
            self.devices,
            stop,
            unhealthy,
            fail_on_init_error=self.fail_on_init_error,
        )


def new_nvml_resource_managers(
    nvml: Any,
    builder: Any,
    sharing: Optional[SharingSettings] = None,
    aligned_allocator: Optional[AlignedAllocator] = None,
    fail_on_init_error: bool = True,
) -> list[NvmlResourceManager]:
    """Return one resource manager for each non-empty resource built by ``builder``."""
    try:
        nvml.init()
    except Exception as err:
        raise RuntimeError(f"failed to initialize NVML: {err}") from err

    try:
        try:
            device_map = builder.build()
        except Exception as err:
            raise DeviceMapError(f"error building device map: {err}") from err
    finally:
        try:
            nvml.shutdown()
        except Exception as err:
            logger.info("Error shutting down NVML: %s", err)

    return [
        NvmlResourceManager(
            name,
            devices,
            sharing,
            nvml,
            aligned_allocator=aligned_allocator,
            fail_on_init_error=fail_on_init_error,
        )
        for name, devices in device_map.items()
        if devices
    ]