"""Base resource manager: request validation and replica-balanced allocation."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from gpushare.devices import AnnotatedID, Devices, any_has_annotations


class SharingStrategy(enum.Enum):
    NONE = "none"
    TIME_SLICING = "time-slicing"
    MPS = "mps"


@dataclass(frozen=True)
class SharingSettings:
    """The active sharing strategy and its request-size policy."""

    strategy: SharingStrategy = SharingStrategy.NONE
    fail_requests_greater_than_one: bool = False


class InvalidRequestError(ValueError):
    """An allocation request that the resource manager cannot accept."""

    def __init__(self, detail: str):
        super().__init__(f"invalid request: {detail}")
        self.detail = detail


class AllocationError(RuntimeError):
    """A preferred allocation that cannot be satisfied."""


@dataclass
class _ReplicaCount:
    total: int = 0
    available: int = 0


class ResourceManager:
    """Manages the devices behind one named resource."""

    def __init__(
        self,
        resource: str,
        devices: Devices,
        sharing: Optional[SharingSettings] = None,
    ):
        self.resource = resource
        self.devices = devices if isinstance(devices, Devices) else Devices(devices)
        self.sharing = sharing if sharing is not None else SharingSettings()

    def validate_request(self, ids: Sequence[str]) -> None:
        """Raise InvalidRequestError if ids are unknown or violate the sharing policy."""
        for device_id in ids:
            if not self.devices.contains(device_id):
                raise InvalidRequestError(f"unknown device: {device_id}")

        includes_replicas = any_has_annotations(ids)
        requested = len(ids)
        too_many = includes_replicas and requested > 1
        strategy = self.sharing.strategy
        if strategy is SharingStrategy.TIME_SLICING:
            if too_many and self.sharing.fail_requests_greater_than_one:
                raise InvalidRequestError(
                    f"maximum request size for shared resources is 1; found {requested}"
                )
        elif strategy is SharingStrategy.MPS:
            # MPS always limits shared requests to one device, whatever the
            # fail_requests_greater_than_one setting says.
            if too_many:
                raise InvalidRequestError(
                    f"maximum request size for shared resources is 1; found {requested}"
                )

    def distributed_alloc(
        self, available: Sequence[str], required: Sequence[str], size: int
    ) -> list[str]:
        """Pick devices so that replicas are spread evenly over the underlying GPUs."""
        candidates = (
            self.devices.subset(available)
            .difference(self.devices.subset(required))
            .ids()
        )
        needed = size - len(required)
        if len(candidates) < needed:
            raise AllocationError("not enough available devices to satisfy allocation")

        replicas: dict[str, _ReplicaCount] = {}
        for candidate in candidates:
            replicas.setdefault(AnnotatedID(candidate).base_id(), _ReplicaCount()).available += 1
        for device_id in self.devices:
            count = replicas.get(AnnotatedID(device_id).base_id())
            if count is not None:
                count.total += 1

        def allocated_replicas(candidate: str) -> int:
            count = replicas[AnnotatedID(candidate).base_id()]
            return count.total - count.available

        chosen: list[str] = []
        for _ in range(max(needed, 0)):
            candidates.sort(key=allocated_replicas)
            selected = candidates.pop(0)
            replicas[AnnotatedID(selected).base_id()].available -= 1
            chosen.append(selected)

        return list(required) + chosen

    def get_preferred_allocation(
        self, available: Sequence[str], required: Sequence[str], size: int
    ) -> list[str]:
        """Return the preferred allocation; the base manager distributes over replicas."""
        return self.distributed_alloc(available, required, size)

    def get_device_paths(self, ids: Sequence[str]) -> list[str]:
        """Return the device nodes needed by the given devices."""
        return self.devices.subset(ids).paths()

    def check_health(self, stop: Any, unhealthy: Any) -> None:
        """Run health checks; the base manager performs none."""
        return None