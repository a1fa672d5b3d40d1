"""Devices, device sets and replica-annotated device identifiers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

HEALTHY = "Healthy"
UNHEALTHY = "Unhealthy"

_ANNOTATION_SEPARATOR = "::"
_REPLICA_PATTERN = re.compile(r"[+-]?[0-9]+")


@dataclass
class Device:
    """A schedulable device with the metadata needed to hand it to a container."""

    id: str
    index: str = ""
    paths: list[str] = field(default_factory=list)
    total_memory: int = 0
    compute_capability: str = ""
    # Total number of times this device is replicated; 0 or 1 means not shared.
    replicas: int = 0
    health: str = HEALTHY
    numa_node: Optional[int] = None

    def uuid(self) -> str:
        """Return the device UUID, with any replica annotation removed."""
        return AnnotatedID(self.id).base_id()

    def is_mig_device(self) -> bool:
        """Return True if the device is a MIG device."""
        return ":" in self.index

    def aligned_allocation_supported(self) -> bool:
        """Return True if the device can take part in an aligned allocation."""
        if self.is_mig_device():
            return False
        return "/dev/dxg" not in self.paths


class DeviceInfo(Protocol):
    """The information required to construct a Device."""

    def uuid(self) -> str: ...

    def paths(self) -> list[str]: ...

    def numa_node(self) -> Optional[int]:
        """Return the NUMA node of the device, or None if it has none."""
        ...

    def total_memory(self) -> int: ...

    def compute_capability(self) -> str: ...


class Devices(dict):
    """A mapping of device ID to Device with set-like helpers."""

    def contains(self, *ids: str) -> bool:
        """Return True if every one of ids is present."""
        return all(device_id in self for device_id in ids)

    def get_by_id(self, device_id: str) -> Optional[Device]:
        return self.get(device_id)

    def get_by_index(self, index: str) -> Optional[Device]:
        return next(
            (d for d in self.values() if d is not None and d.index == index),
            None,
        )

    def subset(self, ids: Iterable[str]) -> "Devices":
        """Return the devices matching ids; unknown ids are ignored."""
        return Devices((i, self[i]) for i in ids if i in self)

    def difference(self, other: "Devices") -> "Devices":
        """Return the devices present here but not in other."""
        return Devices((i, d) for i, d in self.items() if i not in other)

    def ids(self) -> list[str]:
        return [d.id for d in self.values()]

    def uuids(self) -> list[str]:
        """Return the distinct UUIDs of the devices, in order of first appearance."""
        return list(dict.fromkeys(d.uuid() for d in self.values()))

    def indices(self) -> list[str]:
        return [d.index for d in self.values()]

    def paths(self) -> list[str]:
        return [p for d in self.values() for p in d.paths]

    def aligned_allocation_supported(self) -> bool:
        return all(d.aligned_allocation_supported() for d in self.values())


class AnnotatedID(str):
    """A device ID that may carry a replica number, as in ``<id>::<replica>``."""

    def has_annotations(self) -> bool:
        return _ANNOTATION_SEPARATOR in self

    def split(self) -> tuple[str, int]:
        """Return the ID part and the replica number (0 when absent or malformed)."""
        base, sep, replica = str(self).partition(_ANNOTATION_SEPARATOR)
        if not sep:
            return str(self), 0
        if _REPLICA_PATTERN.fullmatch(replica):
            return base, int(replica)
        return base, 0

    def base_id(self) -> str:
        return self.split()[0]


def new_annotated_id(device_id: str, replica: int) -> AnnotatedID:
    """Build an annotated ID from a device ID and a replica number."""
    return AnnotatedID(f"{device_id}{_ANNOTATION_SEPARATOR}{replica}")


def any_has_annotations(ids: Iterable[str]) -> bool:
    return any(AnnotatedID(i).has_annotations() for i in ids)


def strip_annotations(ids: Iterable[str]) -> list[str]:
    """Return the ID parts of the given annotated IDs."""
    return [AnnotatedID(i).base_id() for i in ids]


def build_device(index: str, info: DeviceInfo) -> Device:
    """Construct a healthy Device from its index and device information."""
    steps = (
        ("uuid", "error getting UUID device"),
        ("paths", "error getting device paths"),
        ("numa_node", "error getting device NUMA node"),
        ("total_memory", "error getting device memory"),
        ("compute_capability", "error getting device compute capability"),
    )
    values = {}
    for attribute, message in steps:
        try:
            values[attribute] = getattr(info, attribute)()
        except Exception as err:
            raise RuntimeError(f"{message}: {err}") from err

    return Device(
        id=values["uuid"],
        index=index,
        paths=list(values["paths"] or []),
        total_memory=values["total_memory"],
        compute_capability=values["compute_capability"],
        health=HEALTHY,
        numa_node=values["numa_node"],
    )


def c_string(values: Iterable[int]) -> str:
    """Decode a NUL-terminated sequence of (possibly signed) byte values."""
    raw = bytearray()
    for value in values:
        if value == 0:
            break
        raw.append(value & 0xFF)
    return raw.decode("utf-8", errors="replace")