"""Interfaces for device managers, a no-op manager and a fallback wrapper."""

from __future__ import annotations

import abc
import logging
from typing import Any

logger = logging.getLogger(__name__)


class ResourceError(RuntimeError):
    """An operation is unsupported or failed for a manager or device."""


class Device(abc.ABC):
    """A device with which labels are associated."""

    @abc.abstractmethod
    def is_mig_enabled(self) -> bool:
        """Return True if MIG mode is enabled on the device."""

    @abc.abstractmethod
    def is_mig_capable(self) -> bool:
        """Return True if the device supports MIG mode."""

    @abc.abstractmethod
    def mig_devices(self) -> list["Device"]:
        """Return the MIG devices configured on this device."""

    @abc.abstractmethod
    def attributes(self) -> dict[str, Any]:
        """Return the attributes of a MIG device."""

    @abc.abstractmethod
    def name(self) -> str:
        """Return the device name or model."""

    @abc.abstractmethod
    def total_memory_mb(self) -> int:
        """Return the total memory of the device in MiB."""

    @abc.abstractmethod
    def parent_device(self) -> "Device":
        """Return the full device that a MIG device belongs to."""

    @abc.abstractmethod
    def cuda_compute_capability(self) -> tuple[int, int]:
        """Return the CUDA compute capability as (major, minor)."""

    @abc.abstractmethod
    def pci_class(self) -> int:
        """Return the PCI class code of the device."""


class Manager(abc.ABC):
    """Manages the library that discovers and queries devices."""

    @abc.abstractmethod
    def init(self) -> None:
        """Initialise the underlying library."""

    @abc.abstractmethod
    def shutdown(self) -> None:
        """Shut the underlying library down."""

    @abc.abstractmethod
    def devices(self) -> list[Device]:
        """Return the devices available on the system."""

    @abc.abstractmethod
    def driver_version(self) -> str:
        """Return the driver version."""

    @abc.abstractmethod
    def cuda_driver_version(self) -> tuple[int, int]:
        """Return the CUDA driver version as (major, minor)."""


class NullManager(Manager):
    """A manager with no devices whose init and shutdown do nothing."""

    def init(self) -> None:
        return None

    def shutdown(self) -> None:
        return None

    def devices(self) -> list[Device]:
        return []

    def driver_version(self) -> str:
        raise ResourceError("driver version is unsupported")

    def cuda_driver_version(self) -> tuple[int, int]:
        raise ResourceError("CUDA driver version is unsupported")


class FallbackToNullOnInitError(Manager):
    """Wraps a manager and becomes a NullManager if its init fails."""

    def __init__(self, manager: Manager):
        self._wrapped = manager
        self._fallback = NullManager()

    @property
    def wrapped(self) -> Manager:
        """The manager that calls are currently delegated to."""
        return self._wrapped

    def init(self) -> None:
        """Initialise the wrapped manager, switching to the null manager on failure."""
        try:
            self._wrapped.init()
        except Exception as err:
            logger.warning("Failed to initialize resource manager: %s", err)
            self._wrapped = self._fallback

    def shutdown(self) -> None:
        return self._wrapped.shutdown()

    def devices(self) -> list[Device]:
        return self._wrapped.devices()

    def driver_version(self) -> str:
        return self._wrapped.driver_version()

    def cuda_driver_version(self) -> tuple[int, int]:
        return self._wrapped.cuda_driver_version()