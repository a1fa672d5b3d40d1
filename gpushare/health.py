"""Health checking of GPU and MIG devices driven by NVML Xid events."""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Iterable, Mapping, Optional

from gpushare.devices import Device

logger = logging.getLogger(__name__)

ENV_DISABLE_HEALTH_CHECKS = "DP_DISABLE_HEALTHCHECKS"
ALL_HEALTH_CHECKS = "xids"

EVENT_TYPE_SINGLE_BIT_ECC_ERROR = 0x0000000000000001
EVENT_TYPE_DOUBLE_BIT_ECC_ERROR = 0x0000000000000002
EVENT_TYPE_XID_CRITICAL_ERROR = 0x0000000000000008

# Placement value used for the GPU and compute instance of a full device.
NO_INSTANCE = 0xFFFFFFFF

# Application errors: the GPU is still considered healthy after these.
APPLICATION_ERROR_XIDS = (
    13,  # Graphics Engine Exception
    31,  # GPU memory page fault
    43,  # GPU stopped processing
    45,  # Preemptive cleanup, due to previous errors
    68,  # Video processor exception
)

_WAIT_TIMEOUT_MS = 5000
_UINT64_MAX = 2**64 - 1
_UNSIGNED = re.compile(r"[0-9]+")
_SIGNED = re.compile(r"[+-]?[0-9]+")


class HealthCheckError(RuntimeError):
    """Health checking could not be set up or a device could not be placed."""


def additional_xids(value: str) -> list[int]:
    """Parse a comma-separated list of Xids; malformed entries are ignored."""
    xids: list[int] = []
    if not value:
        return xids
    for item in value.split(","):
        trimmed = item.strip()
        if not trimmed:
            continue
        if not _UNSIGNED.fullmatch(trimmed) or int(trimmed) > _UINT64_MAX:
            logger.info("Ignoring malformed Xid value %s", trimmed)
            continue
        xids.append(int(trimmed))
    return xids


def parse_mig_device_uuid(uuid: str) -> tuple[str, int, int]:
    """Split ``MIG-<parent>/<gi>/<ci>`` into the parent UUID, GI and CI."""
    error = HealthCheckError("Unable to parse UUID as MIG device")
    prefix, sep, rest = uuid.partition("-")
    if not sep or prefix != "MIG":
        raise error
    tokens = rest.split("/", 2)
    if len(tokens) != 3 or not tokens[0].startswith("GPU-"):
        raise error
    parent, gi, ci = tokens
    if not _SIGNED.fullmatch(gi) or not _SIGNED.fullmatch(ci):
        raise error
    return parent, int(gi), int(ci)


def mig_device_parts(nvml: Any, device: Device) -> tuple[str, int, int]:
    """Return the parent UUID, GPU instance and compute instance of a MIG device."""
    if not device.is_mig_device():
        raise HealthCheckError("cannot get GI and CI of full device")

    uuid = device.uuid()
    # Older drivers cannot look MIG devices up by UUID; fall back to parsing it.
    try:
        mig = nvml.device_get_handle_by_uuid(uuid)
    except Exception:
        return parse_mig_device_uuid(uuid)

    steps = (
        ("parent", "failed to get parent device handle"),
        ("parent_uuid", "failed to get parent uuid"),
        ("gi", "failed to get GPU Instance ID"),
        ("ci", "failed to get Compute Instance ID"),
    )
    values: dict[str, Any] = {}
    for key, message in steps:
        try:
            if key == "parent":
                values[key] = mig.parent_device()
            elif key == "parent_uuid":
                values[key] = values["parent"].uuid()
            elif key == "gi":
                values[key] = mig.gpu_instance_id()
            else:
                values[key] = mig.compute_instance_id()
        except Exception as err:
            raise HealthCheckError(f"{message}: {err}") from err
    return values["parent_uuid"], values["gi"], values["ci"]


def device_placement(nvml: Any, device: Device) -> tuple[str, int, int]:
    """Return ``(uuid, gi, ci)``; a full device has NO_INSTANCE for gi and ci."""
    if not device.is_mig_device():
        return device.uuid(), NO_INSTANCE, NO_INSTANCE
    return mig_device_parts(nvml, device)


def _report(unhealthy: Any, device: Device) -> None:
    if callable(unhealthy):
        unhealthy(device)
    else:
        unhealthy.put(device)


def check_health(
    nvml: Any,
    devices: Mapping[str, Device],
    stop: Any,
    unhealthy: Any,
    fail_on_init_error: bool = True,
    environ: Optional[Mapping[str, str]] = None,
) -> None:
    """Watch devices for critical Xid events until ``stop`` is set.

    Unhealthy devices are passed to ``unhealthy`` (a callable or an object
    with ``put``). ``stop`` is an object with ``is_set()``.
    """
    environ = os.environ if environ is None else environ
    disabled = environ.get(ENV_DISABLE_HEALTH_CHECKS, "").lower()
    if disabled == "all":
        disabled = ALL_HEALTH_CHECKS
    if ALL_HEALTH_CHECKS in disabled:
        return None

    try:
        nvml.init()
    except Exception as err:
        if fail_on_init_error:
            raise HealthCheckError(f"failed to initialize NVML: {err}") from err
        return None

    try:
        skipped = set(APPLICATION_ERROR_XIDS) | set(additional_xids(disabled))
        _watch_events(nvml, list(devices.values()), stop, unhealthy, skipped)
    finally:
        try:
            nvml.shutdown()
        except Exception as err:
            logger.info("Error shutting down NVML: %s", err)
    return None


def _register(
    nvml: Any, devices: Iterable[Device], unhealthy: Any, event_set: Any
) -> tuple[dict[str, Device], dict[str, tuple[int, int]]]:
    parent_to_device: dict[str, Device] = {}
    placements: dict[str, tuple[int, int]] = {}
    event_mask = (
        EVENT_TYPE_XID_CRITICAL_ERROR
        | EVENT_TYPE_DOUBLE_BIT_ECC_ERROR
        | EVENT_TYPE_SINGLE_BIT_ECC_ERROR
    )
    for device in devices:
        try:
            uuid, gi, ci = device_placement(nvml, device)
        except Exception as err:
            logger.warning(
                "Could not determine device placement for %s: %s; Marking it unhealthy.",
                device.id,
                err,
            )
            _report(unhealthy, device)
            continue
        placements[device.id] = (gi, ci)
        parent_to_device[uuid] = device

        try:
            gpu = nvml.device_get_handle_by_uuid(uuid)
        except Exception as err:
            logger.info("unable to get device handle from UUID: %s; marking it as unhealthy", err)
            _report(unhealthy, device)
            continue

        try:
            supported = gpu.supported_event_types()
        except Exception as err:
            logger.info(
                "Unable to determine the supported events for %s: %s; marking it as unhealthy",
                device.id,
                err,
            )
            _report(unhealthy, device)
            continue

        try:
            gpu.register_events(event_mask & supported, event_set)
        except Exception as err:
            if isinstance(err, NotImplementedError):
                logger.warning("Device %s is too old to support healthchecking.", device.id)
            logger.info("Marking device %s as unhealthy: %s", device.id, err)
            _report(unhealthy, device)
    return parent_to_device, placements


def _watch_events(
    nvml: Any, devices: list[Device], stop: Any, unhealthy: Any, skipped: set[int]
) -> None:
    try:
        event_set = nvml.event_set_create()
    except Exception as err:
        raise HealthCheckError(f"failed to create event set: {err}") from err

    try:
        parent_to_device, placements = _register(nvml, devices, unhealthy, event_set)
        while not stop.is_set():
            try:
                event = event_set.wait(_WAIT_TIMEOUT_MS)
            except Exception as err:
                logger.info("Error waiting for event: %s; Marking all devices as unhealthy", err)
                for device in devices:
                    _report(unhealthy, device)
                continue
            if event is None:
                continue
            _handle_event(event, devices, parent_to_device, placements, unhealthy, skipped)
    finally:
        try:
            event_set.free()
        except Exception:
            pass


def _handle_event(
    event: Any,
    devices: list[Device],
    parent_to_device: dict[str, Device],
    placements: dict[str, tuple[int, int]],
    unhealthy: Any,
    skipped: set[int],
) -> None:
    if event.event_type != EVENT_TYPE_XID_CRITICAL_ERROR:
        logger.info("Skipping non-nvmlEventTypeXidCriticalError event: %r", event)
        return
    if event.event_data in skipped:
        logger.info("Skipping event %r", event)
        return

    logger.info("Processing event %r", event)
    try:
        event_uuid = event.device.uuid()
    except Exception as err:
        logger.info(
            "Failed to determine uuid for event %r: %s; Marking all devices as unhealthy.",
            event,
            err,
        )
        for device in devices:
            _report(unhealthy, device)
        return

    device = parent_to_device.get(event_uuid)
    if device is None:
        logger.info("Ignoring event for unexpected device: %s", event_uuid)
        return

    if (
        device.is_mig_device()
        and event.gpu_instance_id != NO_INSTANCE
        and event.compute_instance_id != NO_INSTANCE
    ):
        gi, ci = placements[device.id]
        if not (gi & 0xFFFFFFFF == event.gpu_instance_id and ci & 0xFFFFFFFF == event.compute_instance_id):
            return
        logger.info("Event for mig device %s (gi=%s, ci=%s)", device.id, gi, ci)

    logger.info(
        "XidCriticalError: Xid=%d on Device=%s; marking device as unhealthy.",
        event.event_data,
        device.id,
    )
    _report(unhealthy, device)