"""Ephemeral device orchestration: clone -> start -> ready -> fn -> logs -> delete."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Generic, Optional, TypeVar

from maestro_harness.runtime.devices.base import (
    DeviceHandle,
    DeviceLifecycleError,
    DeviceManager,
    SourceDevice,
)
from maestro_harness.runtime.outcome import Outcome, capture

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CleanDeviceResult(Generic[T]):
    fn_outcome: Outcome[T]
    # None when no device was ever started, so there was nothing to collect.
    logs_outcome: Optional[Outcome[Path]]


def _boot_clean_device(
    manager: DeviceManager, *, source: SourceDevice, device_name: str
) -> tuple[Optional[DeviceHandle], Optional[BaseException]]:
    try:
        logger.info("Cloning %s to %s...", source.identifier, device_name)
        manager.clone(source, device_name)
    except Exception as e:
        return None, _as_lifecycle_error(e, f"failed to prepare device {device_name}")

    try:
        logger.info("Starting %s...", device_name)
        handle = manager.start(source, device_name)
    except Exception as e:
        _discard_clone(manager, source=source, device_name=device_name)
        return None, _as_lifecycle_error(e, f"failed to prepare device {device_name}")

    try:
        logger.info("Waiting for %s to be ready...", device_name)
        manager.wait_for_ready(handle)
    except Exception as e:
        return handle, _as_lifecycle_error(e, f"device {device_name} did not become ready")
    return handle, None


def _as_lifecycle_error(e: Exception, message: str) -> DeviceLifecycleError:
    if isinstance(e, DeviceLifecycleError):
        return e
    err = DeviceLifecycleError(f"{message}: {e}")
    err.__cause__ = e
    return err


def _discard_clone(manager: DeviceManager, *, source: SourceDevice, device_name: str) -> None:
    logger.info("Cleaning up %s...", device_name)
    try:
        manager.delete_clone(source, device_name)
    except Exception as e:
        logger.error("Error cleaning up device %s: %s", device_name, e, exc_info=e)


def _teardown(manager: DeviceManager, handle: DeviceHandle) -> Outcome[Path]:
    logger.info("Collecting logs from %s...", handle.ephemeral_identifier)
    logs_outcome: Outcome[Path] = capture(lambda: manager.collect_logs(handle))

    logger.info("Cleaning up %s...", handle.ephemeral_identifier)
    try:
        manager.delete(handle)
    except Exception as e:
        logger.error(
            "Error cleaning up device %s: %s", handle.ephemeral_identifier, e, exc_info=e
        )
    return logs_outcome


def with_clean_device(
    manager: DeviceManager,
    *,
    source: SourceDevice,
    device_name: str,
    fn: Callable[[DeviceHandle], T],
) -> CleanDeviceResult[T]:
    """Run `fn` on a freshly cloned device and always tear the device down.

    Setup failures are reported through `fn_outcome` like a failing `fn`.
    Log collection and deletion never raise and never replace `fn_outcome`.
    """

    handle, setup_error = _boot_clean_device(manager, source=source, device_name=device_name)

    fn_outcome: Outcome[T]
    logs_outcome: Optional[Outcome[Path]] = None
    try:
        if setup_error is not None:
            fn_outcome = Outcome.failure(setup_error)
        else:
            assert handle is not None
            fn_outcome = capture(lambda: fn(handle))
    finally:
        if handle is not None:
            logs_outcome = _teardown(manager, handle)
    return CleanDeviceResult(fn_outcome=fn_outcome, logs_outcome=logs_outcome)
