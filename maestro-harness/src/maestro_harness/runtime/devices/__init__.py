"""Ephemeral device lifecycle: one interface, one implementation per platform."""

from __future__ import annotations

from maestro_harness.runtime.devices.base import (
    PLATFORM_PROPER_NOUNS,
    DeviceHandle,
    DeviceLifecycleError,
    DeviceManager,
    Platform,
    RecordingError,
    RecordingHandle,
    SourceDevice,
    SourceDeviceError,
)
from maestro_harness.runtime.devices.factory import create_device_manager

__all__ = [
    "PLATFORM_PROPER_NOUNS",
    "DeviceHandle",
    "DeviceLifecycleError",
    "DeviceManager",
    "Platform",
    "RecordingError",
    "RecordingHandle",
    "SourceDevice",
    "SourceDeviceError",
    "create_device_manager",
]
