"""Device capability interface shared by the iOS and Android variants."""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional

Platform = Literal["ios", "android"]

PLATFORM_PROPER_NOUNS: dict[str, str] = {"ios": "iOS", "android": "Android"}


class DeviceLifecycleError(RuntimeError):
    """Raised when clone/start/wait-ready/log-collect/delete fails."""


class SourceDeviceError(RuntimeError):
    """Zero or several booted source devices; the run cannot start."""


class RecordingError(RuntimeError):
    """Raised when a screen recording cannot be started or retrieved."""


@dataclass(frozen=True)
class SourceDevice:
    platform: Platform
    # Simulator name (iOS) or AVD name (Android); what clones are made from.
    identifier: str
    # UDID (iOS) or adb serial (Android) of the booted instance.
    booted_id: str


@dataclass
class DeviceHandle:
    platform: Platform
    source_identifier: str
    ephemeral_identifier: str
    booted_id: str
    # Detached emulator process retained for a deliberate kill on delete.
    process: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)


@dataclass
class RecordingHandle:
    process: subprocess.Popen = field(repr=False)
    output_path: Optional[Path] = None
    remote_path: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


class DeviceManager(ABC):
    """Platform-specific lifecycle for ephemeral cloned devices.

    Managers run strictly sequentially: cloning and booting mutate shared
    on-disk simulator/emulator state.
    """

    platform: Platform

    @abstractmethod
    def find_source_device(self) -> SourceDevice:
        """Return the single booted device; raise SourceDeviceError otherwise."""

    @abstractmethod
    def prepare_source_device(self, source: SourceDevice) -> None:
        """Stop the source so it can be cloned."""

    @abstractmethod
    def clone(self, source: SourceDevice, dest_name: str) -> None: ...

    @abstractmethod
    def start(self, source: SourceDevice, name: str) -> DeviceHandle: ...

    @abstractmethod
    def wait_for_ready(self, handle: DeviceHandle) -> None: ...

    @abstractmethod
    def collect_logs(self, handle: DeviceHandle) -> Path: ...

    @abstractmethod
    def delete(self, handle: DeviceHandle) -> None: ...

    @abstractmethod
    def delete_clone(self, source: SourceDevice, name: str) -> None:
        """Remove a clone that never produced a handle (start failed)."""

    @abstractmethod
    def start_screen_recording(self, handle: DeviceHandle) -> RecordingHandle: ...

    @abstractmethod
    def stop_screen_recording(self, handle: DeviceHandle, recording: RecordingHandle) -> Path: ...

    def describe(self, handle: DeviceHandle) -> str:
        return f"{PLATFORM_PROPER_NOUNS[self.platform]} device {handle.ephemeral_identifier}"
