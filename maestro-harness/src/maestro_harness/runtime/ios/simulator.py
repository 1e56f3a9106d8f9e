"""iOS Simulator variant of the device lifecycle."""

from __future__ import annotations

import logging
import signal
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Mapping, Optional

from maestro_harness.retry import RetryExhaustedError, RetryPolicy, poll_until, retry_call
from maestro_harness.runtime.devices.base import (
    DeviceHandle,
    DeviceManager,
    RecordingError,
    RecordingHandle,
    SourceDevice,
    SourceDeviceError,
)
from maestro_harness.runtime.ios.simctl import SimctlController, SimctlError, parse_bootstatus_udid

logger = logging.getLogger(__name__)

DATA_MIGRATOR_PROCESS = "com.apple.datamigrator"
RECORDING_STARTED_MARKER = "Recording started"


class _OutputWatcher(threading.Thread):
    """Accumulates a child's combined stdout/stderr so it can be searched."""

    def __init__(self, process: subprocess.Popen) -> None:
        super().__init__(daemon=True)
        self._process = process
        self._lock = threading.Lock()
        self._chunks: list[str] = []

    def run(self) -> None:
        stream = self._process.stdout
        if stream is None:
            return
        for line in iter(stream.readline, ""):
            with self._lock:
                self._chunks.append(line)

    @property
    def output(self) -> str:
        with self._lock:
            return "".join(self._chunks)


class IosSimulatorManager(DeviceManager):
    platform = "ios"

    def __init__(
        self,
        *,
        env: Mapping[str, str],
        controller: Optional[SimctlController] = None,
        ready_policy: RetryPolicy = RetryPolicy.every_second(for_s=30 * 60),
        data_migration_policy: RetryPolicy = RetryPolicy.every_second(for_s=30 * 60),
        recording_start_policy: RetryPolicy = RetryPolicy.every_second(for_s=20),
        boot_timeout_s: float = 30 * 60,
    ) -> None:
        self._env = dict(env)
        self._simctl = controller or SimctlController(env=self._env)
        self._ready_policy = ready_policy
        self._data_migration_policy = data_migration_policy
        self._recording_start_policy = recording_start_policy
        self._boot_timeout_s = boot_timeout_s

    def find_source_device(self) -> SourceDevice:
        booted = self._simctl.list_devices("booted")
        if not booted:
            raise SourceDeviceError("No booted iOS Simulator found.")
        if len(booted) > 1:
            raise SourceDeviceError("Multiple booted iOS Simulators found.")
        device = booted[0]
        logger.info("Running tests on iOS Simulator: %s.", device.name)
        return SourceDevice(platform="ios", identifier=device.name, booted_id=device.udid)

    def prepare_source_device(self, source: SourceDevice) -> None:
        logger.info("Preparing Simulator for tests...")
        self._simctl.simctl("shutdown", source.booted_id)

    def clone(self, source: SourceDevice, dest_name: str) -> None:
        self._simctl.simctl("clone", source.identifier, dest_name)

    def start(self, source: SourceDevice, name: str) -> DeviceHandle:
        res = self._simctl.simctl("bootstatus", name, "-b", timeout_s=self._boot_timeout_s)
        udid = parse_bootstatus_udid(res.stdout)
        if not udid:
            raise SimctlError("Failed to parse UDID from bootstatus result.")
        return DeviceHandle(
            platform="ios",
            source_identifier=source.identifier,
            ephemeral_identifier=name,
            booted_id=udid,
        )

    def is_data_migrator_running(self) -> bool:
        """True while any com.apple.datamigrator process exists (simulator still migrating)."""

        try:
            proc = subprocess.run(
                ["ps", "-eo", "pid,comm"],
                capture_output=True,
                text=True,
                env=self._env,
                timeout=30,
                check=True,
            )
        except (OSError, subprocess.SubprocessError):
            return False
        return DATA_MIGRATOR_PROCESS in proc.stdout

    def wait_for_ready(self, handle: DeviceHandle) -> None:
        try:
            retry_call(
                lambda: self._simctl.simctl("io", handle.booted_id, "screenshot", "/dev/null"),
                policy=self._ready_policy,
                describe=f"screenshot {handle.ephemeral_identifier}",
            )
        except RetryExhaustedError as e:
            raise SimctlError(str(e)) from e

        # Data migration must finish before the simulator is usable.
        if not poll_until(
            lambda: not self.is_data_migrator_running(), policy=self._data_migration_policy
        ):
            raise SimctlError(f"{DATA_MIGRATOR_PROCESS} still running")

    def collect_logs(self, handle: DeviceHandle) -> Path:
        output_dir = Path(tempfile.mkdtemp(prefix="ios-simulator-logs-"))
        output_path = output_dir / f"{handle.ephemeral_identifier}.logarchive"
        self._simctl.simctl(
            "spawn",
            handle.ephemeral_identifier,
            "log",
            "collect",
            "--output",
            str(output_path),
            timeout_s=600,
        )
        return output_path

    def delete(self, handle: DeviceHandle) -> None:
        self._simctl.simctl("shutdown", handle.ephemeral_identifier)
        self._simctl.simctl("delete", handle.ephemeral_identifier)

    def delete_clone(self, source: SourceDevice, name: str) -> None:
        # bootstatus may have left the clone half booted.
        self._simctl.simctl("shutdown", name, check=False)
        self._simctl.simctl("delete", name)

    def start_screen_recording(self, handle: DeviceHandle) -> RecordingHandle:
        output_dir = Path(tempfile.mkdtemp(prefix="ios-screen-recording-"))
        output_path = output_dir / f"{handle.ephemeral_identifier}.mov"
        cmd = self._simctl.command(
            "io", handle.ephemeral_identifier, "recordVideo", "-f", str(output_path)
        )
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                env=self._env,
            )
        except OSError as e:
            raise RecordingError(f"Recording process failed to start: {e}") from e

        watcher = _OutputWatcher(process)
        watcher.start()

        def _started() -> bool:
            if RECORDING_STARTED_MARKER in watcher.output:
                return True
            if process.poll() is not None:
                raise RecordingError(
                    f"Recording process exited with code {process.returncode}: {watcher.output}"
                )
            return False

        try:
            started = poll_until(_started, policy=self._recording_start_policy)
        except RecordingError:
            watcher.join(timeout=5)
            raise
        if not started:
            process.kill()
            process.wait()
            raise RecordingError("Recording not started in time.")

        return RecordingHandle(process=process, output_path=output_path, extra={"watcher": watcher})

    def stop_screen_recording(self, handle: DeviceHandle, recording: RecordingHandle) -> Path:
        process = recording.process
        if process.poll() is None:
            process.send_signal(signal.SIGINT)
        try:
            process.wait(timeout=60)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
            raise RecordingError("Recording process did not stop in time.")
        finally:
            watcher = recording.extra.get("watcher")
            if isinstance(watcher, threading.Thread):
                watcher.join(timeout=5)

        if recording.output_path is None or not recording.output_path.exists():
            raise RecordingError(
                f"Recording output missing (rc={process.returncode}): {recording.output_path}"
            )
        return recording.output_path
