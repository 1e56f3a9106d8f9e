"""Android Emulator variant of the device lifecycle.

Clones are made at the AVD level: the source AVD directory and ini are copied
under a new name, the copy is booted headless, and the AVD is deleted again
after the attempt.
"""

from __future__ import annotations

import logging
import shutil
import signal
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Mapping, Optional

from maestro_harness.retry import RetryExhaustedError, RetryPolicy, poll_until, retry_call
from maestro_harness.runtime.android.controller import AndroidController, AndroidControllerError
from maestro_harness.runtime.devices.base import (
    DeviceHandle,
    DeviceManager,
    RecordingError,
    RecordingHandle,
    SourceDevice,
    SourceDeviceError,
)
from maestro_harness.runtime.env import with_overrides

logger = logging.getLogger(__name__)

REMOTE_RECORDING_PATH = "/sdcard/maestro-recording.mp4"
REMOTE_READY_MARKER = "/sdcard/.maestro-recording-ready"

EMULATOR_ARGS = (
    "-no-window",
    "-no-boot-anim",
    "-writable-system",
    "-noaudio",
    "-no-snapshot-save",
)


def _remove_lockfiles(avd_dir: Path) -> None:
    for lockfile in avd_dir.rglob("*.lock"):
        if lockfile.is_dir():
            shutil.rmtree(lockfile, ignore_errors=True)
        else:
            lockfile.unlink(missing_ok=True)


def _is_text_file(path: Path) -> bool:
    # Same heuristic as grep --binary-files=without-match.
    try:
        with path.open("rb") as f:
            return b"\0" not in f.read(8192)
    except OSError:
        return False


def _files_mentioning(root: Path, needle: str) -> list[Path]:
    out: list[Path] = []
    encoded = needle.encode("utf-8")
    for path in sorted(root.rglob("*")):
        if path.is_symlink() or not path.is_file() or not _is_text_file(path):
            continue
        try:
            if encoded in path.read_bytes():
                out.append(path)
        except OSError:
            continue
    return out


class AndroidEmulatorManager(DeviceManager):
    platform = "android"

    def __init__(
        self,
        *,
        env: Mapping[str, str],
        adb_path: str = "adb",
        avdmanager_path: str = "avdmanager",
        controller: Optional[AndroidController] = None,
        boot_policy: RetryPolicy = RetryPolicy.every_second(for_s=3 * 60),
        storage_ready_policy: RetryPolicy = RetryPolicy.every_second(for_s=30),
        recording_release_policy: RetryPolicy = RetryPolicy.every_second(for_s=30),
        source_shutdown_wait_s: float = 1.0,
        logcat_timeout_s: float = 300.0,
    ) -> None:
        self._env = dict(env)
        self._controller = controller or AndroidController(adb_path=adb_path, env=self._env)
        self._avdmanager_path = avdmanager_path
        self._boot_policy = boot_policy
        self._storage_ready_policy = storage_ready_policy
        self._recording_release_policy = recording_release_policy
        self._source_shutdown_wait_s = source_shutdown_wait_s
        self._logcat_timeout_s = logcat_timeout_s

    # ------------------------------- Paths -------------------------------

    @property
    def avd_home(self) -> Path:
        explicit = self._env.get("ANDROID_AVD_HOME")
        if explicit:
            return Path(explicit)
        return Path(self._env.get("HOME", str(Path.home()))) / ".android" / "avd"

    @property
    def emulator_binary(self) -> str:
        android_home = self._env.get("ANDROID_HOME") or self._env.get("ANDROID_SDK_ROOT")
        if not android_home:
            return "emulator"
        return str(Path(android_home) / "emulator" / "emulator")

    # ---------------------------- Source device ----------------------------

    def find_source_device(self) -> SourceDevice:
        devices = self._controller.attached_devices()
        if not devices:
            raise SourceDeviceError("No booted Android Emulator found.")
        if len(devices) > 1:
            raise SourceDeviceError("Multiple booted Android Emulators found.")

        serial = devices[0].serial
        avd_name = self._controller.for_serial(serial).avd_name()
        logger.info("Running tests on Android Emulator: %s.", avd_name)
        return SourceDevice(platform="android", identifier=avd_name, booted_id=serial)

    def prepare_source_device(self, source: SourceDevice) -> None:
        logger.info("Preparing Emulator for tests...")
        self._controller.for_serial(source.booted_id).kill_emulator()
        # The emulator exits ~1s after `emu kill` (ANDROID_EMULATOR_WAIT_TIME_BEFORE_KILL).
        time.sleep(self._source_shutdown_wait_s)

    # ------------------------------ Lifecycle ------------------------------

    def clone(self, source: SourceDevice, dest_name: str) -> None:
        avd_home = self.avd_home
        src_dir = avd_home / f"{source.identifier}.avd"
        src_ini = avd_home / f"{source.identifier}.ini"
        dest_dir = avd_home / f"{dest_name}.avd"
        dest_ini = avd_home / f"{dest_name}.ini"

        try:
            shutil.rmtree(dest_dir, ignore_errors=True)
            dest_ini.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove destination device files %s: %s", dest_name, e)

        try:
            _remove_lockfiles(src_dir)
        except OSError as e:
            logger.warning("Failed to remove lockfiles from source device %s: %s", src_dir, e)

        try:
            shutil.copytree(src_dir, dest_dir, symlinks=True, dirs_exist_ok=True)
            shutil.copy2(src_ini, dest_ini, follow_symlinks=False)
        except OSError as e:
            raise AndroidControllerError(
                f"Failed to copy AVD {source.identifier} to {dest_name}: {e}"
            ) from e

        try:
            _remove_lockfiles(dest_dir)
        except OSError as e:
            logger.warning(
                "Failed to remove lockfiles from destination device %s: %s", dest_name, e
            )

        for path in _files_mentioning(dest_dir, source.identifier) + [dest_ini]:
            try:
                txt = path.read_text(encoding="utf-8")
                path.write_text(txt.replace(source.identifier, dest_name), encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Failed to replace device name in %s: %s", path, e)

    def _serial_for_avd(self, avd_name: str) -> Optional[str]:
        try:
            devices = self._controller.attached_devices()
        except AndroidControllerError:
            return None
        for device in devices:
            try:
                if self._controller.for_serial(device.serial).avd_name() == avd_name:
                    return device.serial
            except AndroidControllerError:
                continue
        return None

    def start(self, source: SourceDevice, name: str) -> DeviceHandle:
        extra = self._env.get("ANDROID_EMULATOR_EXTRA_ARGS")
        cmd = [self.emulator_binary, *EMULATOR_ARGS, "-avd", name, "-accel", "on"]
        if extra:
            cmd += extra.split()

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                env=with_overrides(self._env, ANDROID_EMULATOR_WAIT_TIME_BEFORE_KILL="1"),
                start_new_session=True,
            )
        except OSError as e:
            raise AndroidControllerError(f"Failed to start emulator {name}: {e}") from e

        serials: list[str] = []

        def _attached() -> bool:
            # An exited emulator will never attach; stop polling right away.
            if process.poll() is not None:
                raise AndroidControllerError(
                    f"Emulator {name} exited early with code {process.returncode}."
                )
            serial = self._serial_for_avd(name)
            if serial:
                serials.append(serial)
                return True
            return False

        if not poll_until(_attached, policy=self._boot_policy):
            process.kill()
            process.wait()
            raise AndroidControllerError(
                f"Failed to configure emulator ({name}): emulator with required ID not found."
            )

        return DeviceHandle(
            platform="android",
            source_identifier=source.identifier,
            ephemeral_identifier=name,
            booted_id=serials[-1],
            process=process,
        )

    def wait_for_ready(self, handle: DeviceHandle) -> None:
        ctr = self._controller.for_serial(handle.booted_id)

        def _boot_completed() -> None:
            if not ctr.getprop("sys.boot_completed").startswith("1"):
                raise AndroidControllerError(
                    f"Emulator ({handle.booted_id}) boot has not completed."
                )

        try:
            retry_call(_boot_completed, policy=self._boot_policy, describe="boot completed")
        except RetryExhaustedError as e:
            raise AndroidControllerError(str(e)) from e

    def collect_logs(self, handle: DeviceHandle) -> Path:
        output_dir = Path(tempfile.mkdtemp(prefix="android-emulator-logs-"))
        output_path = output_dir / f"{handle.booted_id}.log"
        self._controller.for_serial(handle.booted_id).stream_to_file(
            ["logcat", "-d"], output_path, timeout_s=self._logcat_timeout_s
        )
        return output_path

    def _is_attached(self, serial: str) -> bool:
        try:
            return any(d.serial == serial for d in self._controller.attached_devices())
        except AndroidControllerError:
            return True

    def _avdmanager_delete(self, avd_name: str) -> None:
        try:
            subprocess.run(
                [self._avdmanager_path, "delete", "avd", "-n", avd_name],
                capture_output=True,
                text=True,
                env=self._env,
                timeout=120,
                check=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise AndroidControllerError(f"Failed to delete AVD {avd_name}: {e}") from e

    def delete(self, handle: DeviceHandle) -> None:
        ctr = self._controller.for_serial(handle.booted_id)
        try:
            try:
                avd_name = ctr.avd_name() or handle.ephemeral_identifier
            except AndroidControllerError:
                avd_name = handle.ephemeral_identifier

            ctr.kill_emulator()
            detached = poll_until(
                lambda: not self._is_attached(handle.booted_id), policy=self._boot_policy
            )
            if not detached:
                raise AndroidControllerError(f"Emulator ({handle.booted_id}) is still attached.")

            self._avdmanager_delete(avd_name)
        finally:
            process = handle.process
            if process is not None and process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=30)
                except subprocess.TimeoutExpired:
                    process.kill()
                    process.wait()

    def delete_clone(self, source: SourceDevice, name: str) -> None:
        try:
            self._avdmanager_delete(name)
        except AndroidControllerError as e:
            logger.warning("%s; removing AVD files directly.", e)
        avd_home = self.avd_home
        shutil.rmtree(avd_home / f"{name}.avd", ignore_errors=True)
        (avd_home / f"{name}.ini").unlink(missing_ok=True)

    # ------------------------------ Recording ------------------------------

    def start_screen_recording(self, handle: DeviceHandle) -> RecordingHandle:
        ctr = self._controller.for_serial(handle.booted_id)

        def _storage_writable() -> bool:
            try:
                return ctr.adb_shell(f"touch {REMOTE_READY_MARKER}", check=False).ok()
            except AndroidControllerError:
                return False

        # A freshly booted emulator may not have /sdcard mounted yet.
        if not poll_until(_storage_writable, policy=self._storage_ready_policy):
            raise RecordingError(
                f"Emulator ({handle.booted_id}) filesystem was not ready in time."
            )

        args = ["shell", "screenrecord", "--verbose", REMOTE_RECORDING_PATH]
        try:
            help_res = ctr.adb_shell("screenrecord --help", check=False)
        except AndroidControllerError as e:
            raise RecordingError(str(e)) from e
        if "remove the time limit" in (help_res.stdout + help_res.stderr):
            args += ["--time-limit", "0"]

        try:
            process = ctr.spawn(*args, stdout=subprocess.DEVNULL)
        except AndroidControllerError as e:
            raise RecordingError(str(e)) from e
        return RecordingHandle(process=process, remote_path=REMOTE_RECORDING_PATH)

    def stop_screen_recording(self, handle: DeviceHandle, recording: RecordingHandle) -> Path:
        ctr = self._controller.for_serial(handle.booted_id)
        remote = recording.remote_path or REMOTE_RECORDING_PATH

        if recording.process.poll() is None:
            recording.process.send_signal(signal.SIGHUP)
        try:
            recording.process.wait(timeout=30)
        except subprocess.TimeoutExpired:
            recording.process.kill()
            recording.process.wait()

        def _released() -> bool:
            try:
                res = ctr.adb_shell(f"lsof -t {remote}", check=False)
            except AndroidControllerError:
                return False
            return res.stdout.strip() == ""

        if not poll_until(_released, policy=self._recording_release_policy):
            raise RecordingError("Recording file is busy.")

        output_dir = Path(tempfile.mkdtemp(prefix="android-screen-recording-"))
        output_path = output_dir / f"{handle.booted_id}.mp4"
        try:
            ctr.pull_file(remote, output_path)
        except AndroidControllerError as e:
            raise RecordingError(f"Failed to pull screen recording: {e}") from e
        return output_path
