"""Android controller utilities.

A thin wrapper around `adb` so that every device command made by the emulator
manager goes through one place with a stable argument list, an explicit
environment and a timeout.

Notes
-----
* Emulator/testbed use only; this is not a device-farm controller.
* `check=True` turns a non-zero exit into AndroidControllerError.
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Mapping, Optional, Sequence

from maestro_harness.runtime.devices.base import DeviceLifecycleError


class AndroidControllerError(DeviceLifecycleError):
    """Raised when an adb/emulator operation fails."""


@dataclass(frozen=True)
class AdbResult:
    args: list[str]
    stdout: str
    stderr: str
    returncode: int

    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class AttachedDevice:
    serial: str
    state: str


def _first_line(txt: str) -> str:
    lines = txt.replace("\r\n", "\n").split("\n")
    return lines[0].strip() if lines else ""


def parse_adb_devices(txt: str) -> list[AttachedDevice]:
    """Parse `adb devices [-l]` output, keeping emulator entries only."""

    out: list[AttachedDevice] = []
    for line in txt.replace("\r\n", "\n").split("\n"):
        if not line.startswith("emulator"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue
        out.append(AttachedDevice(serial=parts[0], state=parts[1]))
    return out


class AndroidController:
    """Thin wrapper around adb for emulator lifecycle commands."""

    def __init__(
        self,
        *,
        adb_path: str = "adb",
        serial: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout_s: float = 30.0,
    ) -> None:
        self._adb_path = adb_path
        self._serial = serial
        self._env = dict(env) if env is not None else None
        self._timeout_s = timeout_s

    @property
    def serial(self) -> Optional[str]:
        return self._serial

    def for_serial(self, serial: str) -> "AndroidController":
        return AndroidController(
            adb_path=self._adb_path, serial=serial, env=self._env, timeout_s=self._timeout_s
        )

    def _base_cmd(self) -> list[str]:
        cmd = [self._adb_path]
        if self._serial:
            cmd += ["-s", self._serial]
        return cmd

    def adb(self, *args: str, timeout_s: float | None = None, check: bool = True) -> AdbResult:
        """Run an adb command and return stdout/stderr/returncode."""

        cmd = self._base_cmd() + list(args)
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                env=self._env,
                timeout=self._timeout_s if timeout_s is None else float(timeout_s),
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise AndroidControllerError(f"adb command failed: {' '.join(cmd)}: {e}") from e
        result = AdbResult(
            args=cmd,
            stdout=proc.stdout,
            stderr=proc.stderr,
            returncode=proc.returncode,
        )
        if check and not result.ok():
            raise AndroidControllerError(
                f"adb command failed (rc={result.returncode}): {' '.join(cmd)}\n"
                f"stdout: {result.stdout}\n"
                f"stderr: {result.stderr}"
            )
        return result

    def adb_shell(
        self,
        command: str,
        *,
        timeout_s: float | None = None,
        check: bool = True,
    ) -> AdbResult:
        return self.adb("shell", command, timeout_s=timeout_s, check=check)

    def spawn(self, *args: str, stdout: int | IO | None = subprocess.PIPE) -> subprocess.Popen:
        """Start a long-running adb command without waiting for it."""

        cmd = self._base_cmd() + list(args)
        try:
            return subprocess.Popen(
                cmd,
                stdout=stdout,
                stderr=subprocess.STDOUT if stdout == subprocess.PIPE else None,
                stdin=subprocess.DEVNULL,
                env=self._env,
            )
        except OSError as e:
            raise AndroidControllerError(f"failed to start: {' '.join(cmd)}: {e}") from e

    def stream_to_file(self, args: Sequence[str], path: Path, *, timeout_s: float) -> None:
        """Run an adb command with stdout written straight into `path`."""

        path.parent.mkdir(parents=True, exist_ok=True)
        cmd = self._base_cmd() + list(args)
        with path.open("wb") as f:
            try:
                proc = subprocess.run(
                    cmd,
                    stdout=f,
                    stderr=subprocess.PIPE,
                    stdin=subprocess.DEVNULL,
                    env=self._env,
                    timeout=timeout_s,
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                raise AndroidControllerError(f"adb command failed: {' '.join(cmd)}: {e}") from e
        if proc.returncode != 0:
            stderr = (proc.stderr or b"").decode("utf-8", errors="replace")
            raise AndroidControllerError(
                f'"{" ".join(cmd)}" exited with code {proc.returncode}\nstderr: {stderr}'
            )

    def attached_devices(self) -> list[AttachedDevice]:
        res = self.adb("devices", "-l")
        return parse_adb_devices(res.stdout)

    def avd_name(self) -> str:
        """Name of the AVD behind this controller's emulator serial."""

        res = self.adb("emu", "avd", "name")
        return _first_line(res.stdout)

    def getprop(self, name: str) -> str:
        res = self.adb_shell(f"getprop {shlex.quote(name)}")
        return res.stdout.strip()

    def pull_file(
        self, src: str, dst: str | Path, *, timeout_s: float | None = None, check: bool = True
    ) -> AdbResult:
        dst_path = Path(dst)
        dst_path.parent.mkdir(parents=True, exist_ok=True)
        return self.adb("pull", str(src), str(dst_path), timeout_s=timeout_s, check=check)

    def kill_emulator(self) -> AdbResult:
        return self.adb("emu", "kill", check=False)
