"""`xcrun simctl` wrapper used by the iOS Simulator lifecycle."""

from __future__ import annotations

import json
import re
import subprocess
from dataclasses import dataclass
from typing import Any, Literal, Mapping, Optional

from maestro_harness.runtime.devices.base import DeviceLifecycleError

_BOOTSTATUS_UDID_RE = re.compile(r"^Monitoring boot status for .+ \((.+)\)\.$", re.MULTILINE)


class SimctlError(DeviceLifecycleError):
    """Raised when an xcrun simctl invocation fails."""


@dataclass(frozen=True)
class SimctlResult:
    args: list[str]
    stdout: str
    stderr: str
    returncode: int

    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(frozen=True)
class SimulatorDevice:
    udid: str
    name: str
    state: str
    runtime: str
    is_available: bool = True

    @property
    def display_name(self) -> str:
        return f"{self.name} ({self.udid}) on {self.runtime}"


def parse_bootstatus_udid(stdout: str) -> Optional[str]:
    m = _BOOTSTATUS_UDID_RE.search(stdout)
    return m.group(1) if m else None


def parse_simctl_devices(payload: Mapping[str, Any]) -> list[SimulatorDevice]:
    """Flatten `simctl list devices --json` output ({devices: {runtime: [...]}})."""

    out: list[SimulatorDevice] = []
    devices = payload.get("devices")
    if not isinstance(devices, Mapping):
        return out
    for runtime, entries in devices.items():
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            udid = entry.get("udid")
            name = entry.get("name")
            if not isinstance(udid, str) or not isinstance(name, str):
                continue
            out.append(
                SimulatorDevice(
                    udid=udid,
                    name=name,
                    state=str(entry.get("state") or ""),
                    runtime=str(runtime),
                    is_available=bool(entry.get("isAvailable", True)),
                )
            )
    return out


class SimctlController:
    def __init__(
        self,
        *,
        xcrun_path: str = "xcrun",
        env: Optional[Mapping[str, str]] = None,
        timeout_s: float = 120.0,
    ) -> None:
        self._xcrun_path = xcrun_path
        self._env = dict(env) if env is not None else None
        self._timeout_s = timeout_s

    @property
    def env(self) -> Optional[dict[str, str]]:
        return self._env

    def command(self, *args: str) -> list[str]:
        return [self._xcrun_path, "simctl", *args]

    def simctl(
        self, *args: str, timeout_s: float | None = None, check: bool = True
    ) -> SimctlResult:
        cmd = self.command(*args)
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                env=self._env,
                timeout=self._timeout_s if timeout_s is None else float(timeout_s),
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SimctlError(f"simctl command failed: {' '.join(cmd)}: {e}") from e
        result = SimctlResult(
            args=cmd, stdout=proc.stdout, stderr=proc.stderr, returncode=proc.returncode
        )
        if check and not result.ok():
            raise SimctlError(
                f"simctl command failed (rc={result.returncode}): {' '.join(cmd)}\n"
                f"stdout: {result.stdout}\n"
                f"stderr: {result.stderr}"
            )
        return result

    def list_devices(self, filter: Literal["available", "booted"]) -> list[SimulatorDevice]:
        res = self.simctl("list", "devices", "--json", "--no-escape-slashes", filter)
        try:
            payload = json.loads(res.stdout)
        except json.JSONDecodeError as e:
            raise SimctlError(f"Unexpected simctl list output: {e}") from e
        if not isinstance(payload, dict):
            raise SimctlError("Unexpected simctl list output: not an object")
        return parse_simctl_devices(payload)
