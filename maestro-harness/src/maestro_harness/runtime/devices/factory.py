from __future__ import annotations

from typing import Mapping

from maestro_harness.runtime.devices.base import DeviceManager


def create_device_manager(
    platform: str,
    *,
    env: Mapping[str, str],
    adb_path: str = "adb",
    xcrun_path: str = "xcrun",
) -> DeviceManager:
    """Pick the device lifecycle implementation for a platform tag."""

    normalized = str(platform).strip().lower()
    if normalized == "ios":
        from maestro_harness.runtime.ios.simctl import SimctlController
        from maestro_harness.runtime.ios.simulator import IosSimulatorManager

        return IosSimulatorManager(
            env=env, controller=SimctlController(xcrun_path=xcrun_path, env=env)
        )
    if normalized == "android":
        from maestro_harness.runtime.android.emulator import AndroidEmulatorManager

        return AndroidEmulatorManager(env=env, adb_path=adb_path)
    raise ValueError(f"Unsupported platform: {platform!r} (expected 'ios' or 'android')")
