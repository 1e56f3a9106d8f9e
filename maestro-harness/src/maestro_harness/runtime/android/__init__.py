"""Android Emulator helpers (adb wrapper + AVD clone lifecycle)."""
