"""iOS Simulator helpers (simctl wrapper + simulator clone lifecycle)."""
