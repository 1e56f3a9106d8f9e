"""Maestro harness.

Runs Maestro UI flows on throwaway iOS Simulators / Android Emulators cloned
from one booted source device, retries failing flows on a fresh device, and
merges Maestro's JUnit output with its debug metadata for reporting.
"""

__all__ = [
    "cli",
    "reporting",
    "retry",
    "runtime",
    "spec",
]
