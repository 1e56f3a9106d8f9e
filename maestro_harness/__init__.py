"""Import shim for the src/ layout.

The real package lives under `maestro-harness/src/maestro_harness/`. This shim
lets `python -m maestro_harness.cli...` work from the repo root without
setting PYTHONPATH by extending the package search path to the src directory.
"""

from __future__ import annotations

from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
_REAL_PKG = _REPO_ROOT / "maestro-harness" / "src" / "maestro_harness"
if _REAL_PKG.is_dir():
    __path__.append(str(_REAL_PKG))  # type: ignore[name-defined]

__all__ = [
    "cli",
    "reporting",
    "retry",
    "runtime",
    "spec",
]
