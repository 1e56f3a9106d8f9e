from __future__ import annotations

import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[2]
    src = repo_root / "maestro-harness" / "src"
    src_str = str(src)
    if src_str not in sys.path:
        sys.path.insert(0, src_str)

    # Shared fakes live under `tests/unit/runtime` (e.g. fake_devices).
    runtime_tests_root = Path(__file__).resolve().parent / "unit" / "runtime"
    runtime_tests_root_str = str(runtime_tests_root)
    if runtime_tests_root.is_dir() and runtime_tests_root_str not in sys.path:
        sys.path.insert(0, runtime_tests_root_str)


_ensure_src_on_path()
