"""Explicit environment maps for child processes.

Steps never touch `os.environ`; they receive a mapping, and anything that
needs to extend it (e.g. put the maestro install dir on PATH) returns a new
mapping instead.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Union


def snapshot_env(base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    return dict(os.environ if base is None else base)


def with_path_entries(
    env: Mapping[str, str], entries: Iterable[Union[str, Path]]
) -> Dict[str, str]:
    """Return a copy of `env` with `entries` prepended to PATH (deduplicated)."""

    new_entries = [str(e) for e in entries if str(e)]
    current = [p for p in str(env.get("PATH", "")).split(os.pathsep) if p]
    merged: list[str] = []
    for p in new_entries + current:
        if p not in merged:
            merged.append(p)
    out = dict(env)
    out["PATH"] = os.pathsep.join(merged)
    return out


def with_overrides(env: Mapping[str, str], **overrides: str) -> Dict[str, str]:
    out = dict(env)
    out.update({k: str(v) for k, v in overrides.items()})
    return out


def maestro_bin_dir(env: Mapping[str, str]) -> Optional[Path]:
    home = env.get("HOME")
    if not home:
        return None
    return Path(home) / ".maestro" / "bin"
