"""Merge JUnit test cases with Maestro's per-run debug metadata.

Maestro writes `ai-<flow>.json` into `<tests_dir>/<YYYY-MM-DD_HHMMSS>/` for
every flow execution. That file is the only place the flow's source path is
recorded, and the number of timestamp directories holding it stands in for
the number of times the flow ran.
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from maestro_harness.reporting.junit import JUnitTestCaseResult, parse_junit_test_cases
from maestro_harness.spec.spec_loader import (
    FLOW_METADATA_SCHEMA,
    SpecValidationError,
    validate_against_schema,
)

logger = logging.getLogger(__name__)

TIMESTAMP_DIR_RE = re.compile(r"^\d{4}-\d{2}-\d{2}_\d{6}$")
METADATA_PREFIX = "ai-"
_METADATA_FILE_RE = re.compile(r"^ai-(.+)\.json$")


@dataclass(frozen=True)
class FlowMetadata:
    flow_name: str
    flow_file_path: str


@dataclass(frozen=True)
class MaestroFlowResult:
    name: str
    path: str
    status: str  # "passed" | "failed"
    duration: int
    retry_count: int
    error_message: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    properties: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "path": self.path,
            "status": self.status,
            "errorMessage": self.error_message,
            "duration": self.duration,
            "retryCount": self.retry_count,
            "tags": list(self.tags),
            "properties": dict(self.properties),
        }


def parse_flow_metadata(path: Path) -> Optional[FlowMetadata]:
    """Parse one `ai-*.json`; any read, JSON or shape problem yields None."""

    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        validate_against_schema(data, FLOW_METADATA_SCHEMA, where=str(path))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError, SpecValidationError) as e:
        logger.debug("Ignoring metadata file %s: %s", path, e)
        return None
    return FlowMetadata(flow_name=data["flow_name"], flow_file_path=data["flow_file_path"])


def extract_flow_key(filename: str, prefix: str = METADATA_PREFIX) -> Optional[str]:
    """`ai-home.json` -> `home`; None for anything else."""

    pattern = _METADATA_FILE_RE
    if prefix != METADATA_PREFIX:
        pattern = re.compile(rf"^{re.escape(prefix)}(.+)\.json$")
    m = pattern.match(filename)
    return m.group(1) if m else None


def _timestamp_dirs(tests_directory: Path) -> list[Path]:
    try:
        entries = list(tests_directory.iterdir())
    except OSError:
        return []
    return sorted(p for p in entries if p.is_dir() and TIMESTAMP_DIR_RE.match(p.name))


def collect_flow_metadata(tests_directory: Path) -> tuple[dict[str, str], Counter[str]]:
    """Return (flow name -> latest flow_file_path, flow name -> run count)."""

    paths: dict[str, str] = {}
    counts: Counter[str] = Counter()
    for run_dir in _timestamp_dirs(Path(tests_directory)):
        for entry in sorted(run_dir.iterdir()):
            if not entry.is_file() or extract_flow_key(entry.name) is None:
                continue
            metadata = parse_flow_metadata(entry)
            if metadata is None:
                continue
            # Directories are visited oldest first, so the last write wins.
            paths[metadata.flow_name] = metadata.flow_file_path
            counts[metadata.flow_name] += 1
    return paths, counts


def relativize_flow_path(flow_file_path: str, project_root: Path) -> str:
    """Path relative to `project_root` with symlinks resolved on both sides.

    Returns `flow_file_path` unchanged when it is relative, lies outside the
    root, or cannot be resolved.
    """

    if not os.path.isabs(flow_file_path):
        return flow_file_path
    try:
        real_flow = os.path.realpath(flow_file_path)
        real_root = os.path.realpath(project_root)
        rel = os.path.relpath(real_flow, real_root)
    except (OSError, ValueError):
        return flow_file_path
    if rel == ".." or rel.startswith(".." + os.sep):
        return flow_file_path
    return rel


def _merge(
    case: JUnitTestCaseResult,
    *,
    paths: dict[str, str],
    counts: Counter[str],
    project_root: Path,
) -> MaestroFlowResult:
    flow_file_path = paths.get(case.name)
    if flow_file_path is None:
        path = case.name
        retry_count = 0
    else:
        path = relativize_flow_path(flow_file_path, project_root)
        # Counts runs, not retries; stale directories from older runs are included.
        retry_count = max(0, counts[case.name] - 1)
    return MaestroFlowResult(
        name=case.name,
        path=path,
        status=case.status,
        duration=case.duration,
        retry_count=retry_count,
        error_message=case.error_message,
        tags=list(case.tags),
        properties=dict(case.properties),
    )


def parse_maestro_results(
    junit_directory: Optional[Path],
    tests_directory: Path,
    project_root: Path,
) -> list[MaestroFlowResult]:
    cases = parse_junit_test_cases(junit_directory)
    if not cases:
        return []

    paths, counts = collect_flow_metadata(Path(tests_directory))
    return [
        _merge(case, paths=paths, counts=counts, project_root=Path(project_root))
        for case in cases
    ]
