"""Flow discovery and the YAML/JSON schemas it validates against."""

from __future__ import annotations

from maestro_harness.spec.flow_discovery import (
    FlowConfigError,
    FlowSpec,
    WorkspaceConfig,
    discover_all_flows,
    discover_flows,
    matches_tags,
    parse_tags_argument,
)
from maestro_harness.spec.spec_loader import SpecValidationError, validate_against_schema

__all__ = [
    "FlowConfigError",
    "FlowSpec",
    "SpecValidationError",
    "WorkspaceConfig",
    "discover_all_flows",
    "discover_flows",
    "matches_tags",
    "parse_tags_argument",
    "validate_against_schema",
]
