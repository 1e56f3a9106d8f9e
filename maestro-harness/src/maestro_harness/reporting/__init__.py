"""JUnit + debug-metadata aggregation and result submission."""

from __future__ import annotations

from maestro_harness.reporting.junit import (
    JUnitTestCaseResult,
    ResultParseError,
    parse_junit_test_cases,
)
from maestro_harness.reporting.maestro_results import (
    FlowMetadata,
    MaestroFlowResult,
    extract_flow_key,
    parse_flow_metadata,
    parse_maestro_results,
)
from maestro_harness.reporting.submit import (
    DuplicateTestCaseNameError,
    GraphqlError,
    GraphqlResultsClient,
    build_test_case_results,
    report_maestro_test_results,
)

__all__ = [
    "DuplicateTestCaseNameError",
    "FlowMetadata",
    "GraphqlError",
    "GraphqlResultsClient",
    "JUnitTestCaseResult",
    "MaestroFlowResult",
    "ResultParseError",
    "build_test_case_results",
    "extract_flow_key",
    "parse_flow_metadata",
    "parse_junit_test_cases",
    "parse_maestro_results",
    "report_maestro_test_results",
]
