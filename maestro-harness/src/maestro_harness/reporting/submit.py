"""Report merged Maestro results to a GraphQL endpoint.

Reporting is best effort: every skip and every submission failure is logged
and swallowed so a reporting outage never fails the job that produced the
results.
"""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol, Sequence

import httpx

from maestro_harness.reporting.maestro_results import MaestroFlowResult, parse_maestro_results

logger = logging.getLogger(__name__)

CREATE_TEST_CASE_RESULTS_MUTATION = """
mutation CreateWorkflowDeviceTestCaseResults(
  $input: CreateWorkflowDeviceTestCaseResultsInput!
) {
  workflowDeviceTestCaseResult {
    createWorkflowDeviceTestCaseResults(input: $input) {
      id
    }
  }
}
""".strip()

_STATUS_MAP = {"passed": "PASSED", "failed": "FAILED"}


class DuplicateTestCaseNameError(RuntimeError):
    def __init__(self, names: Sequence[str]) -> None:
        super().__init__(f"Duplicate test case names found in JUnit output: {', '.join(names)}")
        self.names = list(names)


class GraphqlError(RuntimeError):
    pass


class ResultsClient(Protocol):
    def create_test_case_results(
        self, *, job_id: str, test_case_results: Sequence[Mapping[str, Any]]
    ) -> list[str]: ...


def default_tests_directory(env: Mapping[str, str]) -> Path:
    home = env.get("HOME") or str(Path.home())
    return Path(home) / ".maestro" / "tests"


def build_test_case_results(results: Sequence[MaestroFlowResult]) -> list[dict[str, Any]]:
    """Map merged results to the mutation input; refuse batches with repeated names."""

    counts = Counter(r.name for r in results)
    duplicates = sorted(name for name, n in counts.items() if n > 1)
    if duplicates:
        raise DuplicateTestCaseNameError(duplicates)

    return [
        {
            "name": r.name,
            "path": r.path,
            "status": _STATUS_MAP.get(r.status, "FAILED"),
            "errorMessage": r.error_message,
            "duration": r.duration,
            "retryCount": r.retry_count,
            "tags": list(r.tags),
            "properties": dict(r.properties),
        }
        for r in results
    ]


class GraphqlResultsClient:
    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        *,
        timeout_s: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._url = url
        self._token = token
        self._timeout_s = float(timeout_s)
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def execute(self, query: str, variables: Mapping[str, Any]) -> dict[str, Any]:
        with httpx.Client(timeout=self._timeout_s, transport=self._transport) as client:
            resp = client.post(
                self._url,
                json={"query": query, "variables": dict(variables)},
                headers=self._headers(),
            )
            resp.raise_for_status()
            payload = resp.json()

        if not isinstance(payload, dict):
            raise GraphqlError("GraphQL response is not an object")
        errors = payload.get("errors")
        if errors:
            messages = [
                str(e.get("message")) if isinstance(e, Mapping) else str(e) for e in errors
            ]
            raise GraphqlError("; ".join(messages))
        data = payload.get("data")
        if not isinstance(data, dict):
            raise GraphqlError("GraphQL response has no data")
        return data

    def create_test_case_results(
        self, *, job_id: str, test_case_results: Sequence[Mapping[str, Any]]
    ) -> list[str]:
        data = self.execute(
            CREATE_TEST_CASE_RESULTS_MUTATION,
            {"input": {"workflowJobId": job_id, "testCaseResults": list(test_case_results)}},
        )
        created = (data.get("workflowDeviceTestCaseResult") or {}).get(
            "createWorkflowDeviceTestCaseResults"
        ) or []
        return [str(item["id"]) for item in created if isinstance(item, Mapping) and "id" in item]


def report_maestro_test_results(
    *,
    junit_report_directory: Optional[Path],
    tests_directory: Path,
    project_root: Path,
    job_id: Optional[str],
    client: ResultsClient,
) -> Optional[list[str]]:
    """Parse, merge and submit results; returns created ids or None when skipped/failed."""

    if not junit_report_directory or not str(junit_report_directory).strip():
        logger.info("No JUnit report directory provided, skipping test results report.")
        return None
    if not job_id:
        logger.info("Not running in a workflow job, skipping test results report.")
        return None

    results = parse_maestro_results(Path(junit_report_directory), tests_directory, project_root)
    if not results:
        logger.info("No Maestro test results found, skipping report.")
        return None

    try:
        payload = build_test_case_results(results)
    except DuplicateTestCaseNameError as e:
        logger.error(
            "%s. Each flow must have a unique name; skipping test results report.", e
        )
        return None

    try:
        ids = client.create_test_case_results(job_id=job_id, test_case_results=payload)
    except Exception as e:
        logger.error("Failed to report Maestro test results: %s", e, exc_info=e)
        return None
    logger.info("Reported %d Maestro test case result(s).", len(payload))
    return ids
