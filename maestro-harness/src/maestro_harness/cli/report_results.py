from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path
from typing import Optional, Sequence

from maestro_harness.cli._common import configure_logging
from maestro_harness.reporting.maestro_results import parse_maestro_results
from maestro_harness.reporting.submit import (
    GraphqlResultsClient,
    default_tests_directory,
    report_maestro_test_results,
)

logger = logging.getLogger(__name__)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Merge Maestro JUnit reports with debug metadata and report them."
    )
    parser.add_argument(
        "--junit_report_directory",
        type=str,
        default=None,
        help="Directory holding JUnit XML (default: the tests directory).",
    )
    parser.add_argument(
        "--tests_directory",
        type=Path,
        default=None,
        help="Maestro debug output directory (default: $HOME/.maestro/tests).",
    )
    parser.add_argument(
        "--project_root",
        type=Path,
        default=Path(os.getcwd()),
        help="Flow paths are reported relative to this directory (default: cwd).",
    )
    parser.add_argument("--json", action="store_true", help="Print merged results as JSON.")
    parser.add_argument(
        "--graphql_url",
        type=str,
        default=os.environ.get("MAESTRO_HARNESS_GRAPHQL_URL"),
        help="GraphQL endpoint to submit results to (env: MAESTRO_HARNESS_GRAPHQL_URL).",
    )
    parser.add_argument(
        "--token",
        type=str,
        default=os.environ.get("MAESTRO_HARNESS_TOKEN"),
        help="Bearer token (env: MAESTRO_HARNESS_TOKEN).",
    )
    parser.add_argument(
        "--job_id",
        type=str,
        default=os.environ.get("MAESTRO_HARNESS_JOB_ID"),
        help="Workflow job id results belong to (env: MAESTRO_HARNESS_JOB_ID).",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args(argv)

    configure_logging(verbose=args.verbose)

    tests_directory = args.tests_directory or default_tests_directory(os.environ)
    junit_dir = args.junit_report_directory
    if junit_dir is None:
        junit_dir = str(tests_directory)
    junit_path = Path(junit_dir) if junit_dir.strip() else None

    if args.json:
        results = parse_maestro_results(junit_path, tests_directory, args.project_root)
        print(json.dumps([r.to_dict() for r in results], indent=2, sort_keys=True))

    if args.graphql_url:
        report_maestro_test_results(
            junit_report_directory=junit_path,
            tests_directory=tests_directory,
            project_root=args.project_root,
            job_id=args.job_id,
            client=GraphqlResultsClient(args.graphql_url, args.token),
        )
    elif not args.json:
        logger.info("No GraphQL URL configured; nothing to submit.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
