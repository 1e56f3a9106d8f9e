from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Optional, Sequence

from maestro_harness.cli._common import configure_logging
from maestro_harness.spec.flow_discovery import discover_all_flows, parse_tags_argument


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="List the Maestro flow files a test run would execute."
    )
    parser.add_argument(
        "--flow_path",
        action="append",
        required=True,
        help="Flow file or workspace directory (repeatable).",
    )
    parser.add_argument(
        "--include_tags", type=str, default=None, help="Comma-separated tags to include."
    )
    parser.add_argument(
        "--exclude_tags", type=str, default=None, help="Comma-separated tags to exclude."
    )
    parser.add_argument(
        "--working_directory",
        type=Path,
        default=Path(os.getcwd()),
        help="Directory flow paths are resolved against (default: cwd).",
    )
    parser.add_argument("--json", action="store_true", help="Print a JSON array.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    args = parser.parse_args(argv)

    configure_logging(verbose=args.verbose)

    try:
        flows = discover_all_flows(
            working_directory=args.working_directory,
            flow_paths=args.flow_path,
            include_tags=parse_tags_argument(args.include_tags),
            exclude_tags=parse_tags_argument(args.exclude_tags),
        )
    except FileNotFoundError as e:
        raise SystemExit(f"Flow path does not exist: {e}")

    rel = [os.path.relpath(p, args.working_directory) for p in flows]
    if args.json:
        print(json.dumps(rel, indent=2))
    else:
        for p in rel:
            print(p)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
