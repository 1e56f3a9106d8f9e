from __future__ import annotations

import logging
import math
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Leading decimal number; trailing text such as a unit suffix is ignored.
_LEADING_NUMBER_RE = re.compile(r"^\s*[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")


class ResultParseError(RuntimeError):
    """A JUnit report or metadata file could not be parsed."""


@dataclass(frozen=True)
class JUnitTestCaseResult:
    name: str
    status: str  # "passed" | "failed"
    duration: int  # milliseconds
    error_message: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    properties: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "duration": self.duration,
            "errorMessage": self.error_message,
            "tags": list(self.tags),
            "properties": dict(self.properties),
        }


def _parse_duration_ms(raw: Optional[str]) -> int:
    if raw is None:
        return 0
    m = _LEADING_NUMBER_RE.match(raw)
    if m is None:
        return 0
    seconds = float(m.group(0))
    if not math.isfinite(seconds):
        return 0
    # Halves round up, not to even.
    return int(math.floor(seconds * 1000 + 0.5))


def _element_message(elem: Optional[ET.Element]) -> Optional[str]:
    if elem is None:
        return None
    text = (elem.text or "").strip()
    if text:
        return text
    message = elem.get("message")
    return message if message else None


def _parse_properties(testcase: ET.Element) -> tuple[list[str], dict[str, str]]:
    properties: dict[str, str] = {}
    for prop in testcase.findall("./properties/property"):
        name = prop.get("name")
        value = prop.get("value")
        if name is None or value is None:
            continue
        properties[name] = value

    tags: list[str] = []
    raw_tags = properties.pop("tags", None)
    if raw_tags is not None:
        tags = [t.strip() for t in raw_tags.split(",") if t.strip()]
    return tags, properties


def parse_testcase(testcase: ET.Element) -> Optional[JUnitTestCaseResult]:
    name = testcase.get("name")
    if not name:
        return None

    # Status comes only from the attribute; <failure>/<error> just carry the message.
    status = "passed" if testcase.get("status") == "SUCCESS" else "failed"
    error_message = _element_message(testcase.find("failure"))
    if error_message is None:
        error_message = _element_message(testcase.find("error"))
    tags, properties = _parse_properties(testcase)

    return JUnitTestCaseResult(
        name=name,
        status=status,
        duration=_parse_duration_ms(testcase.get("time")),
        error_message=error_message,
        tags=tags,
        properties=properties,
    )


def parse_junit_file(path: Path) -> list[JUnitTestCaseResult]:
    try:
        root = ET.parse(path).getroot()
    except (ET.ParseError, OSError) as e:
        raise ResultParseError(f"Failed to parse JUnit report {path}: {e}") from e

    suites = [root] if root.tag == "testsuite" else root.findall("testsuite")
    out: list[JUnitTestCaseResult] = []
    for suite in suites:
        for testcase in suite.findall("testcase"):
            result = parse_testcase(testcase)
            if result is not None:
                out.append(result)
    return out


def parse_junit_test_cases(directory: Optional[Path]) -> list[JUnitTestCaseResult]:
    """Parse every `*.xml` directly inside `directory`.

    A missing directory yields []. Malformed files are skipped with a warning.
    """

    if directory is None:
        return []
    directory = Path(directory)
    if not directory.is_dir():
        return []

    out: list[JUnitTestCaseResult] = []
    for path in sorted(directory.glob("*.xml")):
        if not path.is_file():
            continue
        try:
            out.extend(parse_junit_file(path))
        except ResultParseError as e:
            logger.warning("%s", e)
    return out
