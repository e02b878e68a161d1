"""Test report normalization — raw runner output to a canonical Report.

Test runners emit JSON reports whose shape drifts between tools and
versions, and they sometimes print log lines around the payload. The
normalizer degrades gracefully instead of validating strictly: every
input, however broken, yields a structurally valid Report so callers
never special-case parse errors.

Pipeline:
  1. Slice the text between the first '{' and the last '}'
  2. Strict json.loads; on failure, try each balanced {...} substring
  3. Run the recognizer cascade; first recognizer with >= 1 file wins
  4. Read summary counters from whichever summary shape is present
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from typing import Any

from redgreen.schemas import FileResult, Report, ReportSummary, TestCaseResult

logger = logging.getLogger(__name__)

PASS_STATUSES = frozenset({"passed", "pass", "success", "ok"})
SKIP_STATUSES = frozenset({"skipped", "skip", "pending", "todo", "disabled"})

PLACEHOLDER_PATH = "error"

_PREVIEW_CHARS = 300


def normalize(raw_output: str) -> Report:
    """Parse test runner output into a Report. Never raises."""
    try:
        return _normalize(raw_output)
    except Exception as e:
        logger.exception("Unexpected error parsing test output")
        return placeholder_report(f"Unexpected error parsing test output: {e}")


def placeholder_report(reason: str) -> Report:
    """A Report holding one synthetic failing file that carries `reason`."""
    logger.debug("Creating placeholder report: %s", reason)
    return Report(
        files=[FileResult(
            path=PLACEHOLDER_PATH,
            success=False,
            tests=[TestCaseResult(name="Error", success=False, error=reason)],
            error=reason,
        )],
        summary=ReportSummary(total=0, passed=0, failed=1, error=reason),
    )


def _normalize(raw_output: str) -> Report:
    if not raw_output or not raw_output.strip():
        logger.error("Test runner output is empty")
        return placeholder_report("Empty output from test runner")

    logger.debug(
        "Raw output (%d chars): %s", len(raw_output), raw_output[:_PREVIEW_CHARS],
    )

    start = raw_output.find("{")
    if start == -1:
        logger.error("Could not find JSON data in test runner output")
        return placeholder_report("No JSON data found in output")

    end = raw_output.rfind("}")
    if end < start:
        logger.error("Could not find end of JSON data in test runner output")
        return placeholder_report("Incomplete JSON data in output")

    data, parse_error = _parse_payload(raw_output[start:end + 1])
    if data is None:
        return placeholder_report(parse_error or "JSON parse error")

    files = extract_files(data)
    if not files:
        runner_error = data.get("error")
        if isinstance(runner_error, str) and runner_error.strip():
            logger.warning("Test runner reported an error: %s", runner_error[:_PREVIEW_CHARS])
            return placeholder_report(runner_error.strip())
        logger.warning("Could not determine test report format")
        logger.debug("Unrecognized data keys: %s", sorted(data.keys()))
        return placeholder_report("Unrecognized test report format")

    summary = extract_summary(data)
    logger.info(
        "Parsed %d test files with %d tests (%d passed, %d failed)",
        len(files), summary.total, summary.passed, summary.failed,
    )
    return Report(files=files, summary=summary)


# ── JSON Recovery ────────────────────────────────────────────────────


def _parse_payload(text: str) -> tuple[dict | None, str | None]:
    """Strict parse, then balanced-substring recovery. Returns (data, error)."""
    try:
        value = json.loads(text)
    except json.JSONDecodeError as e:
        first_error = e
        logger.warning("Failed to parse JSON payload: %s", e)
    else:
        if isinstance(value, dict):
            return value, None
        return None, "Test output JSON is not an object"

    for candidate in iter_balanced_objects(text):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            logger.info("Recovered JSON segment of %d chars", len(candidate))
            return value, None

    return None, f"JSON parse error: {first_error}"


def iter_balanced_objects(text: str) -> Iterator[str]:
    """Yield every balanced {...} substring, ordered by its opening brace.

    Braces inside JSON string literals are ignored.
    """
    for start, char in enumerate(text):
        if char != "{":
            continue
        end = _matching_brace(text, start)
        if end is not None:
            yield text[start:end + 1]


def _matching_brace(text: str, start: int) -> int | None:
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        char = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


# ── Field Helpers ────────────────────────────────────────────────────


def status_passes(status: Any) -> bool:
    """Map a provider status value to pass/fail. Skipped tests are not failures."""
    if isinstance(status, bool):
        return status
    if not isinstance(status, str):
        return False
    lowered = status.strip().lower()
    return lowered in PASS_STATUSES or lowered in SKIP_STATUSES


def _first_str(obj: dict, *keys: str) -> str | None:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return 0.0


def _count(value: Any) -> int:
    return int(_number(value))


def _failure_text(test: dict, default: str) -> str:
    """First non-empty failure description among the known fields."""
    messages = test.get("failureMessages")
    if isinstance(messages, list) and messages and isinstance(messages[0], str) and messages[0]:
        return messages[0]
    error = test.get("error")
    if isinstance(error, dict):
        message = _first_str(error, "message")
        if message:
            return message
    elif isinstance(error, str) and error:
        return error
    return _first_str(test, "message") or default


def extract_offending_code(test: dict, file_path: str = "") -> str | None:
    """Best-effort snippet of the code that failed.

    Tried in order: inline source, the assertion line of the first
    failure message, a stack frame in the test file, an assertion field.
    """
    source = _first_str(test, "source")
    if source:
        return source

    messages = test.get("failureMessages")
    if isinstance(messages, list) and messages and isinstance(messages[0], str):
        for line in messages[0].splitlines():
            if "expect(" in line or "assert." in line or "assert " in line:
                return line.strip()

    error = test.get("error")
    if isinstance(error, dict):
        stack = _first_str(error, "stackTrace", "stack")
        test_file = _first_str(test, "file") or file_path
        if stack and test_file:
            for line in stack.splitlines():
                if test_file in line and "node_modules" not in line:
                    return line.strip()

    return _first_str(test, "assertion", "code")


def _location(value: Any) -> str | None:
    if isinstance(value, dict) and "line" in value:
        return f"{value.get('line')}:{value.get('column', 0)}"
    if isinstance(value, str) and value:
        return value
    return None


def _test_case(
    test: dict,
    file_path: str,
    name_keys: tuple[str, ...] = ("name",),
    default_error: str = "Unknown error",
) -> TestCaseResult:
    success = status_passes(test.get("status"))
    return TestCaseResult(
        name=_first_str(test, *name_keys) or "Unnamed test",
        success=success,
        error=None if success else _failure_text(test, default_error),
        offending_code=None if success else extract_offending_code(test, file_path),
        duration_ms=_number(test.get("duration")),
        location=_location(test.get("location")),
    )


def _dict_items(value: Any) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


# ── Recognizers ──────────────────────────────────────────────────────

Recognizer = Callable[[dict], "list[FileResult] | None"]


def recognize_assertion_results(data: dict) -> list[FileResult] | None:
    """jest/vitest: testResults is a list of files with assertionResults."""
    entries = data.get("testResults")
    if not isinstance(entries, list):
        return None
    files: list[FileResult] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        path = _first_str(entry, "name", "filepath", "file") or f"unknown-file-{index}"
        tests = [
            _test_case(t, path, name_keys=("fullName", "title", "name"))
            for t in _dict_items(entry.get("assertionResults"))
        ]
        file_error = None
        if not status_passes(entry.get("status", "passed")):
            file_error = _first_str(entry, "message", "failureMessage")
        files.append(FileResult.from_tests(path, tests, error=file_error))
        logger.debug(
            "File %s has %d tests, %d failing",
            path, len(tests), sum(1 for t in tests if not t.success),
        )
    return files


def recognize_path_map(data: dict) -> list[FileResult] | None:
    """Older vitest: testResults maps file path -> {tests: [...]}."""
    entries = data.get("testResults")
    if not isinstance(entries, dict):
        return None
    files: list[FileResult] = []
    for path, result in entries.items():
        if not isinstance(result, dict):
            logger.warning("Missing result data for file: %s", path)
            files.append(FileResult.from_tests(
                str(path), [], error="Missing result data for file",
            ))
            continue
        tests = [_test_case(t, str(path)) for t in _dict_items(result.get("tests"))]
        files.append(FileResult.from_tests(str(path), tests))
    return files


def recognize_files_array(data: dict) -> list[FileResult] | None:
    """A files array with embedded tests."""
    entries = data.get("files")
    if not isinstance(entries, list):
        return None
    files: list[FileResult] = []
    for entry in _dict_items(entries):
        path = _first_str(entry, "name", "file", "path") or "unknown"
        tests = [_test_case(t, path) for t in _dict_items(entry.get("tests"))]
        files.append(FileResult.from_tests(path, tests))
    return files


def recognize_suites(data: dict) -> list[FileResult] | None:
    """CI-style suites array; each suite is treated as one file."""
    entries = data.get("suites")
    if not isinstance(entries, list):
        return None
    files: list[FileResult] = []
    for suite in _dict_items(entries):
        path = _first_str(suite, "file", "name") or "unknown"
        tests = [
            _test_case(t, path, default_error="Test failed")
            for t in _dict_items(suite.get("tests"))
        ]
        files.append(FileResult.from_tests(path, tests))
    return files


def recognize_flat_results(data: dict) -> list[FileResult] | None:
    """A flat results array, grouped by each entry's file field."""
    entries = data.get("results")
    if not isinstance(entries, list):
        return None
    grouped: dict[str, list[dict]] = {}
    for result in _dict_items(entries):
        path = _first_str(result, "file") or "unknown"
        grouped.setdefault(path, []).append(result)
    return [
        FileResult.from_tests(
            path, [_test_case(t, path, default_error="Test failed") for t in tests],
        )
        for path, tests in grouped.items()
    ]


RECOGNIZERS: tuple[Recognizer, ...] = (
    recognize_assertion_results,
    recognize_path_map,
    recognize_files_array,
    recognize_suites,
    recognize_flat_results,
)


def extract_files(data: dict) -> list[FileResult] | None:
    """Run the recognizer cascade. Returns None when no shape matches."""
    for recognizer in RECOGNIZERS:
        files = recognizer(data)
        if files:
            logger.debug("Report shape matched by %s", recognizer.__name__)
            return files
    return None


def extract_summary(data: dict) -> ReportSummary:
    """Summary counters from the first summary shape present."""
    total = passed = failed = 0
    duration = _number(data.get("duration"))

    if "numTotalTests" in data:
        total = _count(data.get("numTotalTests"))
        passed = _count(data.get("numPassedTests"))
        failed = _count(data.get("numFailedTests"))
    elif isinstance(data.get("totals"), dict):
        totals = data["totals"]
        total = _count(totals.get("tests"))
        passed = _count(totals.get("passed"))
        failed = _count(totals.get("failed"))
    elif isinstance(data.get("stats"), dict):
        stats = data["stats"]
        total = _count(stats.get("tests"))
        passed = _count(stats.get("passes"))
        failed = _count(stats.get("failures"))
        duration = _number(stats.get("duration"))

    error = data.get("error")
    return ReportSummary(
        total=total,
        passed=passed,
        failed=failed,
        duration_ms=duration,
        error=error.strip() if isinstance(error, str) and error.strip() else None,
    )
