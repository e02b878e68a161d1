"""Attempt history — per-file records of every generate+apply action.

The tracker is session-scoped and lives in memory. Nothing is persisted
unless export() is called explicitly.

Selection policy:
1. best_attempt: most passing tests wins; earliest attempt breaks ties
2. persistent_errors: "name: error" strings seen in at least a quorum
   of attempts, counted once per attempt
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path

from redgreen.schemas import Attempt, AttemptOutcome, FailureDetail, Report

logger = logging.getLogger(__name__)


class AttemptTracker:
    """Append-only attempt history keyed by target implementation path."""

    def __init__(self) -> None:
        self._attempts: list[Attempt] = []
        self._by_file: dict[str, list[Attempt]] = {}

    def record_attempt(self, attempt: Attempt) -> None:
        """Append an attempt. Sequence numbers must strictly increase."""
        if self._attempts and attempt.sequence_number <= self._attempts[-1].sequence_number:
            raise ValueError(
                f"Attempt sequence number {attempt.sequence_number} does not follow "
                f"{self._attempts[-1].sequence_number}"
            )
        self._attempts.append(attempt)
        self._by_file.setdefault(attempt.target_file, []).append(attempt)
        logger.debug(
            "Recorded attempt #%d for %s (%d/%d passing)",
            attempt.sequence_number,
            attempt.target_file or "<iteration>",
            attempt.outcome.passing_tests,
            attempt.outcome.total_tests,
        )

    def history_for(self, target_file: str) -> list[Attempt]:
        return list(self._by_file.get(target_file, []))

    @property
    def history(self) -> list[Attempt]:
        return list(self._attempts)

    def next_sequence_number(self) -> int:
        if not self._attempts:
            return 1
        return self._attempts[-1].sequence_number + 1

    def clear(self) -> None:
        self._attempts.clear()
        self._by_file.clear()

    def __len__(self) -> int:
        return len(self._attempts)

    def export(self, path: str | Path) -> Path:
        """Write the session history to `path` as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "attempt_count": len(self._attempts),
            "attempts": [a.model_dump(mode="json") for a in self._attempts],
        }
        path.write_text(json.dumps(payload, indent=2))
        logger.info("Exported %d attempts to %s", len(self._attempts), path)
        return path


def outcome_from_report(report: Report) -> AttemptOutcome:
    """Snapshot the counts of a report for an attempt record.

    Counts come from the per-test flags, not the runner's summary.
    """
    details = tuple(
        FailureDetail(name=t.name, error=t.error or "Unknown error")
        for f in report.files
        for t in f.tests
        if not t.success
    )
    return AttemptOutcome(
        total_tests=report.test_count,
        passing_tests=report.passing_count,
        failing_tests=report.failing_count,
        failure_details=details,
    )


def best_attempt(history: list[Attempt]) -> Attempt | None:
    """The attempt with the most passing tests. Earliest wins ties.

    Returns None for an empty history.
    """
    best: Attempt | None = None
    for attempt in history:
        if best is None or attempt.outcome.passing_tests > best.outcome.passing_tests:
            best = attempt
    return best


def persistent_errors(history: list[Attempt], quorum_fraction: float = 0.5) -> list[str]:
    """Failure strings that recur in at least ceil(quorum * len(history)) attempts.

    Each string counts once per attempt it appears in. Results keep
    first-seen order.
    """
    if not 0 < quorum_fraction <= 1:
        raise ValueError(f"quorum_fraction must be in (0, 1], got {quorum_fraction}")
    if not history:
        return []

    counts: dict[str, int] = {}
    for attempt in history:
        for key in dict.fromkeys(d.key for d in attempt.outcome.failure_details):
            counts[key] = counts.get(key, 0) + 1

    threshold = math.ceil(quorum_fraction * len(history))
    return [key for key, count in counts.items() if count >= threshold]


def format_history_summary(history: list[Attempt]) -> str:
    """Human-readable one-line-per-attempt summary."""
    if not history:
        return "No attempts recorded"
    lines = []
    best = best_attempt(history)
    for attempt in history:
        marker = "*" if attempt is best else " "
        outcome = attempt.outcome
        line = (
            f"{marker} #{attempt.sequence_number} {attempt.target_file or '<iteration>'} "
            f"({outcome.passing_tests}/{outcome.total_tests} passing)"
        )
        if attempt.succeeded:
            line += " succeeded"
        if attempt.error:
            line += f" error: {attempt.error}"
        lines.append(line)
    return "\n".join(lines)
