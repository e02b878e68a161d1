"""Tests for attempt history, best attempt, and persistent errors."""

from __future__ import annotations

import json

import pytest

from redgreen.attempts import (
    AttemptTracker,
    best_attempt,
    format_history_summary,
    outcome_from_report,
    persistent_errors,
)
from redgreen.schemas import (
    Attempt,
    AttemptOutcome,
    FailureDetail,
    FileResult,
    Report,
    TestCaseResult,
)


def _attempt(seq: int, passing: int = 0, failures: list[tuple[str, str]] = (), target: str = "src/calc.ts") -> Attempt:
    details = tuple(FailureDetail(name=n, error=e) for n, e in failures)
    return Attempt(
        sequence_number=seq,
        target_file=target,
        generated_code=f"// attempt {seq}",
        outcome=AttemptOutcome(
            total_tests=passing + len(details),
            passing_tests=passing,
            failing_tests=len(details),
            failure_details=details,
        ),
    )


class TestBestAttempt:
    def test_highest_passing_wins(self):
        history = [_attempt(i + 1, passing=p) for i, p in enumerate([2, 5, 5, 1])]
        assert best_attempt(history) is history[1]

    def test_tie_keeps_earliest(self):
        history = [_attempt(1, passing=3), _attempt(2, passing=3)]
        assert best_attempt(history).sequence_number == 1

    def test_empty(self):
        assert best_attempt([]) is None


class TestPersistentErrors:
    def test_quorum_of_half(self):
        history = [
            _attempt(1, failures=[("A", "boom")]),
            _attempt(2, failures=[("A", "boom"), ("B", "bad")]),
            _attempt(3),
            _attempt(4),
        ]
        assert persistent_errors(history, quorum_fraction=0.5) == ["A: boom"]

    def test_single_occurrence_excluded(self):
        history = [_attempt(1, failures=[("A", "boom")])] + [_attempt(i) for i in range(2, 5)]
        assert persistent_errors(history) == []

    def test_counted_once_per_attempt(self):
        history = [
            _attempt(1, failures=[("A", "boom"), ("A", "boom")]),
            _attempt(2), _attempt(3), _attempt(4),
        ]
        assert persistent_errors(history) == []

    def test_first_seen_order(self):
        history = [
            _attempt(1, failures=[("B", "x"), ("A", "y")]),
            _attempt(2, failures=[("A", "y"), ("B", "x")]),
        ]
        assert persistent_errors(history) == ["B: x", "A: y"]

    def test_empty_history(self):
        assert persistent_errors([]) == []

    @pytest.mark.parametrize("quorum", [0, -0.5, 1.5])
    def test_invalid_quorum(self, quorum):
        with pytest.raises(ValueError):
            persistent_errors([_attempt(1)], quorum_fraction=quorum)

    def test_full_quorum(self):
        history = [
            _attempt(1, failures=[("A", "boom")]),
            _attempt(2, failures=[("A", "boom")]),
            _attempt(3, failures=[("B", "bad")]),
        ]
        assert persistent_errors(history, quorum_fraction=1.0) == []
        assert persistent_errors(history, quorum_fraction=0.6) == ["A: boom"]


class TestAttemptTracker:
    def test_history_scoped_per_file(self):
        tracker = AttemptTracker()
        tracker.record_attempt(_attempt(1, target="a.ts"))
        tracker.record_attempt(_attempt(2, target="b.ts"))
        tracker.record_attempt(_attempt(3, target="a.ts"))
        assert [a.sequence_number for a in tracker.history_for("a.ts")] == [1, 3]
        assert [a.sequence_number for a in tracker.history_for("b.ts")] == [2]
        assert tracker.history_for("c.ts") == []
        assert len(tracker.history) == 3

    def test_sequence_must_increase(self):
        tracker = AttemptTracker()
        tracker.record_attempt(_attempt(2))
        with pytest.raises(ValueError):
            tracker.record_attempt(_attempt(2))
        with pytest.raises(ValueError):
            tracker.record_attempt(_attempt(1))
        assert len(tracker) == 1

    def test_next_sequence_number(self):
        tracker = AttemptTracker()
        assert tracker.next_sequence_number() == 1
        tracker.record_attempt(_attempt(1))
        assert tracker.next_sequence_number() == 2

    def test_history_is_a_copy(self):
        tracker = AttemptTracker()
        tracker.record_attempt(_attempt(1))
        tracker.history.clear()
        tracker.history_for("src/calc.ts").clear()
        assert len(tracker.history) == 1
        assert len(tracker.history_for("src/calc.ts")) == 1

    def test_clear(self):
        tracker = AttemptTracker()
        tracker.record_attempt(_attempt(1))
        tracker.clear()
        assert tracker.history == []
        assert tracker.next_sequence_number() == 1

    def test_export(self, tmp_path):
        tracker = AttemptTracker()
        tracker.record_attempt(_attempt(1, failures=[("A", "boom")]))
        tracker.record_attempt(_attempt(2, passing=1))
        path = tracker.export(tmp_path / "out" / "history.json")
        data = json.loads(path.read_text())
        assert data["attempt_count"] == 2
        assert data["attempts"][0]["outcome"]["failure_details"] == [{"name": "A", "error": "boom"}]
        assert data["attempts"][1]["sequence_number"] == 2

    def test_attempts_are_frozen(self):
        attempt = _attempt(1)
        with pytest.raises(Exception):
            attempt.generated_code = "changed"


class TestOutcomeFromReport:
    def test_counts_from_tests(self):
        report = Report(files=[
            FileResult.from_tests("a.test.ts", [
                TestCaseResult(name="ok", success=True),
                TestCaseResult(name="bad", success=False, error="boom"),
            ]),
            FileResult.from_tests("b.test.ts", [
                TestCaseResult(name="worse", success=False),
            ]),
        ])
        outcome = outcome_from_report(report)
        assert outcome.total_tests == 3
        assert outcome.passing_tests == 1
        assert outcome.failing_tests == 2
        assert [d.key for d in outcome.failure_details] == ["bad: boom", "worse: Unknown error"]


class TestHistorySummary:
    def test_marks_best(self):
        history = [_attempt(1, passing=1), _attempt(2, passing=4)]
        lines = format_history_summary(history).splitlines()
        assert lines[0].startswith(" #1")
        assert lines[1].startswith("* #2")

    def test_empty(self):
        assert format_history_summary([]) == "No attempts recorded"
