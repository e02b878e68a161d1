"""Tests for the validation gate state machine and overrides."""

from __future__ import annotations

import asyncio

import pytest

from redgreen.schemas import TestAnalysis, ValidationIssue
from redgreen.validation import GateState, ValidationGate

ERROR = ValidationIssue(severity="error", message="Tests contradict each other")
WARNING = ValidationIssue(severity="warning", message="Hardcoded timeout")


class FakeAnalyzer:
    def __init__(self, issues=(), raises: Exception | None = None):
        self.issues = list(issues)
        self.raises = raises
        self.calls = 0

    async def analyze(self, test_code, file_result=None):
        self.calls += 1
        if self.raises:
            raise self.raises
        return TestAnalysis(issues=self.issues, overall_assessment="reviewed")


class FakeDecider:
    def __init__(self, answer: bool):
        self.answer = answer
        self.calls: list[str] = []

    async def __call__(self, decision, file_path):
        self.calls.append(file_path)
        return self.answer


class TestValidationGate:
    def test_valid_file_is_evaluated(self):
        gate = ValidationGate(FakeAnalyzer([WARNING]))
        decision = asyncio.run(gate.evaluate("a.test.ts", None, "it('x', ...)"))
        assert decision.is_valid is True
        assert decision.issues == [WARNING]
        assert gate.state_of("a.test.ts") is GateState.EVALUATED
        assert gate.permits("a.test.ts")

    def test_not_evaluated_by_default(self):
        gate = ValidationGate(FakeAnalyzer())
        assert gate.state_of("a.test.ts") is GateState.NOT_EVALUATED
        assert not gate.permits("a.test.ts")

    def test_error_approved_by_operator(self):
        decider = FakeDecider(True)
        gate = ValidationGate(FakeAnalyzer([ERROR]), decide=decider)
        decision = asyncio.run(gate.evaluate("a.test.ts", None))
        assert decision.is_valid is False
        assert decision.overridden is True
        assert decision.permits_generation
        assert gate.state_of("a.test.ts") is GateState.OVERRIDDEN
        assert gate.is_overridden("a.test.ts")
        assert decider.calls == ["a.test.ts"]

    def test_error_rejected_by_operator(self):
        gate = ValidationGate(FakeAnalyzer([ERROR]), decide=FakeDecider(False))
        decision = asyncio.run(gate.evaluate("a.test.ts", None))
        assert decision.overridden is False
        assert not decision.permits_generation
        assert gate.state_of("a.test.ts") is GateState.BLOCKED
        assert not gate.permits("a.test.ts")
        assert not gate.is_overridden("a.test.ts")

    def test_override_is_not_re_prompted(self):
        decider = FakeDecider(True)
        gate = ValidationGate(FakeAnalyzer([ERROR]), decide=decider)

        async def run():
            await gate.evaluate("a.test.ts", None)
            gate.reset()
            return await gate.evaluate("a.test.ts", None)

        decision = asyncio.run(run())
        assert decision.overridden is True
        assert decider.calls == ["a.test.ts"]
        assert gate.state_of("a.test.ts") is GateState.OVERRIDDEN

    def test_preloaded_overrides(self):
        decider = FakeDecider(False)
        gate = ValidationGate(FakeAnalyzer([ERROR]), decide=decider, overrides=["a.test.ts"])
        decision = asyncio.run(gate.evaluate("a.test.ts", None))
        assert decision.overridden is True
        assert decider.calls == []

    def test_override_is_idempotent(self):
        gate = ValidationGate(FakeAnalyzer())
        gate.override("a.test.ts")
        gate.override("a.test.ts")
        assert gate.overrides == frozenset({"a.test.ts"})

    def test_reset_keeps_overrides(self):
        gate = ValidationGate(FakeAnalyzer([ERROR]), decide=FakeDecider(False))
        asyncio.run(gate.evaluate("b.test.ts", None))
        gate.override("a.test.ts")
        gate.reset()
        assert gate.state_of("a.test.ts") is GateState.NOT_EVALUATED
        assert gate.state_of("b.test.ts") is GateState.NOT_EVALUATED
        assert gate.is_overridden("a.test.ts")

    def test_analysis_failure_fails_open(self):
        gate = ValidationGate(FakeAnalyzer(raises=RuntimeError("api down")))
        decision = asyncio.run(gate.evaluate("a.test.ts", None))
        assert decision.is_valid is True
        assert decision.issues == []
        assert "api down" in decision.overall_assessment
        assert gate.permits("a.test.ts")

    def test_no_decider_proceeds(self):
        gate = ValidationGate(FakeAnalyzer([ERROR]))
        decision = asyncio.run(gate.evaluate("a.test.ts", None))
        assert decision.is_valid is False
        assert decision.overridden is False
        assert gate.permits("a.test.ts")

    def test_disabled_skips_analysis(self):
        analyzer = FakeAnalyzer([ERROR])
        gate = ValidationGate(analyzer, enabled=False)
        decision = asyncio.run(gate.evaluate("a.test.ts", None))
        assert decision.is_valid is True
        assert analyzer.calls == 0
        assert gate.permits("a.test.ts")

    def test_waiting_hook_runs_before_decision(self):
        events = []

        async def on_waiting(decision, path):
            events.append(("waiting", path))

        async def decide(decision, path):
            events.append(("decide", path))
            return False

        gate = ValidationGate(FakeAnalyzer([ERROR]), decide=decide, on_waiting=on_waiting)
        asyncio.run(gate.evaluate("a.test.ts", None))
        assert events == [("waiting", "a.test.ts"), ("decide", "a.test.ts")]

    def test_decider_failure_blocks_and_propagates(self):
        async def decide(decision, path):
            raise EOFError

        gate = ValidationGate(FakeAnalyzer([ERROR]), decide=decide)
        with pytest.raises(EOFError):
            asyncio.run(gate.evaluate("a.test.ts", None))
        assert gate.state_of("a.test.ts") is GateState.BLOCKED
