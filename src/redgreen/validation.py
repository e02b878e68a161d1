"""Validation gate — decides whether generation may proceed for a test file.

Per-file states, reset at the start of every loop iteration:

    NOT_EVALUATED -> EVALUATED                      (no error-severity issues)
    NOT_EVALUATED -> AWAITING_DECISION -> OVERRIDDEN | BLOCKED

EVALUATED and OVERRIDDEN permit generation. BLOCKED holds for the
current iteration only. Overrides are remembered for the lifetime of
the gate and survive reset().
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from enum import StrEnum
from typing import Protocol

from redgreen.schemas import FileResult, TestAnalysis, ValidationDecision

logger = logging.getLogger(__name__)

DecisionFn = Callable[[ValidationDecision, str], Awaitable[bool]]
WaitingFn = Callable[[ValidationDecision, str], "Awaitable[None] | None"]


class Analyzer(Protocol):
    async def analyze(
        self, test_code: str, file_result: FileResult | None = None,
    ) -> TestAnalysis: ...


class GateState(StrEnum):
    NOT_EVALUATED = "not_evaluated"
    EVALUATED = "evaluated"
    AWAITING_DECISION = "awaiting_decision"
    OVERRIDDEN = "overridden"
    BLOCKED = "blocked"


_PERMITTING = frozenset({GateState.EVALUATED, GateState.OVERRIDDEN})


class ValidationGate:
    """Gates code generation behind test-file analysis and operator overrides.

    Args:
        analyzer: Produces a TestAnalysis for a test file.
        decide: Async yes/no collaborator consulted when a file has
            error-severity issues. Returns True to override.
        overrides: Paths already overridden by the operator.
        enabled: When False every file is approved without analysis.
        on_waiting: Notified just before `decide` is consulted.
    """

    def __init__(
        self,
        analyzer: Analyzer,
        decide: DecisionFn | None = None,
        overrides: Iterable[str] | None = None,
        enabled: bool = True,
        on_waiting: WaitingFn | None = None,
    ) -> None:
        self._analyzer = analyzer
        self._decide = decide
        self._overrides: set[str] = set(overrides or ())
        self._states: dict[str, GateState] = {}
        self.enabled = enabled
        self.on_waiting = on_waiting

    @property
    def overrides(self) -> frozenset[str]:
        return frozenset(self._overrides)

    def is_overridden(self, path: str) -> bool:
        return path in self._overrides

    def override(self, path: str) -> None:
        """Remember an operator override for `path`. Idempotent."""
        if path not in self._overrides:
            logger.info("Test validation override set for: %s", path)
        self._overrides.add(path)
        self._states[path] = GateState.OVERRIDDEN

    def state_of(self, path: str) -> GateState:
        return self._states.get(path, GateState.NOT_EVALUATED)

    def permits(self, path: str) -> bool:
        """Whether the latest evaluation of `path` allows generation."""
        return self.state_of(path) in _PERMITTING

    def reset(self) -> None:
        """Forget per-iteration states. Overrides are kept."""
        self._states.clear()

    async def evaluate(
        self, file_path: str, file_result: FileResult | None, test_code: str = "",
    ) -> ValidationDecision:
        if not self.enabled:
            self._states[file_path] = GateState.EVALUATED
            return ValidationDecision(is_valid=True, overall_assessment="Validation disabled")

        logger.info("Validating test file: %s", file_path)
        try:
            analysis = await self._analyzer.analyze(test_code, file_result)
        except Exception as e:
            logger.warning("Test analysis failed for %s, proceeding: %s", file_path, e)
            self._states[file_path] = GateState.EVALUATED
            return ValidationDecision(
                is_valid=True,
                overall_assessment=f"Test validation could not be completed: {e}",
            )

        is_valid = not any(i.severity == "error" for i in analysis.issues)
        decision = ValidationDecision(
            is_valid=is_valid,
            issues=analysis.issues,
            overall_assessment=analysis.overall_assessment,
        )
        logger.info(
            "Test validation complete for %s. Valid: %s, Issues: %d",
            file_path, is_valid, len(analysis.issues),
        )

        if is_valid:
            self._states[file_path] = GateState.EVALUATED
            return decision

        if self.is_overridden(file_path):
            logger.info("Validation previously overridden for %s", file_path)
            self._states[file_path] = GateState.OVERRIDDEN
            return decision.model_copy(update={"overridden": True})

        if self._decide is None:
            logger.warning(
                "Test file %s has validation errors and no one to ask; proceeding",
                file_path,
            )
            self._states[file_path] = GateState.EVALUATED
            return decision

        self._states[file_path] = GateState.AWAITING_DECISION
        try:
            if self.on_waiting is not None:
                notified = self.on_waiting(decision, file_path)
                if inspect.isawaitable(notified):
                    await notified
            approved = await self._decide(decision, file_path)
        except BaseException:
            self._states[file_path] = GateState.BLOCKED
            raise

        if approved:
            self.override(file_path)
            return decision.model_copy(update={"overridden": True})

        logger.info("Generation blocked for %s by operator", file_path)
        self._states[file_path] = GateState.BLOCKED
        return decision
