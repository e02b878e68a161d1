"""All Pydantic models — the shapes that cross module boundaries.

Reports are rebuilt from scratch on every test run and never mutated.
Attempts are frozen once recorded. SessionState is the only mutable
model and is owned by the orchestrator.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# ── Report Models ────────────────────────────────────────────────────


class TestCaseResult(BaseModel):
    """A single test case as reported by the runner."""
    __test__ = False  # Prevent pytest collection
    name: str
    success: bool
    error: str | None = None
    offending_code: str | None = None
    duration_ms: float = 0.0
    location: str | None = None


class FileResult(BaseModel):
    """All test cases from one test file."""
    path: str
    success: bool = True
    tests: list[TestCaseResult] = []
    error: str | None = None

    @classmethod
    def from_tests(
        cls, path: str, tests: list[TestCaseResult], error: str | None = None,
    ) -> FileResult:
        """Build a FileResult whose success flag is derived from its tests."""
        return cls(
            path=path,
            success=all(t.success for t in tests),
            tests=tests,
            error=error,
        )

    @property
    def failing_tests(self) -> list[TestCaseResult]:
        return [t for t in self.tests if not t.success]

    @property
    def has_failures(self) -> bool:
        return any(not t.success for t in self.tests)


class ReportSummary(BaseModel):
    """Counters as reported by the runner (not back-filled)."""
    total: int = 0
    passed: int = 0
    failed: int = 0
    duration_ms: float = 0.0
    error: str | None = None


class Report(BaseModel):
    """Canonical, normalized result of one test execution."""
    files: list[FileResult] = []
    summary: ReportSummary = Field(default_factory=ReportSummary)

    @property
    def failing_files(self) -> list[FileResult]:
        """Files with at least one failing test, recomputed from per-test flags."""
        return [f for f in self.files if f.has_failures]

    @property
    def test_count(self) -> int:
        return sum(len(f.tests) for f in self.files)

    @property
    def passing_count(self) -> int:
        return sum(1 for f in self.files for t in f.tests if t.success)

    @property
    def failing_count(self) -> int:
        return sum(1 for f in self.files for t in f.tests if not t.success)

    @property
    def all_passed(self) -> bool:
        return self.summary.error is None and not self.failing_files


class TestRun(BaseModel):
    """One invocation of the test command."""
    __test__ = False  # Prevent pytest collection
    report: Report
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    duration_s: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and self.report.all_passed


# ── Attempt Models ───────────────────────────────────────────────────


class FailureDetail(BaseModel):
    """A failing test name and its error text."""
    model_config = ConfigDict(frozen=True)
    name: str
    error: str

    @property
    def key(self) -> str:
        return f"{self.name}: {self.error}"


class AttemptOutcome(BaseModel):
    """Test counts observed for the run that produced an attempt."""
    model_config = ConfigDict(frozen=True)
    total_tests: int = 0
    passing_tests: int = 0
    failing_tests: int = 0
    failure_details: tuple[FailureDetail, ...] = ()


class Attempt(BaseModel):
    """One generate+apply action for one target file."""
    model_config = ConfigDict(frozen=True)
    sequence_number: int = Field(ge=1)
    target_file: str = ""
    generated_code: str = ""
    outcome: AttemptOutcome = Field(default_factory=AttemptOutcome)
    succeeded: bool = False
    error: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)


# ── Validation Models ────────────────────────────────────────────────


class ValidationIssue(BaseModel):
    """A suspected problem in a test file."""
    severity: Literal["warning", "error"] = "warning"
    message: str
    location: str | None = None
    suggestion: str | None = None


class TestAnalysis(BaseModel):
    """Raw output of the analysis collaborator."""
    __test__ = False  # Prevent pytest collection
    issues: list[ValidationIssue] = []
    overall_assessment: str = ""


class ValidationDecision(BaseModel):
    """The gate's verdict for one test file on one attempt."""
    is_valid: bool = True
    issues: list[ValidationIssue] = []
    overall_assessment: str = ""
    overridden: bool = False

    @property
    def has_errors(self) -> bool:
        return any(i.severity == "error" for i in self.issues)

    @property
    def permits_generation(self) -> bool:
        return self.is_valid or self.overridden


# ── Generation Models ────────────────────────────────────────────────


class GenerationRequest(BaseModel):
    """Everything the code generator sees for one implementation file."""
    test_code: str
    failing_tests: list[TestCaseResult] = []
    current_implementation: str = ""
    implementation_path: str
    previous_attempts: list[Attempt] = []
    persistent_errors: list[str] = []


class GenerationResult(BaseModel):
    """Outcome of one generation call."""
    success: bool
    code: str | None = None
    error: str | None = None


# ── Session Models ───────────────────────────────────────────────────


class SessionStatus(StrEnum):
    """Lifecycle of an orchestrator session."""
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    MAX_ATTEMPTS_REACHED = "max_attempts_reached"
    STOPPED = "stopped"


class FileStepError(BaseModel):
    """A per-file step that failed without aborting the iteration."""
    file: str
    stage: Literal["read", "validate", "generate", "apply"]
    message: str


class SessionState(BaseModel):
    """Mutable loop state. Only the orchestrator writes to it."""
    status: SessionStatus = SessionStatus.IDLE
    running: bool = False
    attempt_count: int = 0
    all_tests_passing: bool = False
    history: list[Attempt] = []
    last_errors: list[FileStepError] = []


StatusKind = Literal[
    "running_tests",
    "generating_code",
    "implementation_updated",
    "success",
    "error",
    "max_attempts_reached",
    "validation_warning",
    "validation_waiting",
    "stopped",
]


class StatusUpdate(BaseModel):
    """Progress event emitted to the front end."""
    status: StatusKind
    message: str = ""
    file: str = ""
    attempt: int | None = None
    max_attempts: int | None = None
    timestamp: datetime = Field(default_factory=datetime.now)
    validation_issues: list[ValidationIssue] = []
    validation_assessment: str = ""
