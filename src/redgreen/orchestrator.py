"""Orchestrator — the red-green loop.

One session runs iterations until the suite passes, the attempt budget
is spent, or stop() is called:

  1. Reset the gate, run the tests
  2. All passing -> succeeded
  3. Otherwise, for each failing file in report order:
     read test -> validate -> generate -> apply -> record attempt
  4. Settle, then go again

At most one session task exists at a time. A test-file change while a
session is in flight only raises a restart flag; the session notices it
at the next iteration boundary, or just before it would finish, and starts
over with a clean history. An unexpected error ends the session but not
the watch; the next test-file change starts a new one.
Per-file failures are collected as FileStepError values and never end
the iteration.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Protocol

from redgreen.attempts import AttemptTracker, outcome_from_report, persistent_errors
from redgreen.config import Config
from redgreen.generator import apply_code
from redgreen.report_parser import PLACEHOLDER_PATH
from redgreen.schemas import (
    Attempt,
    AttemptOutcome,
    FileResult,
    FileStepError,
    GenerationRequest,
    GenerationResult,
    Report,
    SessionState,
    SessionStatus,
    StatusKind,
    StatusUpdate,
    TestRun,
    ValidationDecision,
)
from redgreen.validation import ValidationGate
from redgreen.watcher import (
    FileEvent,
    PollingWatcher,
    expand_braces,
    implementation_path_for,
    matches_pattern,
)

logger = logging.getLogger(__name__)

UpdateFn = Callable[[StatusUpdate], "Awaitable[None] | None"]


class Runner(Protocol):
    def check(self) -> object: ...

    async def run(self) -> TestRun: ...


class Generator(Protocol):
    async def generate(self, request: GenerationRequest) -> GenerationResult: ...


class Watcher(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...


WatcherFactory = Callable[[Callable[[FileEvent], Awaitable[None]]], Watcher]


class Orchestrator:
    """Drives the test -> generate -> apply loop for one project.

    Args:
        config: Loaded project configuration.
        runner: Runs the test suite (see TestHarness).
        generator: Produces code for a GenerationRequest.
        gate: Validation gate consulted before generation.
        tracker: Attempt history; a fresh one is created if omitted.
        on_update: Receives every StatusUpdate; may be async.
        watcher_factory: Builds the file watcher from an event callback.
            Defaults to a PollingWatcher over the project directory.
    """

    def __init__(
        self,
        config: Config,
        runner: Runner,
        generator: Generator,
        gate: ValidationGate,
        tracker: AttemptTracker | None = None,
        on_update: UpdateFn | None = None,
        watcher_factory: WatcherFactory | None = None,
    ) -> None:
        self.config = config
        self._runner = runner
        self._generator = generator
        self._gate = gate
        self._tracker = tracker if tracker is not None else AttemptTracker()
        self._on_update = on_update
        self._watcher_factory = watcher_factory or self._default_watcher
        self._watcher: Watcher | None = None
        self._patterns = expand_braces(config.project.test_pattern)

        self._state = SessionState()
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._restart_pending = False
        self._approved_tests: set[str] = set()

        if self._gate.on_waiting is None:
            self._gate.on_waiting = self._on_validation_waiting

    # ── Public API ───────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        """Deep copy of the current session state."""
        return self._state.model_copy(deep=True)

    @property
    def tracker(self) -> AttemptTracker:
        return self._tracker

    @property
    def session_active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Check the runner, start watching, and begin a session.

        Raises RunnerUnavailable if the test command cannot run.
        """
        self._runner.check()
        self._stop.clear()
        logger.info("Starting red-green loop for project: %s", self.config.project_dir)
        if self._watcher is None:
            self._watcher = self._watcher_factory(self.on_file_event)
            await self._watcher.start()
        self._spawn_session()

    async def wait(self) -> SessionState:
        """Wait for the current session to finish and return its final state."""
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)
        return self.state

    async def stop(self) -> None:
        """Stop watching and end the session after its in-flight step. Idempotent."""
        already_stopped = (
            self._stop.is_set() and self._state.status is SessionStatus.STOPPED
        )
        self._stop.set()
        self._restart_pending = False
        if self._watcher is not None:
            watcher, self._watcher = self._watcher, None
            await watcher.stop()
        if self._task is not None:
            await self._task
        self._state.running = False
        self._state.status = SessionStatus.STOPPED
        if not already_stopped:
            logger.info("Red-green loop stopped")
            await self._emit("stopped", "Process stopped")

    async def on_file_event(self, event: FileEvent) -> None:
        """Watcher callback. Test-file changes restart the session."""
        if self._stop.is_set():
            return
        if not self.is_test_file(event.path):
            logger.info("Implementation file %s: %s", event.kind, event.path)
            return

        logger.info("Test file %s: %s", event.kind, event.path)
        if self.session_active:
            self._restart_pending = True
            return
        self._spawn_session()

    def is_test_file(self, path: str | Path) -> bool:
        path = Path(path)
        try:
            relative = path.resolve().relative_to(self.config.project_dir).as_posix()
        except ValueError:
            relative = path.as_posix()
        return matches_pattern(relative, self._patterns)

    # ── Session ──────────────────────────────────────────────────────

    def _default_watcher(self, on_event: Callable[[FileEvent], Awaitable[None]]) -> Watcher:
        return PollingWatcher(
            self.config.project_dir,
            self.config.project.test_pattern,
            on_event,
            poll_interval=self.config.project.poll_interval,
            debounce=self.config.project.debounce,
        )

    def _spawn_session(self) -> None:
        if self.session_active:
            self._restart_pending = True
            return
        self._reset_session()
        self._task = asyncio.create_task(self._run_session())

    def _reset_session(self) -> None:
        self._tracker.clear()
        self._approved_tests.clear()
        self._restart_pending = False
        self._state.attempt_count = 0
        self._state.all_tests_passing = False
        self._state.history = []
        self._state.last_errors = []

    async def _run_session(self) -> None:
        while True:
            await self._session_pass()
            # A change can land while the pass is finishing (final emit, history save).
            if not self._restart_pending or self._stop.is_set():
                return
            logger.info("Test files changed while the session was finishing, starting over")
            self._reset_session()

    async def _session_pass(self) -> None:
        state = self._state
        state.status = SessionStatus.RUNNING
        state.running = True
        max_attempts = self.config.project.max_attempts

        try:
            while not self._stop.is_set():
                if self._restart_pending:
                    logger.info("Test files changed, restarting with a clean history")
                    self._reset_session()
                    state.status = SessionStatus.RUNNING

                if state.attempt_count >= max_attempts:
                    state.status = SessionStatus.MAX_ATTEMPTS_REACHED
                    logger.warning("Reached maximum attempts (%d)", max_attempts)
                    await self._emit(
                        "max_attempts_reached",
                        f"Reached maximum attempts ({max_attempts})",
                    )
                    break

                state.attempt_count += 1
                logger.info("Attempt %d/%d", state.attempt_count, max_attempts)
                succeeded = await self._iteration(state.attempt_count)

                if succeeded and not self._restart_pending:
                    break
                if self._stop.is_set():
                    break
                if state.attempt_count < max_attempts or self._restart_pending:
                    await self._settle()
        except Exception as e:
            logger.exception("Red-green session failed")
            state.status = SessionStatus.IDLE
            await self._emit("error", f"Session failed: {e}")
        finally:
            state.running = False
            if self._stop.is_set():
                state.status = SessionStatus.STOPPED
            await self._save_history()

    async def _settle(self) -> None:
        delay = self.config.project.wait_between_attempts
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _save_history(self) -> None:
        if not self.config.history.save or not len(self._tracker):
            return
        try:
            await asyncio.to_thread(self._tracker.export, self.config.history_path)
        except OSError as e:
            logger.error("Could not save history to %s: %s", self.config.history_path, e)

    # ── Iteration ────────────────────────────────────────────────────

    async def _iteration(self, attempt_number: int) -> bool:
        """Run one iteration. Returns True when every test passes."""
        state = self._state
        self._gate.reset()
        errors: list[FileStepError] = []

        await self._emit("running_tests", f"Running tests (attempt {attempt_number})")
        run = await self._runner.run()
        report = run.report
        outcome = outcome_from_report(report)

        if run.success:
            state.all_tests_passing = True
            state.status = SessionStatus.SUCCEEDED
            state.last_errors = []
            self._record(Attempt(
                sequence_number=self._tracker.next_sequence_number(),
                outcome=outcome,
                succeeded=True,
            ))
            logger.info("All tests pass after %d attempt(s)", attempt_number)
            await self._emit("success", f"All tests pass after {attempt_number} attempt(s)")
            return True

        state.all_tests_passing = False
        if report.summary.error:
            await self._emit("error", f"Test run error: {report.summary.error}")

        targets = self._target_files(report)
        if not targets and not report.summary.error:
            await self._emit(
                "error",
                f"Test command exited with code {run.exit_code} but reported no failing tests",
            )
        logger.info("Found %d test file(s) with failing tests", len(targets))

        recorded = 0
        for file_result in targets:
            if self._stop.is_set():
                break
            if await self._process_file(file_result, outcome, attempt_number, errors):
                recorded += 1

        if recorded == 0:
            self._record(Attempt(
                sequence_number=self._tracker.next_sequence_number(),
                outcome=outcome,
                succeeded=False,
                error="; ".join(e.message for e in errors) or report.summary.error,
            ))

        state.last_errors = errors
        return False

    @staticmethod
    def _target_files(report: Report) -> list[FileResult]:
        """Files with failing tests; files with file-level errors when none have any."""
        failing = [f for f in report.failing_files if f.path != PLACEHOLDER_PATH]
        if failing:
            return failing
        return [f for f in report.files if f.error and f.path != PLACEHOLDER_PATH]

    def _resolve(self, path: str) -> Path:
        resolved = Path(path)
        if not resolved.is_absolute():
            resolved = self.config.project_dir / resolved
        return resolved

    def _should_validate(self, test_key: str) -> bool:
        if not self._gate.enabled:
            return False
        if self.config.validation.first_attempt_only and test_key in self._approved_tests:
            return False
        return True

    async def _process_file(
        self,
        file_result: FileResult,
        outcome: AttemptOutcome,
        attempt_number: int,
        errors: list[FileStepError],
    ) -> bool:
        """Handle one failing test file. Returns True if an attempt was recorded."""
        test_path = self._resolve(file_result.path)
        impl_path = implementation_path_for(test_path)
        test_key = str(test_path)
        impl_key = str(impl_path)

        logger.info("Reading test file: %s", test_path)
        try:
            test_code = await asyncio.to_thread(test_path.read_text)
        except (OSError, UnicodeDecodeError) as e:
            await self._fail(errors, test_key, "read", f"Could not read test file: {e}")
            return False

        try:
            current = await asyncio.to_thread(_read_optional, impl_path)
        except (OSError, UnicodeDecodeError) as e:
            await self._fail(errors, impl_key, "read", f"Could not read implementation file: {e}")
            return False

        if self._should_validate(test_key):
            try:
                decision = await self._gate.evaluate(test_key, file_result, test_code)
            except Exception as e:
                await self._fail(errors, test_key, "validate", f"Test validation failed: {e}")
                return False
            if decision.issues:
                await self._emit(
                    "validation_warning",
                    decision.overall_assessment or "Test file has potential issues",
                    file=test_key,
                    validation_issues=decision.issues,
                    validation_assessment=decision.overall_assessment,
                )
            if not self._gate.permits(test_key):
                await self._fail(
                    errors, test_key, "validate",
                    "Generation blocked: test file has validation errors",
                )
                return False
            self._approved_tests.add(test_key)

        history = self._tracker.history_for(impl_key)
        request = GenerationRequest(
            test_code=test_code,
            failing_tests=file_result.failing_tests,
            current_implementation=current,
            implementation_path=impl_key,
            previous_attempts=history,
            persistent_errors=persistent_errors(history),
        )

        await self._emit("generating_code", f"Generating implementation for {impl_path.name}", file=impl_key)
        try:
            result = await self._generator.generate(request)
        except Exception as e:
            logger.exception("Generator raised for %s", impl_key)
            result = GenerationResult(success=False, error=str(e) or type(e).__name__)

        code = result.code or ""
        if not result.success or not code.strip():
            message = result.error or "AI returned empty code"
            self._record(Attempt(
                sequence_number=self._tracker.next_sequence_number(),
                target_file=impl_key,
                outcome=outcome,
                error=message,
            ))
            await self._fail(errors, impl_key, "generate", f"Error generating implementation: {message}")
            return True

        try:
            await apply_code(impl_path, code)
        except (OSError, ValueError) as e:
            message = f"Could not apply generated code: {e}"
            self._record(Attempt(
                sequence_number=self._tracker.next_sequence_number(),
                target_file=impl_key,
                generated_code=code,
                outcome=outcome,
                error=message,
            ))
            await self._fail(errors, impl_key, "apply", message)
            return True

        self._record(Attempt(
            sequence_number=self._tracker.next_sequence_number(),
            target_file=impl_key,
            generated_code=code,
            outcome=outcome,
        ))
        await self._emit(
            "implementation_updated",
            f"Updated implementation (attempt {attempt_number})",
            file=impl_key,
        )
        return True

    # ── Helpers ──────────────────────────────────────────────────────

    def _record(self, attempt: Attempt) -> None:
        self._tracker.record_attempt(attempt)
        self._state.history.append(attempt)

    async def _fail(
        self, errors: list[FileStepError], file: str, stage: str, message: str,
    ) -> None:
        logger.error("%s (%s): %s", file, stage, message)
        errors.append(FileStepError(file=file, stage=stage, message=message))
        await self._emit("error", message, file=file)

    async def _on_validation_waiting(self, decision: ValidationDecision, file_path: str) -> None:
        await self._emit(
            "validation_waiting",
            "Waiting for a decision on test validation issues",
            file=file_path,
            validation_issues=decision.issues,
            validation_assessment=decision.overall_assessment,
        )

    async def _emit(self, status: StatusKind, message: str = "", file: str = "", **extra) -> None:
        if self._on_update is None:
            return
        update = StatusUpdate(
            status=status,
            message=message,
            file=file,
            attempt=self._state.attempt_count or None,
            max_attempts=self.config.project.max_attempts,
            **extra,
        )
        try:
            result = self._on_update(update)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Status update handler failed")


def _read_optional(path: Path) -> str:
    """File contents, or '' if the file does not exist yet."""
    try:
        return path.read_text()
    except FileNotFoundError:
        return ""
