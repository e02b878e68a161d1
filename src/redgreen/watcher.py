"""Polling file watcher — mtime snapshots, diffed every poll_interval seconds.

Watches files matching the test pattern plus the implementation file
derived from each one. A path's event is held until it has been quiet
for `debounce` seconds, so an editor's save burst yields one event.
"""

from __future__ import annotations

import asyncio
import fnmatch
import inspect
import logging
import os
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

IGNORED_DIRS = frozenset({
    "node_modules", ".git", "dist", "build", "coverage",
    "__pycache__", ".venv", "venv", ".pytest_cache",
})

_BRACES = re.compile(r"\{([^{}]*)\}")
_TEST_MARKERS = (".test.", ".spec.")


@dataclass(frozen=True)
class FileEvent:
    kind: Literal["changed", "added", "removed"]
    path: Path


OnEvent = Callable[[FileEvent], "Awaitable[None] | None"]


def implementation_path_for(test_path: str | Path) -> Path:
    """Derive the implementation file a test file exercises.

    calc.test.ts -> calc.ts, calc.spec.js -> calc.js, test_calc.py -> calc.py
    """
    test_path = Path(test_path)
    name = test_path.name
    for marker in _TEST_MARKERS:
        if marker in name:
            return test_path.with_name(name.replace(marker, ".", 1))
    if name.startswith("test_"):
        return test_path.with_name(name[len("test_"):])
    if test_path.stem.endswith("_test"):
        return test_path.with_name(test_path.stem[:-len("_test")] + test_path.suffix)
    return test_path


def expand_braces(pattern: str) -> list[str]:
    """'**/*.test.{js,ts}' -> ['**/*.test.js', '**/*.test.ts']"""
    match = _BRACES.search(pattern)
    if not match:
        return [pattern]
    head, tail = pattern[:match.start()], pattern[match.end():]
    expanded: list[str] = []
    for option in match.group(1).split(","):
        expanded.extend(expand_braces(head + option + tail))
    return expanded


def matches_pattern(relative_path: str, patterns: list[str]) -> bool:
    """fnmatch against expanded patterns; a leading '**/' also matches the root."""
    for pattern in patterns:
        if fnmatch.fnmatch(relative_path, pattern):
            return True
        if pattern.startswith("**/") and fnmatch.fnmatch(relative_path, pattern[3:]):
            return True
    return False


class PollingWatcher:
    """Emits changed/added/removed events for watched project files.

    Args:
        root: Project directory to scan.
        test_pattern: Glob for test files, relative to root. Brace
            alternatives are supported.
        on_event: Called once per debounced event; may be async.
        poll_interval: Seconds between scans.
        debounce: Seconds a path must stay quiet before its event fires.
    """

    def __init__(
        self,
        root: str | Path,
        test_pattern: str,
        on_event: OnEvent,
        poll_interval: float = 1.0,
        debounce: float = 0.3,
    ) -> None:
        self.root = Path(root)
        self.patterns = expand_braces(test_pattern)
        self.poll_interval = poll_interval
        self.debounce = debounce
        self._on_event = on_event
        self._snapshot: dict[Path, int] = {}
        self._pending: dict[Path, tuple[FileEvent, float]] = {}
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def test_files(self) -> list[Path]:
        """All files under root matching the test pattern."""
        found: list[Path] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
            for filename in sorted(filenames):
                path = Path(dirpath) / filename
                relative = path.relative_to(self.root).as_posix()
                if matches_pattern(relative, self.patterns):
                    found.append(path)
        return found

    def scan(self) -> dict[Path, int]:
        """mtime snapshot of every test file and its existing implementation file."""
        snapshot: dict[Path, int] = {}
        for test_file in self.test_files():
            for path in (test_file, implementation_path_for(test_file)):
                try:
                    snapshot[path] = path.stat().st_mtime_ns
                except OSError:
                    continue
        return snapshot

    @staticmethod
    def diff(old: dict[Path, int], new: dict[Path, int]) -> list[FileEvent]:
        events: list[FileEvent] = []
        for path, mtime in new.items():
            if path not in old:
                events.append(FileEvent("added", path))
            elif old[path] != mtime:
                events.append(FileEvent("changed", path))
        for path in old:
            if path not in new:
                events.append(FileEvent("removed", path))
        return events

    async def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._snapshot = await asyncio.to_thread(self.scan)
        test_count = sum(1 for p in self._snapshot if matches_pattern(
            p.relative_to(self.root).as_posix(), self.patterns,
        ))
        if test_count == 0:
            logger.warning("No test files found matching pattern: %s", ", ".join(self.patterns))
        logger.info("Watching %d files under %s", len(self._snapshot), self.root)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        self._pending.clear()

    async def poll_once(self, now: float | None = None) -> list[FileEvent]:
        """Scan once and dispatch every event whose debounce window has passed."""
        current = await asyncio.to_thread(self.scan)
        now = time.monotonic() if now is None else now
        for event in self.diff(self._snapshot, current):
            logger.debug("File %s: %s", event.kind, event.path)
            self._pending[event.path] = (event, now)
        self._snapshot = current

        ready = [
            event for event, seen in self._pending.values()
            if now - seen >= self.debounce
        ]
        for event in ready:
            del self._pending[event.path]
            result = self._on_event(event)
            if inspect.isawaitable(result):
                await result
        return ready

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            try:
                await self.poll_once()
            except Exception:
                logger.exception("File watcher poll failed")
