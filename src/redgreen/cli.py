"""CLI entry points for redgreen.

Commands:
  redgreen start [project-dir]     Run the red-green loop until tests pass
  redgreen init [project-dir]      Write a sample redgreen.yaml
  redgreen diagnose [project-dir]  Check Python, API keys, and the test runner
  redgreen parse <file>            Normalize a saved test report and print it
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from redgreen import __version__
from redgreen.analyzer import TestAnalyzer
from redgreen.attempts import format_history_summary
from redgreen.backends import create_backend
from redgreen.config import ConfigError, load_config, write_sample_config
from redgreen.generator import CodeGenerator
from redgreen.orchestrator import Orchestrator
from redgreen.report_parser import normalize
from redgreen.schemas import SessionStatus, StatusUpdate, ValidationDecision
from redgreen.test_harness import RunnerUnavailable, TestHarness
from redgreen.validation import DecisionFn, ValidationGate

logger = logging.getLogger(__name__)

API_KEY_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="redgreen",
        description="Run tests, generate code for the failures, repeat until green",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    # start
    p_start = subparsers.add_parser("start", help="Run the red-green loop")
    p_start.add_argument("project_dir", nargs="?", default=".", help="Project directory path")
    p_start.add_argument("--config", help="Path to a config file (default: <project>/redgreen.yaml)")
    p_start.add_argument("--provider", help="AI provider (openai, anthropic)")
    p_start.add_argument("--model", help="Model name")
    p_start.add_argument("--max-attempts", type=int, help="Maximum loop iterations")
    p_start.add_argument("--test-command", help="Command that prints a JSON test report")
    p_start.add_argument("--no-validation", action="store_true", help="Skip test file validation")
    p_start.add_argument("--watch", action="store_true", help="Keep watching for test changes after the loop ends")
    p_start.add_argument("-y", "--yes", action="store_true", help="Continue past validation errors without asking")
    p_start.add_argument("--save-history", action="store_true", help="Write the attempt history as JSON when done")

    # init
    p_init = subparsers.add_parser("init", help="Write a sample redgreen.yaml")
    p_init.add_argument("project_dir", nargs="?", default=".", help="Project directory path")
    p_init.add_argument("--force", action="store_true", help="Overwrite an existing config file")

    # diagnose
    p_diagnose = subparsers.add_parser("diagnose", help="Check the environment")
    p_diagnose.add_argument("project_dir", nargs="?", default=".", help="Project directory path")

    # parse
    p_parse = subparsers.add_parser("parse", help="Normalize a saved test report")
    p_parse.add_argument("file", help="Report file ('-' for stdin)")

    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.INFO, format="%(message)s")

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        if args.command == "start":
            code = asyncio.run(cmd_start(args))
        elif args.command == "init":
            code = cmd_init(args)
        elif args.command == "diagnose":
            code = cmd_diagnose(args)
        else:
            code = cmd_parse(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        code = 1
    except KeyboardInterrupt:
        print("\nInterrupted")
        code = 130
    sys.exit(code)


# ── start ────────────────────────────────────────────────────────────


def make_decider(auto_yes: bool = False) -> DecisionFn:
    """Interactive yes/no prompt for the validation gate."""

    async def decide(decision: ValidationDecision, file_path: str) -> bool:
        print()
        print(f"Test validation found problems in {file_path}:")
        for issue in decision.issues:
            where = f" ({issue.location})" if issue.location else ""
            print(f"  [{issue.severity}] {issue.message}{where}")
            if issue.suggestion:
                print(f"      suggestion: {issue.suggestion}")
        if decision.overall_assessment:
            print(f"  {decision.overall_assessment}")
        if auto_yes:
            print("Continuing anyway (--yes)")
            return True
        try:
            answer = await asyncio.to_thread(input, "Continue anyway? (y/N) ")
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")

    return decide


def print_update(update: StatusUpdate) -> None:
    """Console rendering of a status update."""
    prefix = ""
    if update.attempt is not None:
        prefix = f"[{update.attempt}/{update.max_attempts}] "
    line = f"{prefix}{update.status}"
    if update.message:
        line += f": {update.message}"
    print(line)


def _start_overrides(args: argparse.Namespace) -> dict:
    return {
        "ai.provider": args.provider,
        "ai.model": args.model,
        "project.max_attempts": args.max_attempts,
        "runner.command": args.test_command,
        "validation.enabled": False if args.no_validation else None,
        "history.save": True if args.save_history else None,
    }


async def cmd_start(args: argparse.Namespace) -> int:
    """Run the loop. Returns the process exit code."""
    config = load_config(args.project_dir, config_path=args.config, overrides=_start_overrides(args))
    if not args.verbose:
        logging.getLogger().setLevel(config.logging.level.upper())

    try:
        backend = create_backend(
            config.ai.provider,
            config.ai.model,
            temperature=config.ai.temperature,
            base_url=config.ai.base_url or None,
            timeout=config.ai.timeout,
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    analyzer = TestAnalyzer(
        backend, use_llm=config.validation.use_llm, max_tokens=config.ai.max_tokens,
    )
    gate = ValidationGate(
        analyzer, decide=make_decider(args.yes), enabled=config.validation.enabled,
    )
    harness = TestHarness(config.project_dir, config.runner.command, config.runner.timeout)
    orchestrator = Orchestrator(
        config, harness, CodeGenerator(backend, max_tokens=config.ai.max_tokens), gate,
        on_update=print_update,
    )

    print(f"redgreen starting for: {config.project_dir}")
    print(f"  Test command: {config.runner.command}")
    print(f"  Model: {config.ai.provider}/{config.ai.model}")
    print(f"  Max attempts: {config.project.max_attempts}")
    print()

    try:
        await orchestrator.start()
    except RunnerUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        await backend.close()
        return 1

    try:
        state = await orchestrator.wait()
        if args.watch:
            print("Watching for test changes (Ctrl-C to stop)")
            await asyncio.Event().wait()
    finally:
        await orchestrator.stop()
        await backend.close()

    print()
    print(format_history_summary(state.history))
    if config.history.save:
        print(f"History saved to {config.history_path}")
    return 0 if state.status is SessionStatus.SUCCEEDED else 1


# ── init / diagnose / parse ──────────────────────────────────────────


def cmd_init(args: argparse.Namespace) -> int:
    """Write a sample config file."""
    path = write_sample_config(args.project_dir, force=args.force)
    print(f"Wrote {path}")
    print(f"  Then run: redgreen start {args.project_dir}")
    return 0


def cmd_diagnose(args: argparse.Namespace) -> int:
    """Report environment problems that would stop `start`."""
    checks: list[tuple[str, bool, str]] = []

    version = sys.version_info
    checks.append((
        "Python version",
        version >= (3, 11),
        f"{version.major}.{version.minor}.{version.micro}",
    ))

    config = load_config(args.project_dir)
    config_file = Path(config.project_dir) / "redgreen.yaml"
    checks.append((
        "Config file",
        True,
        str(config_file) if config_file.exists() else "not found, using defaults",
    ))

    key_var = API_KEY_VARS[config.ai.provider]
    has_key = bool(os.environ.get(key_var)) or bool(config.ai.base_url)
    checks.append((f"{key_var}", has_key, "set" if has_key else "missing"))

    harness = TestHarness(config.project_dir, config.runner.command, config.runner.timeout)
    try:
        executable = harness.check()
        checks.append(("Test runner", True, executable))
    except RunnerUnavailable as e:
        checks.append(("Test runner", False, str(e)))

    for name, ok, detail in checks:
        mark = "ok  " if ok else "FAIL"
        print(f"  [{mark}] {name}: {detail}")

    return 0 if all(ok for _, ok, _ in checks) else 1


def cmd_parse(args: argparse.Namespace) -> int:
    """Print a normalized report as JSON."""
    if args.file == "-":
        raw = sys.stdin.read()
    else:
        try:
            raw = Path(args.file).read_text()
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    report = normalize(raw)
    print(report.model_dump_json(indent=2))
    return 1 if report.summary.error else 0


if __name__ == "__main__":
    main()
