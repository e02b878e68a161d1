"""Code generation — prompt building, the LLM call, and applying code to disk.

Backend exceptions never escape generate(): they become a
GenerationResult with success=False so the loop can record the attempt
and move on.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path

from redgreen.attempts import best_attempt
from redgreen.backends import Backend
from redgreen.schemas import GenerationRequest, GenerationResult

logger = logging.getLogger(__name__)

CODE_SYSTEM = """You are an expert programmer implementing code to make failing tests pass.
Respond only with valid code that can be written directly into the
implementation file. Do not include markdown code fences, explanations,
or anything else that is not code for the implementation."""

_FENCE_LANGS = r"(?:typescript|javascript|python|tsx|jsx|ts|js|py)"
_LANG_BLOCK = re.compile(r"```" + _FENCE_LANGS + r"?[ \t]*\n(.*?)\n```", re.DOTALL)
_FENCE_MARKER = re.compile(r"```" + _FENCE_LANGS + r"?")

_LANGUAGES = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".py": "python",
}


def fence_language(path: str) -> str:
    return _LANGUAGES.get(Path(path).suffix, "")


def strip_markdown(text: str) -> str:
    """Extract code from a fenced block, or drop stray fence markers."""
    match = _LANG_BLOCK.search(text)
    if match:
        return match.group(1).strip()
    if "```" in text:
        return _FENCE_MARKER.sub("", text).strip()
    return text.strip()


def build_prompt(request: GenerationRequest) -> str:
    """Assemble the generation prompt, including what earlier attempts got wrong."""
    lang = fence_language(request.implementation_path)
    parts = [
        "I need to implement code that passes these failing tests.",
        "",
        "## Test File",
        f"```{lang}",
        request.test_code,
        "```",
        "",
        "## Failing Tests",
    ]
    for test in request.failing_tests:
        parts.append(f"- Test: {test.name}")
        parts.append(f"  Error: {test.error or 'Unknown error'}")
        if test.offending_code:
            parts.append(f"  Code: {test.offending_code}")

    if request.current_implementation:
        parts.extend([
            "",
            "## Current Implementation",
            f"```{lang}",
            request.current_implementation,
            "```",
        ])

    if request.previous_attempts:
        parts.extend([
            "",
            "## Previous Attempts",
            f"You've made {len(request.previous_attempts)} previous attempts at this file.",
        ])
        best = best_attempt(request.previous_attempts)
        if best is not None:
            parts.append(
                f"Your best attempt was #{best.sequence_number} with "
                f"{best.outcome.passing_tests} passing tests."
            )
        if request.persistent_errors:
            parts.append("")
            parts.append("Persistent errors that have appeared in multiple attempts:")
            parts.extend(f"- {e}" for e in request.persistent_errors)

        for attempt in request.previous_attempts:
            parts.extend(["", f"### Attempt {attempt.sequence_number}"])
            if attempt.error:
                parts.append(f"Generation failed: {attempt.error}")
                continue
            parts.extend([f"```{lang}", attempt.generated_code, "```"])
            outcome = attempt.outcome
            parts.append(
                f"Results: {outcome.passing_tests} passing, {outcome.failing_tests} failing"
            )
            if outcome.failure_details:
                parts.append("Failures:")
                parts.extend(f"- {d.key}" for d in outcome.failure_details)

    parts.extend([
        "",
        f"Generate the implementation code for {request.implementation_path} "
        "that makes all these tests pass.",
        "Learn from the previous attempts and their results.",
        "Only return valid code for the implementation file, no explanations or markdown.",
    ])
    return "\n".join(parts)


class CodeGenerator:
    """Turns a GenerationRequest into code through an LLM backend."""

    def __init__(self, backend: Backend, max_tokens: int = 4096) -> None:
        self._backend = backend
        self._max_tokens = max_tokens

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        if not request.test_code.strip():
            return GenerationResult(success=False, error="No test code provided")

        logger.info(
            "Generating implementation for %s (%d failing tests, %d previous attempts)",
            request.implementation_path,
            len(request.failing_tests),
            len(request.previous_attempts),
        )
        prompt = build_prompt(request)
        logger.debug("Generated prompt (%d characters)", len(prompt))

        try:
            text, in_tok, out_tok = await self._backend.complete(
                prompt, CODE_SYSTEM, max_tokens=self._max_tokens,
            )
        except Exception as e:
            logger.error("Error generating implementation: %s", e)
            return GenerationResult(success=False, error=str(e) or type(e).__name__)

        logger.debug("Generation used %d+%d tokens", in_tok, out_tok)
        code = strip_markdown(text or "")
        if not code:
            logger.error("Backend returned empty code after cleaning")
            return GenerationResult(success=False, error="AI returned empty code")

        logger.debug("Generated code preview: %s", code[:300])
        return GenerationResult(success=True, code=code)

    async def close(self) -> None:
        await self._backend.close()


async def apply_code(implementation_path: str | Path, code: str) -> None:
    """Write generated code to disk, creating parent directories.

    Raises ValueError for empty code and OSError for write failures.
    """
    if not code.strip():
        raise ValueError("Cannot apply empty code to implementation file")
    path = Path(implementation_path)

    def _write() -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(code)

    await asyncio.to_thread(_write)
    logger.info("Wrote %d characters to %s", len(code), path)
