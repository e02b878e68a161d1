"""OpenAI backend — chat completions, structured output via json_object mode.

Also compatible with any provider implementing the OpenAI API via a
base_url override (local servers, DeepSeek, Groq, ...).
"""

from __future__ import annotations

import json
import logging
import os
from typing import TypeVar

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_PARSE_ATTEMPTS = 3


class OpenAIBackend:
    """Backend using the OpenAI chat completions API."""

    def __init__(
        self,
        model: str = "gpt-4o",
        temperature: float = 0.2,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        resolved_key = api_key or os.environ.get("OPENAI_API_KEY", "")
        if not resolved_key and not base_url:
            raise ValueError("OPENAI_API_KEY environment variable is required.")

        kwargs: dict = {
            "api_key": resolved_key or "not-needed",
            "max_retries": 3,
            "timeout": timeout,
        }
        if base_url:
            kwargs["base_url"] = base_url

        self._client = AsyncOpenAI(**kwargs)
        self._model = model
        self._temperature = temperature

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        self._model = model

    async def complete(
        self,
        prompt: str,
        system: str,
        max_tokens: int = 4096,
    ) -> tuple[str, int, int]:
        response = await self._client.chat.completions.create(
            model=self._model,
            max_tokens=max_tokens,
            temperature=self._temperature,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        )
        in_tok, out_tok = _usage(response)
        if not response.choices:
            return "", in_tok, out_tok
        return response.choices[0].message.content or "", in_tok, out_tok

    async def assess(
        self,
        schema: type[T],
        prompt: str,
        system: str,
        max_tokens: int = 4096,
    ) -> tuple[T, int, int]:
        """Structured output via json_object response format."""
        tool_schema = schema.model_json_schema()
        tool_schema.pop("title", None)
        schema_instruction = (
            f"\n\nRespond with a JSON object matching this schema:\n"
            f"```json\n{json.dumps(tool_schema, indent=2)}\n```\n"
            f"Return ONLY valid JSON, no markdown fences or explanation."
        )

        total_in = 0
        total_out = 0
        for attempt in range(_PARSE_ATTEMPTS):
            response = await self._client.chat.completions.create(
                model=self._model,
                max_tokens=max_tokens,
                temperature=self._temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt + schema_instruction},
                ],
                response_format={"type": "json_object"},
            )
            in_tok, out_tok = _usage(response)
            total_in += in_tok
            total_out += out_tok

            content = response.choices[0].message.content if response.choices else ""
            try:
                parsed = schema.model_validate(json.loads(content or ""))
                return parsed, total_in, total_out
            except (json.JSONDecodeError, ValidationError) as e:
                if attempt < _PARSE_ATTEMPTS - 1:
                    logger.warning("JSON parse error (attempt %d): %s", attempt + 1, e)
                    continue
                raise

        raise RuntimeError(f"Failed to get valid {schema.__name__} after {_PARSE_ATTEMPTS} attempts")

    async def close(self) -> None:
        await self._client.close()


def _usage(response) -> tuple[int, int]:
    usage = response.usage
    if not usage:
        return 0, 0
    return usage.prompt_tokens, usage.completion_tokens
