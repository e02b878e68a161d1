"""Anthropic backend — messages API with tool_choice schema enforcement."""

from __future__ import annotations

import json
import logging
import os
from typing import TypeVar

import anthropic
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_MODEL_MAX_TOKENS: dict[str, int] = {
    "claude-opus-4-1": 32000,
    "claude-sonnet-4-5": 64000,
    "claude-haiku-4-5": 64000,
}
_DEFAULT_MAX_TOKENS_CAP = 8192
_PARSE_ATTEMPTS = 3


class AnthropicBackend:
    """Backend using the Anthropic API with tool_choice for structured extraction."""

    def __init__(
        self,
        model: str = "claude-sonnet-4-5",
        temperature: float = 0.2,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        resolved_key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")
        if not resolved_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required.")

        kwargs: dict = {
            "api_key": resolved_key,
            "max_retries": 3,
            "timeout": timeout,
        }
        if base_url:
            kwargs["base_url"] = base_url

        self._client = anthropic.AsyncAnthropic(**kwargs)
        self._model = model
        self._temperature = temperature

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        self._model = model

    def _max_tokens_cap(self) -> int:
        return _MODEL_MAX_TOKENS.get(self._model, _DEFAULT_MAX_TOKENS_CAP)

    async def complete(
        self,
        prompt: str,
        system: str,
        max_tokens: int = 4096,
    ) -> tuple[str, int, int]:
        message = await self._client.messages.create(
            model=self._model,
            max_tokens=min(max_tokens, self._max_tokens_cap()),
            temperature=self._temperature,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        text = "".join(
            block.text for block in message.content if block.type == "text"
        )
        return text, message.usage.input_tokens, message.usage.output_tokens

    async def assess(
        self,
        schema: type[T],
        prompt: str,
        system: str,
        max_tokens: int = 4096,
    ) -> tuple[T, int, int]:
        """Call LLM with schema enforcement via tool_choice.

        A truncated or invalid tool input is retried with a doubled
        token allowance, up to the model's cap.
        """
        tool_name = schema.__name__
        tool_schema = schema.model_json_schema()
        tool_schema.pop("title", None)

        total_in = 0
        total_out = 0
        cap = self._max_tokens_cap()
        current_max = min(max_tokens, cap)

        for attempt in range(_PARSE_ATTEMPTS):
            message = await self._client.messages.create(
                model=self._model,
                max_tokens=current_max,
                temperature=self._temperature,
                system=system,
                messages=[{"role": "user", "content": prompt}],
                tools=[{
                    "name": tool_name,
                    "description": schema.__doc__ or f"Extract {tool_name}",
                    "input_schema": tool_schema,
                }],
                tool_choice={"type": "tool", "name": tool_name},
            )
            total_in += message.usage.input_tokens
            total_out += message.usage.output_tokens
            last = attempt == _PARSE_ATTEMPTS - 1

            raw_input = next(
                (b.input for b in message.content
                 if b.type == "tool_use" and b.name == tool_name),
                None,
            )
            if raw_input is None:
                raise RuntimeError(f"No tool_use block found for {tool_name}")

            if message.stop_reason == "max_tokens" and not last and current_max < cap:
                current_max = min(current_max * 2, cap)
                continue

            try:
                parsed = schema.model_validate(_coerce_fields(raw_input))
                return parsed, total_in, total_out
            except ValidationError as e:
                if last:
                    raise
                logger.warning("Tool input failed validation (attempt %d): %s", attempt + 1, e)
                current_max = min(current_max * 2, cap)

        raise RuntimeError(f"Failed to get valid {tool_name} after {_PARSE_ATTEMPTS} attempts")

    async def close(self) -> None:
        await self._client.close()


def _coerce_fields(data: dict) -> dict:
    """Decode list/object fields the model returned as JSON strings."""
    if not isinstance(data, dict):
        return data
    coerced = {}
    for key, value in data.items():
        if isinstance(value, str) and value.startswith(("[", "{")):
            try:
                coerced[key] = json.loads(value)
            except ValueError:
                coerced[key] = value
        else:
            coerced[key] = value
    return coerced
