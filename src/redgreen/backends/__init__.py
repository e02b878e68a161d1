"""Backend protocol + factory — decouples generation and analysis from the LLM provider.

Backend is a Protocol: any class implementing complete/assess/set_model/close
can be used as an LLM backend. The factory creates backends by provider name.
"""

from __future__ import annotations

from typing import Protocol, TypeVar

from pydantic import BaseModel

T = TypeVar("T", bound=BaseModel)

PROVIDERS = ("openai", "anthropic")


class Backend(Protocol):
    """Protocol for LLM backends — free-text completion + structured extraction."""

    async def complete(
        self,
        prompt: str,
        system: str,
        max_tokens: int = 4096,
    ) -> tuple[str, int, int]:
        """Plain completion. Returns (text, input_tokens, output_tokens)."""
        ...

    async def assess(
        self,
        schema: type[T],
        prompt: str,
        system: str,
        max_tokens: int = 4096,
    ) -> tuple[T, int, int]:
        """Call LLM with schema enforcement. Returns (result, input_tokens, output_tokens)."""
        ...

    def set_model(self, model: str) -> None:
        """Switch the active model."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...


def create_backend(
    provider: str,
    model: str,
    temperature: float = 0.2,
    base_url: str | None = None,
    timeout: float = 60.0,
) -> Backend:
    """Factory: create a Backend by provider name."""
    if provider == "openai":
        from redgreen.backends.openai import OpenAIBackend
        return OpenAIBackend(
            model=model, temperature=temperature, base_url=base_url, timeout=timeout,
        )
    elif provider == "anthropic":
        from redgreen.backends.anthropic import AnthropicBackend
        return AnthropicBackend(
            model=model, temperature=temperature, base_url=base_url, timeout=timeout,
        )
    else:
        raise ValueError(
            f"Unknown provider: {provider}. Available: {', '.join(PROVIDERS)}"
        )
