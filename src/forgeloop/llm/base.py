"""Abstract base class for LLM providers."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from forgeloop.llm.types import ChatResponse, LLMConfig, Message, Provider

# Rough characters-per-token ratio used when a provider reports no usage
_CHARS_PER_TOKEN = 4


class BaseLLMProvider(ABC):
    """The narrow surface the agent loop and decomposer depend on."""

    def __init__(self, config: LLMConfig) -> None:
        self._config = config

    @property
    def config(self) -> LLMConfig:
        return self._config

    @property
    def provider(self) -> Provider:
        return self._config.provider

    @property
    def model(self) -> str:
        return self._config.model

    @abstractmethod
    async def chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        *,
        temperature: float | None = None,
    ) -> ChatResponse:
        """Send one conversation turn and return the assistant response."""
        ...

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return max(1, len(text) // _CHARS_PER_TOKEN)

    def count_message_tokens(self, messages: list[Message]) -> int:
        return self.count_tokens(json.dumps(messages, default=str))

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens * self._config.input_cost_per_mtok
            + output_tokens * self._config.output_cost_per_mtok
        ) / 1_000_000

    async def close(self) -> None:
        """Release any HTTP resources held by the provider."""
