"""Claude provider backed by the anthropic SDK."""

from __future__ import annotations

import logging
from typing import Any

import anthropic

from forgeloop.core.errors import ProviderError, RateLimitError
from forgeloop.llm.base import BaseLLMProvider
from forgeloop.llm.types import (
    ChatResponse,
    LLMConfig,
    Message,
    Provider,
    ToolCall,
    Usage,
)

logger = logging.getLogger(__name__)


def to_anthropic_messages(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
    """Split neutral messages into a system prompt and Anthropic content blocks.

    Consecutive ``tool`` messages are folded into a single user turn of
    ``tool_result`` blocks, which is what the Messages API expects after an
    assistant turn containing several ``tool_use`` blocks.
    """
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    for msg in messages:
        role = msg.get("role")
        if role == "system":
            system_parts.append(msg.get("content", ""))
        elif role == "assistant":
            blocks: list[dict[str, Any]] = []
            if msg.get("content"):
                blocks.append({"type": "text", "text": msg["content"]})
            for tc in msg.get("tool_calls", []):
                blocks.append({
                    "type": "tool_use",
                    "id": tc["id"],
                    "name": tc["name"],
                    "input": tc.get("input", {}),
                })
            converted.append({"role": "assistant", "content": blocks or ""})
        elif role == "tool":
            block = {
                "type": "tool_result",
                "tool_use_id": msg.get("tool_call_id", ""),
                "content": msg.get("content", ""),
                **({"is_error": True} if msg.get("is_error") else {}),
            }
            last = converted[-1] if converted else None
            if (
                last is not None
                and last["role"] == "user"
                and isinstance(last["content"], list)
                and all(b.get("type") == "tool_result" for b in last["content"])
            ):
                last["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
        else:
            converted.append({"role": "user", "content": msg.get("content", "")})

    return "\n\n".join(p for p in system_parts if p), converted


class ClaudeProvider(BaseLLMProvider):
    """Non-streaming Claude client; one request per agent iteration."""

    def __init__(self, config: LLMConfig, client: anthropic.AsyncAnthropic | None = None) -> None:
        super().__init__(config)
        self._client = client or anthropic.AsyncAnthropic(api_key=config.api_key)

    @classmethod
    def from_settings(
        cls,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 8192,
        input_cost_per_mtok: float = 3.0,
        output_cost_per_mtok: float = 15.0,
    ) -> "ClaudeProvider":
        config = LLMConfig(
            provider=Provider.CLAUDE,
            model=model,
            max_tokens=max_tokens,
            api_key=api_key,
            input_cost_per_mtok=input_cost_per_mtok,
            output_cost_per_mtok=output_cost_per_mtok,
        )
        return cls(config)

    async def chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        *,
        temperature: float | None = None,
    ) -> ChatResponse:
        system, api_messages = to_anthropic_messages(messages)
        kwargs: dict[str, Any] = {
            "model": self._config.model,
            "max_tokens": self._config.max_tokens,
            "messages": api_messages,
            "temperature": self._config.temperature if temperature is None else temperature,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = tools

        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.RateLimitError as e:
            raise RateLimitError(str(e), provider=self.provider.value) from e
        except anthropic.APIError as e:
            raise ProviderError(str(e), provider=self.provider.value) from e

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, input=dict(block.input)))

        usage = Usage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        logger.debug(
            "Claude response: %d tool calls, %d in / %d out tokens",
            len(tool_calls), usage.input_tokens, usage.output_tokens,
        )
        return ChatResponse(
            content="".join(text_parts),
            tool_calls=tool_calls,
            usage=usage,
            stop_reason=response.stop_reason or "",
        )

    async def close(self) -> None:
        await self._client.close()
