"""Ollama provider using the OpenAI-compatible chat completions API."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

import httpx

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


def to_openai_tools(tools: list[dict[str, Any]] | None) -> list[dict[str, Any]] | None:
    """Convert ``input_schema`` tool definitions to OpenAI function tools."""
    if not tools:
        return None
    return [
        {
            "type": "function",
            "function": {
                "name": tool.get("name", ""),
                "description": tool.get("description", ""),
                "parameters": tool.get("input_schema", {}),
            },
        }
        for tool in tools
    ]


def to_openai_messages(messages: list[Message]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    for msg in messages:
        role = msg.get("role", "user")
        if role == "assistant":
            out: dict[str, Any] = {"role": "assistant", "content": msg.get("content", "")}
            if msg.get("tool_calls"):
                out["tool_calls"] = [
                    {
                        "id": tc["id"],
                        "type": "function",
                        "function": {
                            "name": tc["name"],
                            "arguments": json.dumps(tc.get("input", {})),
                        },
                    }
                    for tc in msg["tool_calls"]
                ]
            converted.append(out)
        elif role == "tool":
            converted.append({
                "role": "tool",
                "tool_call_id": msg.get("tool_call_id", ""),
                "content": msg.get("content", ""),
            })
        else:
            converted.append({"role": role, "content": msg.get("content", "")})
    return converted


class OllamaProvider(BaseLLMProvider):
    """Local models served by Ollama. Pricing defaults to zero."""

    def __init__(self, config: LLMConfig, client: httpx.AsyncClient | None = None) -> None:
        super().__init__(config)
        self._base_url = config.base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=120.0)

    @classmethod
    def from_settings(
        cls,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.2",
        max_tokens: int = 8192,
    ) -> "OllamaProvider":
        config = LLMConfig(
            provider=Provider.OLLAMA,
            model=model,
            max_tokens=max_tokens,
            base_url=base_url,
        )
        return cls(config)

    async def is_available(self) -> bool:
        """Check if the Ollama server is running."""
        try:
            response = await self._client.get(f"{self._base_url}/api/tags")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        *,
        temperature: float | None = None,
    ) -> ChatResponse:
        payload: dict[str, Any] = {
            "model": self._config.model,
            "messages": to_openai_messages(messages),
            "max_tokens": self._config.max_tokens,
            "temperature": self._config.temperature if temperature is None else temperature,
            "stream": False,
        }
        openai_tools = to_openai_tools(tools)
        if openai_tools:
            payload["tools"] = openai_tools

        try:
            response = await self._client.post(
                f"{self._base_url}/v1/chat/completions", json=payload
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"Ollama request failed: {e}", provider="ollama") from e

        if response.status_code == 429:
            raise RateLimitError("Ollama rate limit exceeded", provider="ollama")
        if response.status_code != 200:
            raise ProviderError(
                f"Ollama returned HTTP {response.status_code}: {response.text[:500]}",
                provider="ollama",
            )

        try:
            data = response.json()
            choice = data["choices"][0]
        except (ValueError, KeyError, IndexError) as e:
            raise ProviderError(f"Malformed Ollama response: {e}", provider="ollama") from e

        message = choice.get("message", {})
        tool_calls: list[ToolCall] = []
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function", {})
            raw_args = fn.get("arguments") or "{}"
            try:
                args = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
            except json.JSONDecodeError:
                logger.warning("Unparseable tool arguments from Ollama: %s", raw_args[:200])
                args = {}
            tool_calls.append(ToolCall(
                id=tc.get("id") or f"call_{uuid.uuid4().hex[:8]}",
                name=fn.get("name", ""),
                input=args,
            ))

        usage_data = data.get("usage") or {}
        usage = None
        if usage_data:
            usage = Usage(
                input_tokens=usage_data.get("prompt_tokens", 0),
                output_tokens=usage_data.get("completion_tokens", 0),
            )
        return ChatResponse(
            content=message.get("content") or "",
            tool_calls=tool_calls,
            usage=usage,
            stop_reason=choice.get("finish_reason") or "",
        )

    async def close(self) -> None:
        await self._client.aclose()
