"""Provider-neutral types for LLM interactions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Provider(str, Enum):
    CLAUDE = "claude"
    OLLAMA = "ollama"


@dataclass
class ToolCall:
    id: str
    name: str
    input: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "input": self.input}


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class ChatResponse:
    """One provider turn: assistant text plus any requested tool calls."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage | None = None
    stop_reason: str = ""

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class LLMConfig:
    """Configuration for an LLM provider."""

    provider: Provider
    model: str
    max_tokens: int = 8192
    temperature: float = 0.2
    base_url: str = ""  # For Ollama
    api_key: str = ""  # For Claude
    input_cost_per_mtok: float = 0.0
    output_cost_per_mtok: float = 0.0


# Neutral message shape consumed by every provider adapter:
#   {"role": "system" | "user", "content": str}
#   {"role": "assistant", "content": str, "tool_calls": [ToolCall.to_dict(), ...]}
#   {"role": "tool", "tool_call_id": str, "name": str, "content": str, "is_error": bool}
Message = dict[str, Any]
