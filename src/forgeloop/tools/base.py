"""Tool contract: a named, schema-validated capability run against an executor."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from pydantic import BaseModel

from forgeloop.execution.base import Executor


@dataclass
class ToolResult:
    """Binary outcome of a tool call: an output payload or an error string."""

    success: bool
    output: Any = None
    error: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, output: Any, **metadata: Any) -> "ToolResult":
        return cls(success=True, output=output, metadata=metadata)

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> "ToolResult":
        return cls(success=False, error=error, metadata=metadata)

    def to_text(self) -> str:
        """Render for the provider's observation message."""
        if not self.success:
            return f"Error: {self.error}"
        if isinstance(self.output, str):
            return self.output
        return json.dumps(self.output, default=str, indent=2)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.success:
            data["output"] = self.output
        else:
            data["error"] = self.error
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolResult":
        return cls(
            success=data["success"],
            output=data.get("output"),
            error=data.get("error", ""),
            metadata=data.get("metadata", {}),
        )


@dataclass
class ToolContext:
    executor: Executor
    agent_id: str = ""
    role: str = ""


class Tool(ABC):
    """Subclasses set ``name``, ``description`` and a pydantic ``args_model``."""

    name: ClassVar[str]
    description: ClassVar[str]
    args_model: ClassVar[type[BaseModel]]

    @abstractmethod
    async def execute(self, args: Any, context: ToolContext) -> ToolResult:
        ...

    def definition(self) -> dict[str, Any]:
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": schema,
        }
