"""Tool registry for registering, resolving and dispatching tools."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from typing import Any

from pydantic import ValidationError

from forgeloop.core.logging import AuditLogger
from forgeloop.tools.base import Tool, ToolContext, ToolResult

logger = logging.getLogger(__name__)


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item["loc"]) or "arguments"
        parts.append(f"{loc}: {item['msg']}")
    return "; ".join(parts)


class ToolRegistry:
    """Maps tool names to tools. Holds no per-call state.

    ``execute`` never raises: unknown names, invalid arguments and tool
    exceptions all come back as a failed ``ToolResult``.
    """

    def __init__(
        self,
        tools: Iterable[Tool] = (),
        *,
        audit_logger: AuditLogger | None = None,
        output_cap: int = 15_000,
    ) -> None:
        self._tools: dict[str, Tool] = {}
        self._audit = audit_logger
        self._output_cap = output_cap
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        """Remove a tool by name. Returns True if found and removed."""
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def definitions(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        if names is None:
            return [tool.definition() for tool in self._tools.values()]
        wanted = set(names)
        return [tool.definition() for name, tool in self._tools.items() if name in wanted]

    def subset(self, names: Iterable[str]) -> "ToolRegistry":
        """A new registry exposing only *names* (unknown names are ignored)."""
        wanted = set(names)
        return ToolRegistry(
            (tool for name, tool in self._tools.items() if name in wanted),
            audit_logger=self._audit,
            output_cap=self._output_cap,
        )

    def _cap(self, result: ToolResult) -> ToolResult:
        if isinstance(result.output, str) and len(result.output) > self._output_cap:
            total = len(result.output)
            result.output = (
                result.output[: self._output_cap]
                + f"\n... (truncated, {total} total chars)"
            )
            result.metadata["truncated"] = True
        return result

    async def execute(
        self, name: str, args: dict[str, Any], context: ToolContext
    ) -> ToolResult:
        tool = self._tools.get(name)
        if tool is None:
            logger.warning("Unknown tool requested: %s", name)
            return ToolResult.fail(f"Tool '{name}' not found")

        try:
            parsed = tool.args_model.model_validate(args or {})
        except ValidationError as e:
            return ToolResult.fail(
                f"Invalid arguments for '{name}': {_format_validation_error(e)}"
            )

        input_summary = ", ".join(
            f"{k}={v!r}" for k, v in (args or {}).items() if k != "content"
        )
        logger.info("Tool call: %s(%s)", name, input_summary)

        start = time.monotonic()
        try:
            result = await tool.execute(parsed, context)
        except Exception as e:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.warning("Tool %s failed after %dms: %s", name, duration_ms, e)
            if self._audit:
                self._audit.log(
                    "tool_error",
                    agent_id=context.agent_id,
                    role=context.role,
                    tool_name=name,
                    input_data=args,
                    duration_ms=duration_ms,
                    error=str(e),
                )
            return ToolResult.fail(f"{type(e).__name__}: {e}")

        duration_ms = int((time.monotonic() - start) * 1000)
        result = self._cap(result)
        logger.info(
            "Tool result: %s -> %s in %dms", name, "ok" if result.success else "failed", duration_ms
        )
        if self._audit:
            self._audit.log(
                "tool_call",
                agent_id=context.agent_id,
                role=context.role,
                tool_name=name,
                input_data=args,
                output_data={"result": result.to_text()[:500]},
                duration_ms=duration_ms,
                error=result.error,
            )
        return result
