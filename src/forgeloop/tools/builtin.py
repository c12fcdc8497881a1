"""Builds the default tool registry."""

from __future__ import annotations

from forgeloop.core.logging import AuditLogger
from forgeloop.tools.base import Tool
from forgeloop.tools.diff_tool import DiffTool
from forgeloop.tools.file_tool import DeleteFileTool, ListDirTool, ReadFileTool, WriteFileTool
from forgeloop.tools.git_tool import GitTool
from forgeloop.tools.registry import ToolRegistry
from forgeloop.tools.search import GlobTool, GrepTool
from forgeloop.tools.shell import BashTool


def builtin_tools() -> list[Tool]:
    return [
        ReadFileTool(),
        WriteFileTool(),
        DeleteFileTool(),
        ListDirTool(),
        GlobTool(),
        GrepTool(),
        DiffTool(),
        GitTool(),
        BashTool(),
    ]


def create_tool_registry(
    audit_logger: AuditLogger | None = None, output_cap: int = 15_000
) -> ToolRegistry:
    return ToolRegistry(builtin_tools(), audit_logger=audit_logger, output_cap=output_cap)
