"""Unified diff between two files, or between a file and proposed content."""

from __future__ import annotations

import difflib

from pydantic import BaseModel, Field, model_validator

from forgeloop.tools.base import Tool, ToolContext, ToolResult


class DiffArgs(BaseModel):
    path: str = Field(min_length=1, description="Original file")
    other_path: str | None = Field(default=None, description="File to compare against")
    new_content: str | None = Field(default=None, description="Proposed content to compare against")
    context_lines: int = Field(default=3, ge=0, le=50)

    @model_validator(mode="after")
    def check_one_target(self) -> "DiffArgs":
        if (self.other_path is None) == (self.new_content is None):
            raise ValueError("provide exactly one of other_path or new_content")
        return self


class DiffTool(Tool):
    name = "diff"
    description = "Show a unified diff of a file against another file or against proposed content."
    args_model = DiffArgs

    async def execute(self, args: DiffArgs, context: ToolContext) -> ToolResult:
        original = await context.executor.read_file(args.path)
        if args.other_path is not None:
            updated = await context.executor.read_file(args.other_path)
            to_name = args.other_path
        else:
            updated = args.new_content or ""
            to_name = f"{args.path} (proposed)"

        lines = list(difflib.unified_diff(
            original.splitlines(keepends=True),
            updated.splitlines(keepends=True),
            fromfile=args.path,
            tofile=to_name,
            n=args.context_lines,
        ))
        if not lines:
            return ToolResult.ok("No differences", changed=False)
        added = sum(1 for line in lines if line.startswith("+") and not line.startswith("+++"))
        removed = sum(1 for line in lines if line.startswith("-") and not line.startswith("---"))
        return ToolResult.ok("".join(lines), changed=True, added=added, removed=removed)
