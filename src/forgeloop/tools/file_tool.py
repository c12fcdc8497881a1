"""File read/write/list/delete tools."""

from __future__ import annotations

from pydantic import BaseModel, Field

from forgeloop.tools.base import Tool, ToolContext, ToolResult

MAX_READ_CHARS = 30_000
DEFAULT_READ_LINES = 2_000


class ReadFileArgs(BaseModel):
    path: str = Field(min_length=1, description="Path to the file")
    offset: int = Field(default=1, ge=1, description="1-based line to start from")
    limit: int = Field(default=DEFAULT_READ_LINES, ge=1, description="Max lines to return")


class WriteFileArgs(BaseModel):
    path: str = Field(min_length=1, description="Path to write to")
    content: str = Field(description="Full new file content")


class PathArgs(BaseModel):
    path: str = Field(min_length=1, description="Path of the file")


class ListDirArgs(BaseModel):
    path: str = Field(default=".", description="Directory to list")


class ReadFileTool(Tool):
    name = "read_file"
    description = "Read a text file. Lines are prefixed with their 1-based line numbers."
    args_model = ReadFileArgs

    async def execute(self, args: ReadFileArgs, context: ToolContext) -> ToolResult:
        content = await context.executor.read_file(args.path)
        lines = content.splitlines()
        start = args.offset - 1
        selected = lines[start:start + args.limit]
        numbered = "\n".join(
            f"{start + i + 1:>6}\t{line}" for i, line in enumerate(selected)
        )
        if len(numbered) > MAX_READ_CHARS:
            numbered = numbered[:MAX_READ_CHARS] + "\n... (truncated, use offset/limit)"
        return ToolResult.ok(
            numbered,
            path=args.path,
            total_lines=len(lines),
            lines_returned=len(selected),
        )


class WriteFileTool(Tool):
    name = "write_file"
    description = "Write content to a file, replacing it. Creates parent directories if needed."
    args_model = WriteFileArgs

    async def execute(self, args: WriteFileArgs, context: ToolContext) -> ToolResult:
        await context.executor.write_file(args.path, args.content)
        return ToolResult.ok(
            f"Wrote {len(args.content)} chars to {args.path}",
            path=args.path,
        )


class DeleteFileTool(Tool):
    name = "delete_file"
    description = "Delete a single file."
    args_model = PathArgs

    async def execute(self, args: PathArgs, context: ToolContext) -> ToolResult:
        await context.executor.delete_file(args.path)
        return ToolResult.ok(f"Deleted {args.path}", path=args.path)


class ListDirTool(Tool):
    name = "list_dir"
    description = "List directory entries. Directories end with '/'."
    args_model = ListDirArgs

    async def execute(self, args: ListDirArgs, context: ToolContext) -> ToolResult:
        entries = await context.executor.list_dir(args.path)
        return ToolResult.ok("\n".join(entries) or "(empty)", path=args.path, count=len(entries))
