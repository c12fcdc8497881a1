"""Code search tools: glob file matching and regex grep."""

from __future__ import annotations

import fnmatch
import shlex

from pydantic import BaseModel, Field

from forgeloop.tools.base import Tool, ToolContext, ToolResult

_EXCLUDED_DIRS = (".git", "node_modules", "__pycache__", ".venv")
_FIND_LIMIT = 20_000


class GlobArgs(BaseModel):
    pattern: str = Field(min_length=1, description="Glob such as 'src/**/*.py' or '*.md'")
    path: str = Field(default=".", description="Directory to search from")
    max_results: int = Field(default=500, ge=1, le=5_000)


class GrepArgs(BaseModel):
    pattern: str = Field(min_length=1, description="Extended regular expression")
    path: str = Field(default=".", description="File or directory to search")
    include: str | None = Field(default=None, description="Only search files matching this glob")
    ignore_case: bool = False
    max_matches: int = Field(default=200, ge=1, le=5_000)


def glob_match(path: str, pattern: str) -> bool:
    """fnmatch with ``**/`` also matching zero directories."""
    if fnmatch.fnmatch(path, pattern):
        return True
    if pattern.startswith("**/"):
        return glob_match(path, pattern[3:])
    if "/**/" in pattern:
        return glob_match(path, pattern.replace("/**/", "/", 1))
    return False


class GlobTool(Tool):
    name = "glob"
    description = "Find files by glob pattern, relative to the search directory."
    args_model = GlobArgs

    async def execute(self, args: GlobArgs, context: ToolContext) -> ToolResult:
        prunes = " ".join(f"-not -path '*/{d}/*'" for d in _EXCLUDED_DIRS)
        command = (
            f"find {shlex.quote(args.path)} -type f {prunes} 2>/dev/null"
            f" | head -n {_FIND_LIMIT}"
        )
        result = await context.executor.execute(command)
        prefix = args.path.rstrip("/") + "/"
        matches = []
        for line in result.stdout.splitlines():
            rel = line[len(prefix):] if line.startswith(prefix) else line
            if glob_match(rel, args.pattern):
                matches.append(rel)
        matches.sort()
        truncated = len(matches) > args.max_results
        matches = matches[: args.max_results]
        if not matches:
            return ToolResult.ok("No files found", count=0)
        text = "\n".join(matches)
        if truncated:
            text += f"\n... (more than {args.max_results} matches)"
        return ToolResult.ok(text, count=len(matches), truncated=truncated)


class GrepTool(Tool):
    name = "grep"
    description = "Search file contents with a regular expression. Returns file:line:text matches."
    args_model = GrepArgs

    async def execute(self, args: GrepArgs, context: ToolContext) -> ToolResult:
        flags = ["-rnIE"]
        if args.ignore_case:
            flags.append("-i")
        if args.include:
            flags.append(f"--include={shlex.quote(args.include)}")
        flags.extend(f"--exclude-dir={d}" for d in _EXCLUDED_DIRS)
        command = (
            f"grep {' '.join(flags)} -e {shlex.quote(args.pattern)} -- "
            f"{shlex.quote(args.path)} | head -n {args.max_matches}"
        )
        result = await context.executor.execute(command)
        if not result.stdout.strip():
            if result.stderr.strip():
                return ToolResult.fail(result.stderr.strip())
            return ToolResult.ok("No matches", count=0)
        lines = result.stdout.splitlines()
        return ToolResult.ok(
            "\n".join(lines),
            count=len(lines),
            truncated=len(lines) >= args.max_matches,
        )
