"""Git tool: runs git subcommands in the executor's working tree."""

from __future__ import annotations

import shlex

from pydantic import BaseModel, Field, field_validator

from forgeloop.tools.base import Tool, ToolContext, ToolResult

# Subcommands that need a terminal or rewrite config are never useful to an agent
_BLOCKED_SUBCOMMANDS = {"config", "credential", "daemon", "filter-branch", "gc", "prune"}


class GitArgs(BaseModel):
    args: str = Field(min_length=1, description="Arguments after 'git', e.g. 'status --short'")

    @field_validator("args")
    @classmethod
    def check_subcommand(cls, value: str) -> str:
        parts = shlex.split(value)
        if not parts:
            raise ValueError("missing git subcommand")
        if parts[0] in _BLOCKED_SUBCOMMANDS:
            raise ValueError(f"git {parts[0]} is not allowed")
        return value


class GitTool(Tool):
    name = "git"
    description = "Run a git command (status, diff, log, add, commit, branch, ...)."
    args_model = GitArgs

    async def execute(self, args: GitArgs, context: ToolContext) -> ToolResult:
        command = "git --no-pager " + " ".join(shlex.quote(p) for p in shlex.split(args.args))
        result = await context.executor.execute(command)
        if result.exit_code != 0:
            return ToolResult.fail(
                (result.stderr or result.stdout).strip() or f"git exited with {result.exit_code}",
                exit_code=result.exit_code,
            )
        return ToolResult.ok(result.stdout or "(no output)", command=command)
