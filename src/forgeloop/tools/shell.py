"""Shell command tool, run through the agent's executor."""

from __future__ import annotations

from pydantic import BaseModel, Field

from forgeloop.execution.base import ExecuteOptions
from forgeloop.tools.base import Tool, ToolContext, ToolResult

MAX_TIMEOUT_MS = 600_000


class BashArgs(BaseModel):
    command: str = Field(min_length=1, description="The shell command to execute")
    cwd: str | None = Field(default=None, description="Working directory (default: executor cwd)")
    timeout_ms: int | None = Field(
        default=None, gt=0, le=MAX_TIMEOUT_MS, description="Timeout in milliseconds"
    )


class BashTool(Tool):
    name = "bash"
    description = (
        "Execute a shell command. Use for running tests, builds, scripts and "
        "inspecting the environment. Non-zero exit codes are reported as errors."
    )
    args_model = BashArgs

    async def execute(self, args: BashArgs, context: ToolContext) -> ToolResult:
        result = await context.executor.execute(
            args.command, ExecuteOptions(cwd=args.cwd, timeout_ms=args.timeout_ms)
        )
        payload = {
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exit_code": result.exit_code,
        }
        if result.timed_out:
            return ToolResult.fail(result.stderr, command=args.command, **payload)
        if result.exit_code != 0:
            detail = (result.stderr or result.stdout).strip()
            return ToolResult.fail(
                f"Command exited with code {result.exit_code}" + (f": {detail}" if detail else ""),
                command=args.command,
                **payload,
            )
        return ToolResult.ok(
            result.output or "Command completed with no output",
            command=args.command,
            exit_code=result.exit_code,
        )
