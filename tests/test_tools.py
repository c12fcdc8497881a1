"""Tests for the tool registry and the built-in tools."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import BaseModel

from forgeloop.core.logging import AuditLogger
from forgeloop.execution.native import NativeExecutor
from forgeloop.tools.base import Tool, ToolContext, ToolResult
from forgeloop.tools.builtin import builtin_tools, create_tool_registry
from forgeloop.tools.registry import ToolRegistry
from forgeloop.tools.search import glob_match


class EchoArgs(BaseModel):
    text: str
    times: int = 1


class EchoTool(Tool):
    name = "echo"
    description = "Echo text back."
    args_model = EchoArgs

    async def execute(self, args: EchoArgs, context: ToolContext) -> ToolResult:
        return ToolResult.ok(args.text * args.times)


class BoomTool(Tool):
    name = "boom"
    description = "Always raises."
    args_model = EchoArgs

    async def execute(self, args: EchoArgs, context: ToolContext) -> ToolResult:
        raise RuntimeError("kaboom")


@pytest.fixture
def executor(project_dir: Path) -> NativeExecutor:
    return NativeExecutor(project_dir)


@pytest.fixture
def context(executor: NativeExecutor) -> ToolContext:
    return ToolContext(executor=executor, agent_id="agent-1", role="general")


class TestToolResult:
    def test_to_text(self):
        assert ToolResult.ok("plain").to_text() == "plain"
        assert ToolResult.ok({"a": 1}).to_text() == '{\n  "a": 1\n}'
        assert ToolResult.fail("nope").to_text() == "Error: nope"

    def test_dict_round_trip(self):
        original = ToolResult.fail("bad", exit_code=2)
        restored = ToolResult.from_dict(original.to_dict())
        assert restored == original


class TestToolRegistry:
    def test_register_and_lookup(self):
        registry = ToolRegistry([EchoTool()])
        assert registry.has("echo")
        assert "echo" in registry
        assert len(registry) == 1
        assert registry.get("missing") is None

    def test_duplicate_registration(self):
        registry = ToolRegistry([EchoTool()])
        with pytest.raises(ValueError, match="already registered"):
            registry.register(EchoTool())

    def test_unregister(self):
        registry = ToolRegistry([EchoTool()])
        assert registry.unregister("echo") is True
        assert registry.unregister("echo") is False

    def test_definitions(self):
        registry = ToolRegistry([EchoTool(), BoomTool()])
        defs = registry.definitions(["echo"])
        assert len(defs) == 1
        assert defs[0]["name"] == "echo"
        assert defs[0]["input_schema"]["required"] == ["text"]
        assert "title" not in defs[0]["input_schema"]

    def test_subset(self):
        registry = ToolRegistry([EchoTool(), BoomTool()])
        sub = registry.subset(["boom", "nonexistent"])
        assert sub.names() == ["boom"]

    @pytest.mark.asyncio
    async def test_unknown_tool(self, context: ToolContext):
        result = await ToolRegistry().execute("nope", {}, context)
        assert not result.success
        assert result.error == "Tool 'nope' not found"

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, context: ToolContext):
        registry = ToolRegistry([EchoTool()])
        result = await registry.execute("echo", {"times": "many"}, context)
        assert not result.success
        assert "Invalid arguments for 'echo'" in result.error
        assert "text" in result.error

    @pytest.mark.asyncio
    async def test_tool_exception_becomes_failure(self, context: ToolContext, tmp_path: Path):
        audit = AuditLogger(tmp_path / "audit.jsonl")
        registry = ToolRegistry([BoomTool()], audit_logger=audit)
        result = await registry.execute("boom", {"text": "x"}, context)
        assert not result.success
        assert result.error == "RuntimeError: kaboom"
        entry = audit.read_entries()[0]
        assert entry["event_type"] == "tool_error"
        assert entry["agent_id"] == "agent-1"

    @pytest.mark.asyncio
    async def test_output_cap(self, context: ToolContext):
        registry = ToolRegistry([EchoTool()], output_cap=10)
        result = await registry.execute("echo", {"text": "abcdef", "times": 5}, context)
        assert result.success
        assert result.output.startswith("abcdefabcd\n... (truncated, 30 total chars)")
        assert result.metadata["truncated"] is True

    @pytest.mark.asyncio
    async def test_successful_call_is_audited(self, context: ToolContext, tmp_path: Path):
        audit = AuditLogger(tmp_path / "audit.jsonl")
        registry = ToolRegistry([EchoTool()], audit_logger=audit)
        await registry.execute("echo", {"text": "hi"}, context)
        entry = audit.read_entries()[0]
        assert entry["event_type"] == "tool_call"
        assert entry["tool_name"] == "echo"
        assert entry["output"] == {"result": "hi"}


def test_builtin_tool_names():
    names = [tool.name for tool in builtin_tools()]
    assert names == [
        "read_file", "write_file", "delete_file", "list_dir",
        "glob", "grep", "diff", "git", "bash",
    ]
    assert create_tool_registry().names() == names


def test_glob_match():
    assert glob_match("src/app.py", "**/*.py")
    assert glob_match("app.py", "**/*.py")
    assert glob_match("src/pkg/mod.py", "src/**/*.py")
    assert not glob_match("README.md", "*.py")


class TestBuiltinTools:
    @pytest.fixture
    def registry(self) -> ToolRegistry:
        return create_tool_registry()

    @pytest.mark.asyncio
    async def test_read_file(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("read_file", {"path": "src/app.py"}, context)
        assert result.success
        assert result.output.splitlines()[0] == "     1\tdef main():"
        assert result.metadata["total_lines"] == 2

    @pytest.mark.asyncio
    async def test_read_file_offset(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("read_file", {"path": "src/app.py", "offset": 2, "limit": 1}, context)
        assert result.output == "     2\t    return 'hello'"

    @pytest.mark.asyncio
    async def test_read_missing_file(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("read_file", {"path": "nope.txt"}, context)
        assert not result.success
        assert "FileNotFoundError" in result.error

    @pytest.mark.asyncio
    async def test_write_file(self, registry: ToolRegistry, context: ToolContext, project_dir: Path):
        result = await registry.execute("write_file", {"path": "docs/notes.md", "content": "hello"}, context)
        assert result.success
        assert result.output == "Wrote 5 chars to docs/notes.md"
        assert (project_dir / "docs" / "notes.md").read_text() == "hello"

    @pytest.mark.asyncio
    async def test_write_denied_path(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("write_file", {"path": ".env", "content": "X=1"}, context)
        assert not result.success
        assert "PermissionDeniedError" in result.error

    @pytest.mark.asyncio
    async def test_write_outside_project(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("write_file", {"path": "../escape.txt", "content": "x"}, context)
        assert not result.success
        assert "SecurityError" in result.error

    @pytest.mark.asyncio
    async def test_list_dir(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("list_dir", {}, context)
        assert result.output.splitlines() == [".env", "README.md", "src/"]

    @pytest.mark.asyncio
    async def test_delete_file(self, registry: ToolRegistry, context: ToolContext, project_dir: Path):
        result = await registry.execute("delete_file", {"path": "README.md"}, context)
        assert result.success
        assert not (project_dir / "README.md").exists()

    @pytest.mark.asyncio
    async def test_glob(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("glob", {"pattern": "**/*.py"}, context)
        assert result.output == "src/app.py"
        none = await registry.execute("glob", {"pattern": "*.rs"}, context)
        assert none.output == "No files found"

    @pytest.mark.asyncio
    async def test_grep(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("grep", {"pattern": "def main", "include": "*.py"}, context)
        assert result.success
        assert "src/app.py:1:def main():" in result.output
        none = await registry.execute("grep", {"pattern": "zzz_not_there"}, context)
        assert none.output == "No matches"

    @pytest.mark.asyncio
    async def test_diff_against_new_content(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute(
            "diff",
            {"path": "src/app.py", "new_content": "def main():\n    return 'bye'\n"},
            context,
        )
        assert result.success
        assert "-    return 'hello'" in result.output
        assert "+    return 'bye'" in result.output
        assert result.metadata["added"] == 1
        assert result.metadata["removed"] == 1

    @pytest.mark.asyncio
    async def test_diff_requires_one_target(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("diff", {"path": "src/app.py"}, context)
        assert not result.success
        assert "exactly one" in result.error

    @pytest.mark.asyncio
    async def test_diff_identical(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("diff", {"path": "src/app.py", "other_path": "src/app.py"}, context)
        assert result.output == "No differences"

    @pytest.mark.asyncio
    async def test_git_blocked_subcommand(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("git", {"args": "config user.name x"}, context)
        assert not result.success
        assert "not allowed" in result.error

    @pytest.mark.asyncio
    async def test_bash_success(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("bash", {"command": "echo hi"}, context)
        assert result.success
        assert result.output.strip() == "hi"
        assert result.metadata["exit_code"] == 0

    @pytest.mark.asyncio
    async def test_bash_nonzero_exit(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("bash", {"command": "echo oops >&2; exit 3"}, context)
        assert not result.success
        assert result.error == "Command exited with code 3: oops"
        assert result.metadata["exit_code"] == 3

    @pytest.mark.asyncio
    async def test_bash_timeout(self, registry: ToolRegistry, context: ToolContext):
        result = await registry.execute("bash", {"command": "sleep 5", "timeout_ms": 100}, context)
        assert not result.success
        assert result.metadata["exit_code"] == 124
        assert "timed out" in result.error
