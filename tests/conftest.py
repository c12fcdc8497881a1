"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Any

import pytest

from forgeloop.core.config import Settings
from forgeloop.core.errors import DockerError
from forgeloop.execution.base import TIMEOUT_EXIT_CODE, ExecuteResult
from forgeloop.execution.runtime import ContainerRuntime, ContainerStatus
from forgeloop.llm.base import BaseLLMProvider
from forgeloop.llm.types import ChatResponse, LLMConfig, Message, Provider, ToolCall, Usage


def tool_call(name: str, call_id: str | None = None, **arguments: Any) -> ToolCall:
    return ToolCall(id=call_id or f"call_{uuid.uuid4().hex[:6]}", name=name, input=arguments)


def respond(
    content: str = "",
    *calls: ToolCall,
    usage: Usage | None = None,
) -> ChatResponse:
    return ChatResponse(content=content, tool_calls=list(calls), usage=usage)


class ScriptedProvider(BaseLLMProvider):
    """Replays a list of responses; exceptions in the script are raised.

    Once the script is exhausted it keeps returning ``default``.
    """

    def __init__(
        self,
        responses: list[ChatResponse | Exception] | None = None,
        *,
        default: ChatResponse | None = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(
            LLMConfig(
                provider=Provider.CLAUDE,
                model="fake-model",
                input_cost_per_mtok=3.0,
                output_cost_per_mtok=15.0,
            )
        )
        self._responses = list(responses or [])
        self._default = default or ChatResponse(content="done")
        self._delay = delay
        self.calls: list[dict[str, Any]] = []

    async def chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        *,
        temperature: float | None = None,
    ) -> ChatResponse:
        self.calls.append({"messages": list(messages), "tools": tools, "temperature": temperature})
        if self._delay:
            await asyncio.sleep(self._delay)
        item = self._responses.pop(0) if self._responses else self._default
        if isinstance(item, Exception):
            raise item
        return item


class LocalContainerRuntime(ContainerRuntime):
    """Container runtime where each "container" is a temp directory.

    Commands run on the host with every occurrence of the container
    workspace path rewritten to that directory, which is enough to drive
    the Docker executor end to end without a daemon.
    """

    def __init__(self, workspace: str = "/workspace", *, fail_start: bool = False) -> None:
        self.workspace = workspace
        self.fail_start = fail_start
        self.images: set[str] = set()
        self.pulled: list[str] = []
        self.created_kwargs: list[dict[str, Any]] = []
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.removed: list[str] = []
        self.roots: dict[str, Path] = {}

    def _rewrite(self, container_id: str, value: str) -> str:
        return value.replace(self.workspace, str(self.roots[container_id]))

    async def image_exists(self, image: str) -> bool:
        return image in self.images

    async def pull_image(self, image: str) -> None:
        self.pulled.append(image)
        self.images.add(image)

    async def create_container(self, image: str, **kwargs: Any) -> str:
        container_id = uuid.uuid4().hex
        self.roots[container_id] = Path(tempfile.mkdtemp(prefix="fake-container-"))
        self.created_kwargs.append({"image": image, **kwargs})
        return container_id

    async def start_container(self, container_id: str) -> None:
        if self.fail_start:
            raise DockerError("start failed", status_code=500)
        self.started.append(container_id)

    async def stop_container(self, container_id: str, timeout: int = 5) -> None:
        self.stopped.append(container_id)

    async def remove_container(self, container_id: str, force: bool = True) -> None:
        self.removed.append(container_id)
        root = self.roots.pop(container_id, None)
        if root is not None:
            shutil.rmtree(root, ignore_errors=True)

    async def execute_command(
        self,
        container_id: str,
        command: list[str],
        *,
        cwd: str | None = None,
        timeout_ms: int | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecuteResult:
        args = [self._rewrite(container_id, part) for part in command]
        workdir = self._rewrite(container_id, cwd) if cwd else str(self.roots[container_id])
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=workdir,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=(timeout_ms or 30_000) / 1000
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return ExecuteResult("", "timed out", TIMEOUT_EXIT_CODE, timed_out=True)
        return ExecuteResult(
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
            proc.returncode if proc.returncode is not None else -1,
        )

    async def get_container_status(self, container_id: str) -> ContainerStatus:
        if container_id in self.roots:
            return ContainerStatus.RUNNING
        return ContainerStatus.ERROR


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """A small project tree for executor and tool tests."""
    project = tmp_path / "project"
    (project / "src").mkdir(parents=True)
    (project / "src" / "app.py").write_text("def main():\n    return 'hello'\n")
    (project / "README.md").write_text("# Demo\n")
    (project / ".env").write_text("SECRET=1\n")
    return project


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Create Settings pointing at temp directories."""
    return Settings(
        anthropic_api_key="sk-ant-test-key",
        data_dir=tmp_path / "data",
        project_dir=tmp_path,
        log_level="DEBUG",
        _env_file=None,
    )
