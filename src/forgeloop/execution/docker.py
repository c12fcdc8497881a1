"""Container executor: commands and file operations proxied into a sandbox container."""

from __future__ import annotations

import base64
import logging
import posixpath
import shlex
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from forgeloop.core.errors import DockerError, ExecutionError
from forgeloop.execution.base import ExecuteOptions, ExecuteResult, ExecutionMode, Executor
from forgeloop.execution.runtime import STOP_GRACE_SECONDS, ContainerRuntime

logger = logging.getLogger(__name__)

WORKSPACE = "/workspace"


@dataclass
class DockerConfig:
    image: str = "python:3.12-slim"
    workspace: str = WORKSPACE
    project_dir: Path | None = None  # bind-mounted at ``workspace`` when set
    cpu_limit: float | None = 1.0
    memory_limit_mb: int | None = 1024
    network_enabled: bool = False
    env: dict[str, str] = field(default_factory=dict)
    default_timeout_ms: int = 120_000
    pull_missing: bool = True

    @property
    def network_mode(self) -> str:
        return "bridge" if self.network_enabled else "none"


class DockerExecutor(Executor):
    """One short-lived container per executor; everything runs via ``sh -c``."""

    def __init__(self, runtime: ContainerRuntime, config: DockerConfig | None = None) -> None:
        self._runtime = runtime
        self._config = config or DockerConfig()
        self._cwd = self._config.workspace
        # set by set_cwd; the directory is checked inside the container before the next command
        self._unverified_cwd: str | None = None
        self._container_id: str | None = None

    @property
    def mode(self) -> ExecutionMode:
        return ExecutionMode.DOCKER

    @property
    def container_id(self) -> str | None:
        return self._container_id

    @property
    def cwd(self) -> str:
        return self._unverified_cwd or self._cwd

    def set_cwd(self, path: str) -> None:
        target = self._resolve(path)
        if not self._is_inside_workspace(target):
            raise ExecutionError(f"Path escapes container workspace: {path}")
        self._unverified_cwd = target

    def _resolve(self, path: str) -> str:
        return posixpath.normpath(posixpath.join(self.cwd, path))

    def _is_inside_workspace(self, path: str) -> bool:
        ws = self._config.workspace.rstrip("/")
        return path == ws or path.startswith(ws + "/")

    async def initialize(self) -> None:
        if self._container_id is not None:
            return
        cfg = self._config
        if cfg.pull_missing and not await self._runtime.image_exists(cfg.image):
            await self._runtime.pull_image(cfg.image)

        volumes = []
        if cfg.project_dir is not None:
            volumes.append(f"{Path(cfg.project_dir).resolve()}:{cfg.workspace}:rw")

        container_id = await self._runtime.create_container(
            cfg.image,
            cmd=["sleep", "infinity"],
            env=cfg.env,
            volumes=volumes,
            working_dir=cfg.workspace,
            network_mode=cfg.network_mode,
            cpu_limit=cfg.cpu_limit,
            memory_limit_mb=cfg.memory_limit_mb,
            labels={"forgeloop.executor": uuid.uuid4().hex[:12]},
        )
        self._container_id = container_id
        try:
            await self._runtime.start_container(container_id)
            await self._run(["mkdir", "-p", cfg.workspace])
        except Exception:
            await self.cleanup()
            raise
        logger.info(
            "Docker executor started container %s (image=%s, network=%s)",
            container_id[:12], cfg.image, cfg.network_mode,
        )

    def _require_container(self) -> str:
        if self._container_id is None:
            raise DockerError("Docker executor is not initialized")
        return self._container_id

    async def _verify_cwd(self) -> None:
        target = self._unverified_cwd
        if target is None:
            return
        result = await self._run(["test", "-d", target])
        self._unverified_cwd = None
        if result.exit_code != 0:
            raise ExecutionError(f"Not a directory: {target}")
        self._cwd = target

    async def _run(
        self, command: list[str], *, cwd: str | None = None, timeout_ms: int | None = None
    ) -> ExecuteResult:
        return await self._runtime.execute_command(
            self._require_container(),
            command,
            cwd=cwd or self._config.workspace,
            timeout_ms=timeout_ms or self._config.default_timeout_ms,
        )

    async def execute(
        self, command: str, options: ExecuteOptions | None = None
    ) -> ExecuteResult:
        options = options or ExecuteOptions()
        await self._verify_cwd()
        cwd = self._resolve(options.cwd) if options.cwd else self._cwd
        if options.env:
            exports = " ".join(f"{k}={shlex.quote(v)}" for k, v in options.env.items())
            command = f"export {exports}; {command}"
        return await self._runtime.execute_command(
            self._require_container(),
            ["sh", "-c", command],
            cwd=cwd,
            timeout_ms=options.timeout_ms or self._config.default_timeout_ms,
        )

    async def read_file(self, path: str) -> str:
        await self._verify_cwd()
        target = self._resolve(path)
        result = await self._run(["cat", target])
        if result.exit_code != 0:
            raise FileNotFoundError(f"File not found: {path}")
        return result.stdout

    async def write_file(self, path: str, content: str) -> None:
        await self._verify_cwd()
        target = self._resolve(path)
        encoded = base64.b64encode(content.encode()).decode()
        parent = posixpath.dirname(target) or "/"
        script = (
            f"mkdir -p {shlex.quote(parent)} && "
            f"printf '%s' {shlex.quote(encoded)} | base64 -d > {shlex.quote(target)}"
        )
        result = await self._run(["sh", "-c", script])
        if result.exit_code != 0:
            raise ExecutionError(f"Failed to write {path}: {result.stderr.strip()}")

    async def exists(self, path: str) -> bool:
        await self._verify_cwd()
        result = await self._run(["test", "-e", self._resolve(path)])
        return result.exit_code == 0

    async def list_dir(self, path: str = ".") -> list[str]:
        await self._verify_cwd()
        result = await self._run(["ls", "-1Ap", self._resolve(path)])
        if result.exit_code != 0:
            raise NotADirectoryError(f"Not a directory: {path}")
        return sorted(line for line in result.stdout.splitlines() if line)

    async def delete_file(self, path: str) -> None:
        await self._verify_cwd()
        target = self._resolve(path)
        result = await self._run(["sh", "-c", f"test -f {shlex.quote(target)} && rm -f {shlex.quote(target)}"])
        if result.exit_code != 0:
            raise FileNotFoundError(f"File not found: {path}")

    async def cleanup(self) -> None:
        container_id = self._container_id
        if container_id is None:
            return
        self._container_id = None
        try:
            await self._runtime.stop_container(container_id, timeout=STOP_GRACE_SECONDS)
        except DockerError as e:
            logger.debug("Stop of %s reported: %s", container_id[:12], e)
        try:
            await self._runtime.remove_container(container_id, force=True)
        except DockerError as e:
            logger.warning("Failed to remove container %s: %s", container_id[:12], e)
        logger.debug("Cleaned up container %s", container_id[:12])
