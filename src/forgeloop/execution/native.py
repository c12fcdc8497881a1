"""Native executor: direct subprocess and filesystem access, confined to a project."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import signal
import time
from pathlib import Path

import aiofiles

from forgeloop.core.errors import ExecutionError, PermissionDeniedError, SecurityError
from forgeloop.execution.base import (
    TIMEOUT_EXIT_CODE,
    ExecuteOptions,
    ExecuteResult,
    ExecutionMode,
    Executor,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 120_000

# Project-relative globs no write or delete may touch
DEFAULT_DENIED_PATHS = (
    ".env",
    ".env.*",
    "*/.env",
    ".git",
    ".git/*",
    "node_modules/*",
)


class NativeExecutor(Executor):
    """Runs commands on the host with the project directory as the sandbox root."""

    def __init__(
        self,
        project_dir: Path | str,
        *,
        denied_paths: list[str] | tuple[str, ...] = DEFAULT_DENIED_PATHS,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self._root = Path(project_dir).resolve()
        self._cwd = self._root
        self._denied = list(denied_paths)
        self._default_timeout_ms = default_timeout_ms
        self._processes: set[asyncio.subprocess.Process] = set()
        self._initialized = False

    @property
    def mode(self) -> ExecutionMode:
        return ExecutionMode.NATIVE

    @property
    def project_dir(self) -> Path:
        return self._root

    @property
    def cwd(self) -> str:
        return str(self._cwd)

    def set_cwd(self, path: str) -> None:
        target = self._resolve(path)
        if not target.is_dir():
            raise ExecutionError(f"Not a directory: {target}")
        self._cwd = target

    async def initialize(self) -> None:
        if self._initialized:
            return
        if not self._root.is_dir():
            raise ExecutionError(f"Project directory does not exist: {self._root}")
        self._initialized = True
        logger.debug("Native executor ready at %s", self._root)

    def _resolve(self, path: str | Path) -> Path:
        """Resolve *path* against the cwd and ensure it stays inside the project."""
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self._cwd / candidate
        resolved = candidate.resolve()
        if resolved != self._root and not resolved.is_relative_to(self._root):
            raise SecurityError(f"Path escapes project directory: {path}")
        return resolved

    def _check_writable(self, resolved: Path) -> None:
        rel = resolved.relative_to(self._root).as_posix()
        for pattern in self._denied:
            if fnmatch.fnmatch(rel, pattern):
                raise PermissionDeniedError(f"Write access denied: {rel}")

    async def execute(
        self, command: str, options: ExecuteOptions | None = None
    ) -> ExecuteResult:
        options = options or ExecuteOptions()
        cwd = self._resolve(options.cwd) if options.cwd else self._cwd
        timeout_ms = options.timeout_ms or self._default_timeout_ms
        env = {**os.environ, **(options.env or {})}

        start = time.monotonic()
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
            env=env,
            start_new_session=True,
        )
        self._processes.add(proc)
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            await self._kill(proc)
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.warning("Command timed out after %dms: %s", timeout_ms, command[:200])
            return ExecuteResult(
                stdout="",
                stderr=f"Command timed out after {timeout_ms}ms",
                exit_code=TIMEOUT_EXIT_CODE,
                duration_ms=duration_ms,
                timed_out=True,
            )
        finally:
            self._processes.discard(proc)

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.debug("Executed in %dms (exit %s): %s", duration_ms, proc.returncode, command[:200])
        return ExecuteResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
            duration_ms=duration_ms,
        )

    async def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        await proc.wait()

    async def read_file(self, path: str) -> str:
        resolved = self._resolve(path)
        if not resolved.is_file():
            raise FileNotFoundError(f"File not found: {path}")
        async with aiofiles.open(resolved, "r", encoding="utf-8", errors="replace") as f:
            return await f.read()

    async def write_file(self, path: str, content: str) -> None:
        resolved = self._resolve(path)
        self._check_writable(resolved)
        resolved.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(resolved, "w", encoding="utf-8") as f:
            await f.write(content)

    async def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).exists()
        except SecurityError:
            return False

    async def list_dir(self, path: str = ".") -> list[str]:
        resolved = self._resolve(path)
        if not resolved.is_dir():
            raise NotADirectoryError(f"Not a directory: {path}")
        return sorted(
            f"{entry.name}/" if entry.is_dir() else entry.name
            for entry in resolved.iterdir()
        )

    async def delete_file(self, path: str) -> None:
        resolved = self._resolve(path)
        self._check_writable(resolved)
        if not resolved.exists():
            raise FileNotFoundError(f"File not found: {path}")
        if resolved.is_dir():
            raise IsADirectoryError(f"Refusing to delete directory: {path}")
        resolved.unlink()

    async def cleanup(self) -> None:
        for proc in list(self._processes):
            await self._kill(proc)
        self._processes.clear()
        self._initialized = False
