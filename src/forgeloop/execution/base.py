"""Executor contract shared by the native and container variants."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

# Exit code reported for commands killed by their timeout (matches coreutils timeout)
TIMEOUT_EXIT_CODE = 124


class ExecutionMode(str, Enum):
    NATIVE = "native"
    DOCKER = "docker"


@dataclass
class ExecuteOptions:
    cwd: str | None = None
    timeout_ms: int | None = None
    env: dict[str, str] | None = None


@dataclass
class ExecuteResult:
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """stdout and stderr combined the way a terminal would show them."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr


class Executor(ABC):
    """Uniform capability surface tools operate against.

    Each agent run owns exactly one executor; ``cleanup`` must be safe to
    call repeatedly and after a failed ``initialize``.
    """

    @property
    @abstractmethod
    def mode(self) -> ExecutionMode:
        ...

    @property
    @abstractmethod
    def cwd(self) -> str:
        ...

    @abstractmethod
    def set_cwd(self, path: str) -> None:
        ...

    @abstractmethod
    async def initialize(self) -> None:
        ...

    @abstractmethod
    async def execute(
        self, command: str, options: ExecuteOptions | None = None
    ) -> ExecuteResult:
        ...

    @abstractmethod
    async def read_file(self, path: str) -> str:
        ...

    @abstractmethod
    async def write_file(self, path: str, content: str) -> None:
        ...

    @abstractmethod
    async def exists(self, path: str) -> bool:
        ...

    @abstractmethod
    async def list_dir(self, path: str = ".") -> list[str]:
        ...

    @abstractmethod
    async def delete_file(self, path: str) -> None:
        ...

    @abstractmethod
    async def cleanup(self) -> None:
        ...

    async def __aenter__(self) -> "Executor":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.cleanup()
