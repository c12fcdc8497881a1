"""Executor construction from settings and scoped lifecycle management."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from forgeloop.core.config import Settings
from forgeloop.core.errors import ConfigurationError
from forgeloop.execution.base import ExecutionMode, Executor
from forgeloop.execution.docker import DockerConfig, DockerExecutor
from forgeloop.execution.native import DEFAULT_DENIED_PATHS, NativeExecutor
from forgeloop.execution.runtime import ContainerRuntime, DockerEngineClient

logger = logging.getLogger(__name__)


def create_executor(
    settings: Settings,
    mode: ExecutionMode | str | None = None,
    *,
    project_dir: Path | None = None,
    runtime: ContainerRuntime | None = None,
) -> Executor:
    """Build a fresh, uninitialized executor. Callers own its cleanup."""
    try:
        resolved_mode = ExecutionMode(mode or settings.executor_mode)
    except ValueError as e:
        raise ConfigurationError(f"Unknown executor mode: {mode or settings.executor_mode}") from e
    project = project_dir or settings.project_dir

    if resolved_mode is ExecutionMode.NATIVE:
        return NativeExecutor(
            project,
            denied_paths=[*DEFAULT_DENIED_PATHS, *settings.denied_paths],
            default_timeout_ms=settings.command_timeout_ms,
        )

    config = DockerConfig(
        image=settings.docker_image,
        project_dir=project if settings.docker_mount_project else None,
        cpu_limit=settings.docker_cpu_limit,
        memory_limit_mb=settings.docker_memory_limit_mb,
        network_enabled=settings.docker_network_enabled,
        default_timeout_ms=settings.command_timeout_ms,
    )
    return DockerExecutor(runtime or DockerEngineClient(settings.docker_socket), config)


@asynccontextmanager
async def executor_scope(executor: Executor) -> AsyncIterator[Executor]:
    """Initialize *executor* and always clean it up, even when the body raises."""
    try:
        await executor.initialize()
        yield executor
    finally:
        try:
            await executor.cleanup()
        except Exception:
            logger.exception("Executor cleanup failed (%s)", executor.mode.value)
