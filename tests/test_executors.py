"""Tests for the native and Docker executors."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import LocalContainerRuntime
from forgeloop.core.errors import DockerError, ExecutionError, PermissionDeniedError, SecurityError
from forgeloop.execution.base import ExecuteOptions, ExecutionMode
from forgeloop.execution.docker import DockerConfig, DockerExecutor
from forgeloop.execution.factory import executor_scope
from forgeloop.execution.native import NativeExecutor


class TestNativeExecutor:
    @pytest.mark.asyncio
    async def test_execute(self, project_dir: Path):
        executor = NativeExecutor(project_dir)
        await executor.initialize()
        result = await executor.execute("echo out; echo err >&2; exit 2")
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"
        assert result.exit_code == 2
        assert not result.success
        assert result.output == "out\nerr\n"

    @pytest.mark.asyncio
    async def test_runs_in_project_dir(self, project_dir: Path):
        executor = NativeExecutor(project_dir)
        result = await executor.execute("pwd")
        assert result.stdout.strip() == str(project_dir.resolve())

    @pytest.mark.asyncio
    async def test_cwd_option_and_env(self, project_dir: Path):
        executor = NativeExecutor(project_dir)
        result = await executor.execute(
            'echo "$GREETING"; pwd', ExecuteOptions(cwd="src", env={"GREETING": "hey"})
        )
        lines = result.stdout.splitlines()
        assert lines[0] == "hey"
        assert lines[1] == str((project_dir / "src").resolve())

    @pytest.mark.asyncio
    async def test_timeout(self, project_dir: Path):
        executor = NativeExecutor(project_dir)
        result = await executor.execute("sleep 5", ExecuteOptions(timeout_ms=100))
        assert result.exit_code == 124
        assert result.timed_out
        assert "timed out" in result.stderr

    @pytest.mark.asyncio
    async def test_file_operations(self, project_dir: Path):
        executor = NativeExecutor(project_dir)
        await executor.write_file("new/dir/file.txt", "content")
        assert await executor.read_file("new/dir/file.txt") == "content"
        assert await executor.exists("new/dir/file.txt")
        assert await executor.list_dir("new") == ["dir/"]
        await executor.delete_file("new/dir/file.txt")
        assert not await executor.exists("new/dir/file.txt")

    @pytest.mark.asyncio
    async def test_path_escape_is_rejected(self, project_dir: Path):
        executor = NativeExecutor(project_dir)
        with pytest.raises(SecurityError):
            await executor.read_file("../../etc/passwd")
        with pytest.raises(SecurityError):
            await executor.write_file("/tmp/outside.txt", "x")
        with pytest.raises(SecurityError):
            await executor.execute("ls", ExecuteOptions(cwd=".."))
        assert await executor.exists("../outside") is False

    @pytest.mark.asyncio
    async def test_symlink_escape_is_rejected(self, project_dir: Path, tmp_path: Path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (project_dir / "link").symlink_to(outside)
        executor = NativeExecutor(project_dir)
        with pytest.raises(SecurityError):
            await executor.write_file("link/x.txt", "x")

    @pytest.mark.asyncio
    async def test_denied_paths(self, project_dir: Path):
        executor = NativeExecutor(project_dir, denied_paths=[".env", "secrets/*"])
        with pytest.raises(PermissionDeniedError):
            await executor.write_file(".env", "X=2")
        with pytest.raises(PermissionDeniedError):
            await executor.write_file("secrets/key.pem", "x")
        with pytest.raises(PermissionDeniedError):
            await executor.delete_file(".env")
        # reads are not restricted by the deny list
        assert await executor.read_file(".env") == "SECRET=1\n"

    @pytest.mark.asyncio
    async def test_delete_refuses_directories(self, project_dir: Path):
        executor = NativeExecutor(project_dir)
        with pytest.raises(IsADirectoryError):
            await executor.delete_file("src")
        with pytest.raises(FileNotFoundError):
            await executor.delete_file("missing.txt")

    def test_set_cwd(self, project_dir: Path):
        executor = NativeExecutor(project_dir)
        executor.set_cwd("src")
        assert executor.cwd == str((project_dir / "src").resolve())
        with pytest.raises(ExecutionError):
            executor.set_cwd("README.md")
        with pytest.raises(SecurityError):
            executor.set_cwd("..")

    @pytest.mark.asyncio
    async def test_initialize_missing_project(self, tmp_path: Path):
        executor = NativeExecutor(tmp_path / "does-not-exist")
        with pytest.raises(ExecutionError):
            await executor.initialize()

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self, project_dir: Path):
        executor = NativeExecutor(project_dir)
        await executor.initialize()
        await executor.cleanup()
        await executor.cleanup()


class TestDockerExecutor:
    @pytest.fixture
    def runtime(self) -> LocalContainerRuntime:
        return LocalContainerRuntime()

    @pytest.mark.asyncio
    async def test_initialize_pulls_and_creates(self, runtime: LocalContainerRuntime):
        executor = DockerExecutor(runtime, DockerConfig(image="alpine:3", cpu_limit=0.5, memory_limit_mb=256))
        await executor.initialize()
        try:
            assert executor.mode is ExecutionMode.DOCKER
            assert runtime.pulled == ["alpine:3"]
            created = runtime.created_kwargs[0]
            assert created["image"] == "alpine:3"
            assert created["network_mode"] == "none"
            assert created["volumes"] == []
            assert created["cpu_limit"] == 0.5
            assert created["memory_limit_mb"] == 256
            assert created["working_dir"] == "/workspace"
            assert executor.container_id in runtime.started
        finally:
            await executor.cleanup()

    @pytest.mark.asyncio
    async def test_skips_pull_for_present_image(self, runtime: LocalContainerRuntime):
        runtime.images.add("python:3.12-slim")
        async with DockerExecutor(runtime):
            pass
        assert runtime.pulled == []

    @pytest.mark.asyncio
    async def test_project_mount_and_network(self, runtime: LocalContainerRuntime, project_dir: Path):
        config = DockerConfig(project_dir=project_dir, network_enabled=True)
        async with DockerExecutor(runtime, config):
            created = runtime.created_kwargs[0]
        assert created["volumes"] == [f"{project_dir.resolve()}:/workspace:rw"]
        assert created["network_mode"] == "bridge"

    @pytest.mark.asyncio
    async def test_execute_and_files(self, runtime: LocalContainerRuntime):
        async with DockerExecutor(runtime) as executor:
            result = await executor.execute("echo hello")
            assert result.stdout == "hello\n"
            assert result.exit_code == 0

            await executor.write_file("pkg/data.txt", "line1\nit's \"quoted\" $HOME\n")
            assert await executor.read_file("pkg/data.txt") == "line1\nit's \"quoted\" $HOME\n"
            assert await executor.exists("pkg/data.txt")
            assert await executor.list_dir(".") == ["pkg/"]
            assert await executor.list_dir("pkg") == ["data.txt"]

            await executor.delete_file("pkg/data.txt")
            assert not await executor.exists("pkg/data.txt")
            with pytest.raises(FileNotFoundError):
                await executor.delete_file("pkg/data.txt")
            with pytest.raises(FileNotFoundError):
                await executor.read_file("missing.txt")

    @pytest.mark.asyncio
    async def test_execute_env_and_cwd(self, runtime: LocalContainerRuntime):
        async with DockerExecutor(runtime) as executor:
            await executor.write_file("sub/keep.txt", "")
            result = await executor.execute(
                'echo "$NAME"; ls', ExecuteOptions(cwd="sub", env={"NAME": "a b"})
            )
            assert result.stdout.splitlines() == ["a b", "keep.txt"]

    @pytest.mark.asyncio
    async def test_timeout(self, runtime: LocalContainerRuntime):
        async with DockerExecutor(runtime) as executor:
            result = await executor.execute("sleep 5", ExecuteOptions(timeout_ms=100))
            assert result.exit_code == 124
            assert result.timed_out

    @pytest.mark.asyncio
    async def test_cwd_cannot_leave_workspace(self, runtime: LocalContainerRuntime):
        executor = DockerExecutor(runtime)
        executor.set_cwd("sub")
        assert executor.cwd == "/workspace/sub"
        with pytest.raises(ExecutionError):
            executor.set_cwd("../../etc")

    @pytest.mark.asyncio
    async def test_cwd_must_exist_in_container(self, runtime: LocalContainerRuntime):
        async with DockerExecutor(runtime) as executor:
            await executor.write_file("sub/keep.txt", "")
            executor.set_cwd("sub")
            result = await executor.execute("ls")
            assert result.stdout.splitlines() == ["keep.txt"]
            assert executor.cwd == "/workspace/sub"

            executor.set_cwd("missing")
            with pytest.raises(ExecutionError, match="Not a directory"):
                await executor.execute("ls")
            # the rejected directory is dropped and the previous one stays
            assert executor.cwd == "/workspace/sub"
            assert await executor.exists("keep.txt")

    @pytest.mark.asyncio
    async def test_requires_initialize(self, runtime: LocalContainerRuntime):
        with pytest.raises(DockerError, match="not initialized"):
            await DockerExecutor(runtime).execute("ls")

    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self, runtime: LocalContainerRuntime):
        executor = DockerExecutor(runtime)
        await executor.initialize()
        container_id = executor.container_id
        await executor.cleanup()
        await executor.cleanup()
        assert runtime.stopped == [container_id]
        assert runtime.removed == [container_id]
        assert executor.container_id is None

    @pytest.mark.asyncio
    async def test_failed_start_cleans_up(self):
        runtime = LocalContainerRuntime(fail_start=True)
        executor = DockerExecutor(runtime)
        with pytest.raises(DockerError):
            await executor.initialize()
        assert len(runtime.removed) == 1
        assert executor.container_id is None
        await executor.cleanup()


@pytest.mark.asyncio
async def test_native_and_docker_are_isolated(project_dir: Path):
    runtime = LocalContainerRuntime()
    native = NativeExecutor(project_dir)
    async with executor_scope(DockerExecutor(runtime)) as docker:
        await docker.write_file("only-in-container.txt", "x")
        await native.write_file("only-on-host.txt", "y")

        assert not await native.exists("only-in-container.txt")
        assert not await docker.exists("only-on-host.txt")
        assert not (project_dir / "only-in-container.txt").exists()
    assert runtime.removed


@pytest.mark.asyncio
async def test_two_docker_executors_are_isolated():
    runtime = LocalContainerRuntime()
    async with DockerExecutor(runtime) as first, DockerExecutor(runtime) as second:
        await first.write_file("a.txt", "first")
        assert not await second.exists("a.txt")
        assert first.container_id != second.container_id


@pytest.mark.asyncio
async def test_executor_scope_cleans_up_on_error():
    runtime = LocalContainerRuntime()
    with pytest.raises(RuntimeError):
        async with executor_scope(DockerExecutor(runtime)):
            raise RuntimeError("body failed")
    assert len(runtime.removed) == 1
