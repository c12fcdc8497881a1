"""Container runtime interface and a Docker Engine API client over its unix socket."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

import httpx

from forgeloop.core.errors import DockerError
from forgeloop.execution.base import TIMEOUT_EXIT_CODE, ExecuteResult
from forgeloop.execution.demux import StreamDemuxer

logger = logging.getLogger(__name__)

DEFAULT_SOCKET = "/var/run/docker.sock"
STOP_GRACE_SECONDS = 5


class ContainerStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class ContainerRuntime(ABC):
    """Primitives a container executor composes."""

    @abstractmethod
    async def image_exists(self, image: str) -> bool:
        ...

    @abstractmethod
    async def pull_image(self, image: str) -> None:
        ...

    @abstractmethod
    async def create_container(
        self,
        image: str,
        *,
        cmd: list[str] | None = None,
        env: dict[str, str] | None = None,
        volumes: list[str] | None = None,
        working_dir: str = "/workspace",
        network_mode: str = "none",
        cpu_limit: float | None = None,
        memory_limit_mb: int | None = None,
        labels: dict[str, str] | None = None,
    ) -> str:
        ...

    @abstractmethod
    async def start_container(self, container_id: str) -> None:
        ...

    @abstractmethod
    async def stop_container(self, container_id: str, timeout: int = STOP_GRACE_SECONDS) -> None:
        ...

    @abstractmethod
    async def remove_container(self, container_id: str, force: bool = True) -> None:
        ...

    @abstractmethod
    async def execute_command(
        self,
        container_id: str,
        command: list[str],
        *,
        cwd: str | None = None,
        timeout_ms: int | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecuteResult:
        ...

    @abstractmethod
    async def get_container_status(self, container_id: str) -> ContainerStatus:
        ...

    async def close(self) -> None:
        """Release the runtime connection."""


def split_image(image: str) -> tuple[str, str]:
    """Split ``repo[:tag]`` into its parts; digests and registry ports are kept intact."""
    if "@" in image:
        return image, ""
    last = image.rsplit("/", 1)[-1]
    if ":" in last:
        repo, tag = image.rsplit(":", 1)
        return repo, tag
    return image, "latest"


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("message", response.text)
    except ValueError:
        return response.text


class DockerEngineClient(ContainerRuntime):
    """Talks to dockerd's REST API through httpx's unix-domain-socket transport."""

    def __init__(
        self,
        socket_path: str = DEFAULT_SOCKET,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._client = httpx.AsyncClient(
            transport=transport or httpx.AsyncHTTPTransport(uds=socket_path),
            base_url="http://docker",
            timeout=timeout,
        )

    async def _request(
        self, method: str, url: str, *, ok: tuple[int, ...] = (200,), **kwargs: Any
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise DockerError(f"Docker daemon unreachable: {e}") from e
        if response.status_code not in ok:
            raise DockerError(
                f"{method} {url} failed: {_error_message(response)}",
                status_code=response.status_code,
            )
        return response

    async def ping(self) -> bool:
        try:
            response = await self._client.get("/_ping")
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def image_exists(self, image: str) -> bool:
        response = await self._request("GET", f"/images/{image}/json", ok=(200, 404))
        return response.status_code == 200

    async def pull_image(self, image: str) -> None:
        repo, tag = split_image(image)
        params = {"fromImage": repo}
        if tag:
            params["tag"] = tag
        logger.info("Pulling image %s", image)
        response = await self._request("POST", "/images/create", params=params, timeout=None)
        # Pull progress is streamed as JSON lines; failures arrive in-band
        for line in response.text.splitlines():
            if not line.strip():
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if "error" in event:
                raise DockerError(f"Failed to pull {image}: {event['error']}")

    async def create_container(
        self,
        image: str,
        *,
        cmd: list[str] | None = None,
        env: dict[str, str] | None = None,
        volumes: list[str] | None = None,
        working_dir: str = "/workspace",
        network_mode: str = "none",
        cpu_limit: float | None = None,
        memory_limit_mb: int | None = None,
        labels: dict[str, str] | None = None,
    ) -> str:
        host_config: dict[str, Any] = {
            "NetworkMode": network_mode,
            "CapDrop": ["ALL"],
            "SecurityOpt": ["no-new-privileges"],
        }
        if volumes:
            host_config["Binds"] = volumes
        if cpu_limit:
            host_config["NanoCpus"] = int(cpu_limit * 1_000_000_000)
        if memory_limit_mb:
            host_config["Memory"] = memory_limit_mb * 1024 * 1024

        body: dict[str, Any] = {
            "Image": image,
            "Cmd": cmd or ["sleep", "infinity"],
            "Env": [f"{k}={v}" for k, v in (env or {}).items()],
            "WorkingDir": working_dir,
            "Tty": False,
            "OpenStdin": False,
            "Labels": labels or {},
            "HostConfig": host_config,
        }
        response = await self._request("POST", "/containers/create", ok=(201,), json=body)
        container_id = response.json()["Id"]
        logger.debug("Created container %s from %s", container_id[:12], image)
        return container_id

    async def start_container(self, container_id: str) -> None:
        # 304: already started
        await self._request("POST", f"/containers/{container_id}/start", ok=(204, 304))

    async def stop_container(self, container_id: str, timeout: int = STOP_GRACE_SECONDS) -> None:
        # 304: already stopped, 404: already gone
        await self._request(
            "POST",
            f"/containers/{container_id}/stop",
            ok=(204, 304, 404),
            params={"t": timeout},
            timeout=timeout + 30,
        )

    async def remove_container(self, container_id: str, force: bool = True) -> None:
        await self._request(
            "DELETE",
            f"/containers/{container_id}",
            ok=(204, 404),
            params={"force": str(force).lower(), "v": "true"},
        )

    async def execute_command(
        self,
        container_id: str,
        command: list[str],
        *,
        cwd: str | None = None,
        timeout_ms: int | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecuteResult:
        body: dict[str, Any] = {
            "AttachStdout": True,
            "AttachStderr": True,
            "Tty": False,
            "Cmd": command,
        }
        if cwd:
            body["WorkingDir"] = cwd
        if env:
            body["Env"] = [f"{k}={v}" for k, v in env.items()]
        response = await self._request(
            "POST", f"/containers/{container_id}/exec", ok=(201,), json=body
        )
        exec_id = response.json()["Id"]

        start = time.monotonic()
        demuxer = StreamDemuxer()

        async def _read_stream() -> None:
            async with self._client.stream(
                "POST",
                f"/exec/{exec_id}/start",
                json={"Detach": False, "Tty": False},
                timeout=None,
            ) as stream:
                if stream.status_code != 200:
                    await stream.aread()
                    raise DockerError(
                        f"exec start failed: {_error_message(stream)}",
                        status_code=stream.status_code,
                    )
                async for chunk in stream.aiter_raw():
                    demuxer.feed(chunk)

        try:
            if timeout_ms:
                await asyncio.wait_for(_read_stream(), timeout=timeout_ms / 1000)
            else:
                await _read_stream()
        except asyncio.TimeoutError:
            demuxer.close()
            # the Engine API cannot kill an exec; the process runs on until the container is removed
            return ExecuteResult(
                stdout=demuxer.stdout,
                stderr=f"{demuxer.stderr}Command timed out after {timeout_ms}ms",
                exit_code=TIMEOUT_EXIT_CODE,
                duration_ms=int((time.monotonic() - start) * 1000),
                timed_out=True,
            )
        except httpx.HTTPError as e:
            raise DockerError(f"exec stream failed: {e}") from e
        demuxer.close()

        inspect = await self._request("GET", f"/exec/{exec_id}/json")
        exit_code = inspect.json().get("ExitCode")
        return ExecuteResult(
            stdout=demuxer.stdout,
            stderr=demuxer.stderr,
            exit_code=exit_code if exit_code is not None else -1,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    async def get_container_status(self, container_id: str) -> ContainerStatus:
        response = await self._request(
            "GET", f"/containers/{container_id}/json", ok=(200, 404)
        )
        if response.status_code == 404:
            return ContainerStatus.ERROR
        state = response.json().get("State", {})
        if state.get("Running"):
            return ContainerStatus.RUNNING
        if state.get("Status") in ("created", "exited", "paused"):
            return ContainerStatus.STOPPED
        return ContainerStatus.ERROR

    async def close(self) -> None:
        await self._client.aclose()
