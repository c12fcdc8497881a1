"""Bounded, decoupled delivery of agent stream events."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from forgeloop.agents.types import StreamEvent

logger = logging.getLogger(__name__)

EventSink = Callable[[StreamEvent], Awaitable[None]]

_STOP = object()


class EventPublisher:
    """Publishes events to a sink through a bounded queue and a consumer task.

    ``publish`` never blocks: when the queue is full the event is dropped
    and counted. Sink exceptions are logged and the consumer keeps going.
    """

    def __init__(
        self,
        sink: EventSink | None,
        *,
        maxsize: int = 256,
        drain_timeout: float = 1.0,
    ) -> None:
        self._sink = sink
        self._maxsize = maxsize
        self._drain_timeout = drain_timeout
        self._queue: asyncio.Queue[object] | None = None
        self._task: asyncio.Task[None] | None = None
        self._dropped = 0

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def active(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        if self._sink is None or self._task is not None:
            return
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._task = asyncio.create_task(self._consume(self._queue))

    def publish(self, event: StreamEvent) -> None:
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.debug("Event queue full, dropped %s event", event.type.value)

    async def _consume(self, queue: asyncio.Queue[object]) -> None:
        assert self._sink is not None
        while True:
            event = await queue.get()
            if event is _STOP:
                return
            try:
                await self._sink(event)  # type: ignore[arg-type]
            except Exception:
                logger.warning("Event sink raised; continuing", exc_info=True)

    async def aclose(self) -> None:
        """Let queued events drain for up to ``drain_timeout`` seconds, then stop."""
        task, queue = self._task, self._queue
        self._task = None
        self._queue = None
        if task is None or queue is None:
            return
        try:
            queue.put_nowait(_STOP)
        except asyncio.QueueFull:
            task.cancel()
        done, _ = await asyncio.wait({task}, timeout=self._drain_timeout)
        if not done:
            task.cancel()
            await asyncio.wait({task})
            logger.debug("Event consumer cancelled with %d events pending", queue.qsize())
