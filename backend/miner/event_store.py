"""Fire-and-forget persistence for miner events.

Callers enqueue operations synchronously; one writer task applies them to the
repository in order. Storage failures are logged and dropped so the live
monitoring loops never stall on the database.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from shared.models.miner import ChannelPointEventInput, MinerRunInput, StreamerRef

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    async def ensure_streamer(self, ref: StreamerRef) -> int: ...
    async def start_run(self, run: MinerRunInput) -> int: ...
    async def stop_run(self, stop_reason: str = "stopped") -> None: ...
    async def record_event(self, event: ChannelPointEventInput) -> int: ...


Operation = tuple[str, Callable[[], Awaitable[Any]]]


class EventStore:
    def __init__(self, repository: EventSink):
        self.repository = repository
        self._queue: asyncio.Queue[Operation | None] = asyncio.Queue()
        self._writer_task: asyncio.Task | None = None
        self.failures = 0

    # ==================== Public API (never raises) ====================

    def register_streamer(self, ref: StreamerRef) -> None:
        if ref.is_empty:
            return
        self._enqueue("register_streamer", lambda: self.repository.ensure_streamer(ref))

    def start_run(self, run: MinerRunInput) -> None:
        self._enqueue("start_run", lambda: self.repository.start_run(run))

    def stop_run(self, reason: str = "stopped") -> None:
        self._enqueue("stop_run", lambda: self.repository.stop_run(reason))

    def record_event(self, event: ChannelPointEventInput) -> None:
        if event.streamer.is_empty:
            logger.debug(f"Dropping {event.event_type.value} event without streamer identity")
            return
        self._enqueue(
            f"record_event:{event.event_type.value}",
            lambda: self.repository.record_event(event),
        )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ==================== Writer ====================

    def _enqueue(self, name: str, call: Callable[[], Awaitable[Any]]) -> None:
        self._ensure_writer()
        self._queue.put_nowait((name, call))

    def _ensure_writer(self) -> None:
        if self._writer_task is None or self._writer_task.done():
            self._writer_task = asyncio.create_task(self._writer())

    async def _writer(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                name, call = item
                try:
                    await call()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.failures += 1
                    logger.error(f"Event store {name} failed: {e}")
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued operation has been applied."""
        if self._writer_task is None or self._writer_task.done():
            if self._queue.empty():
                return
            self._ensure_writer()
        await self._queue.join()

    async def close(self) -> None:
        """Drain the queue, then stop the writer."""
        if self._writer_task is None or self._writer_task.done():
            self._writer_task = None
            return
        self._queue.put_nowait(None)
        await self._writer_task
        self._writer_task = None
