"""Queue between engine callbacks and a UI consumer loop.

The engine fires callback dicts from its step task; the bus parses them
into typed events and hands them to whoever iterates ``consume()``.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from codepilot.adapters.events import EngineEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Bounded event queue. A stalled consumer costs events, never engine progress."""

    def __init__(
        self,
        maxsize: int = 5000,
        put_timeout: float = 30.0,
        poll_interval: float = 0.5,
    ) -> None:
        self._queue: asyncio.Queue[EngineEvent] = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._poll_interval = poll_interval
        self._closed = False
        self.dropped = 0

    def make_callback(self):
        """Return the coroutine function to install as EngineConfig.event_callback."""

        async def on_engine_event(data: dict[str, Any]) -> None:
            if not self._closed:
                await self.emit(dict_to_event(data))

        return on_engine_event

    async def emit(self, event: EngineEvent) -> None:
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            self.dropped += 1
            logger.error(
                "Event queue full for %.1fs; dropped %s (pending=%d dropped=%d)",
                self._put_timeout, event.event_type, self._queue.qsize(), self.dropped,
            )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def consume(self) -> AsyncIterator[EngineEvent]:
        """Yield events in arrival order until closed and drained."""
        while True:
            if self._closed and self._queue.empty():
                return
            try:
                yield await asyncio.wait_for(self._queue.get(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    def close(self) -> None:
        self._closed = True

    def reset(self) -> None:
        """Discard queued events and reopen the bus."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self._closed = False
        self.dropped = 0
