"""Async event bus bridging the push stream to the session engine.

The WebSocket reader parses frames and emits them here; the engine's
consume loop drains the queue.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from chatengine.adapters.events import AgentEvent, frame_to_event
from chatengine.engine.errors import UnknownEventError

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue between the push stream and event consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[AgentEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    async def emit_frame(self, frame: dict[str, Any]) -> None:
        """Parse a raw push frame and queue the resulting event."""
        if self._closed:
            return
        try:
            event = frame_to_event(frame)
        except UnknownEventError as exc:
            logger.debug("EventBus skipping frame: %s", exc)
            return
        await self.emit(event)

    async def emit(self, event: AgentEvent) -> None:
        if self._closed:
            return
        try:
            # Block with a timeout for backpressure instead of dropping
            await asyncio.wait_for(self._queue.put(event), timeout=30.0)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for 30s, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[AgentEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                yield event
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        while not self._queue.empty():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._closed = False
