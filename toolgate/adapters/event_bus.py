"""Async event bus between the gateway and its UI consumers.

The gateway emits events as confirmations are requested and resolved;
the UI drains them in its own consumer loop.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from toolgate.adapters.events import GateEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Bounded async queue of GateEvents."""

    def __init__(self, maxsize: int = 1000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[GateEvent] = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: GateEvent) -> None:
        """Queue *event*, waiting for room rather than dropping it."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %ss, dropping: %s (queue size: %d)",
                self._put_timeout,
                event.event_type,
                self._queue.qsize(),
            )

    def emit_nowait(self, event: GateEvent) -> None:
        """Queue *event* from synchronous code; drops it if the queue is full."""
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(
                "EventBus queue full, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    async def emit_dict(self, data: dict[str, Any]) -> None:
        """Queue an event received as a plain dict."""
        await self.emit(dict_to_event(data))

    async def consume(self, poll_interval: float = 0.5) -> AsyncIterator[GateEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=poll_interval)
            except asyncio.TimeoutError:
                continue
            yield event

    def pending(self) -> list[GateEvent]:
        """Drain and return every queued event without waiting."""
        events: list[GateEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drop leftover events and re-open the bus."""
        self.pending()
        self._closed = False
