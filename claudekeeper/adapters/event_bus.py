"""Fan-out broadcaster bridging the engine to connected clients.

Every SSE stream and WebSocket gets its own queue. Publishing never
blocks and never waits for acknowledgment: a subscriber that falls
behind loses events instead of stalling a run.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from claudekeeper.adapters.events import KeeperEvent

logger = logging.getLogger(__name__)


class EventBroadcaster:
    """Publish events to every subscriber queue."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._maxsize = maxsize
        self._queues: list[asyncio.Queue[KeeperEvent]] = []
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def publish(self, event: KeeperEvent) -> None:
        """Deliver ``event`` to all subscribers without waiting."""
        if self._closed:
            return
        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Subscriber queue full, dropping %s (queue size: %d)",
                    event.event_type,
                    queue.qsize(),
                )

    def subscribe(self) -> asyncio.Queue[KeeperEvent]:
        queue: asyncio.Queue[KeeperEvent] = asyncio.Queue(maxsize=self._maxsize)
        self._queues.append(queue)
        logger.debug("Subscriber added (total=%d)", len(self._queues))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[KeeperEvent]) -> None:
        try:
            self._queues.remove(queue)
        except ValueError:
            return
        logger.debug("Subscriber removed (total=%d)", len(self._queues))

    async def consume(
        self, queue: asyncio.Queue[KeeperEvent], poll_interval: float = 0.5,
    ) -> AsyncIterator[KeeperEvent]:
        """Yield events from one subscriber queue. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=poll_interval)
                yield event
            except asyncio.TimeoutError:
                continue

    def close(self) -> None:
        """Stop publishing and release all subscribers."""
        self._closed = True
        self._queues.clear()
