"""
events.py — In-process real-time event hub.

Every subscriber (e.g. one WebSocket connection) gets its own bounded
asyncio.Queue. publish() never blocks the lifecycle: if a subscriber's
queue is full the event is dropped for that subscriber only.

Usage:
    hub = EventHub()

    async with hub.subscribe() as queue:
        event = await queue.get()
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Set

from backend.app.alerts.models import AlertEvent

logger = logging.getLogger(__name__)


class EventHub:
    """Fan-in/fan-out of AlertEvents to live subscribers."""

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._subscribers: Set["asyncio.Queue[AlertEvent]"] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator["asyncio.Queue[AlertEvent]"]:
        queue: "asyncio.Queue[AlertEvent]" = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(queue)
        logger.debug("Subscriber added (%d total)", len(self._subscribers))
        try:
            yield queue
        finally:
            self._subscribers.discard(queue)
            logger.debug("Subscriber removed (%d total)", len(self._subscribers))

    def publish(self, event: AlertEvent) -> int:
        """
        Deliver an event to every current subscriber.

        Returns the number of subscribers that received it.
        """
        received = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
                received += 1
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping %s for slow subscriber", event.type,
                    extra={"alert_id": event.alert.id},
                )
        return received
