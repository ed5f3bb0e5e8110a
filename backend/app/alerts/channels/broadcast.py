"""
broadcast.py — Real-time broadcast to live subscribers.

Delivery mechanism:
    • In-process EventHub → one queue per connected client
    • The API layer streams each queue over a WebSocket
    • Payload: {"type": "alert.created" | "alert.updated", "alert": {...}}

This sink emits alert.created during fan-out. The lifecycle calls
publish_update() directly after a committed cancel/acknowledge.
"""

from __future__ import annotations

import logging

from backend.app.alerts.events import EventHub
from backend.app.alerts.models import (
    ALERT_CREATED,
    ALERT_UPDATED,
    Alert,
    AlertEvent,
    DeliveryStatus,
    SinkKind,
    SinkResult,
)

logger = logging.getLogger(__name__)


class RealtimeBroadcastSink:
    """Publishes alert events to every live subscriber."""

    kind = SinkKind.BROADCAST

    def __init__(self, hub: EventHub, *, name: str = "broadcast") -> None:
        self._hub = hub
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def _publish(self, event_type: str, alert: Alert) -> int:
        received = self._hub.publish(AlertEvent(type=event_type, alert=alert))
        logger.info(
            "[BROADCAST] %s %s → %d subscriber(s)",
            event_type, alert.id, received,
            extra={"alert_id": alert.id, "recipient_count": received},
        )
        return received

    async def notify(self, alert: Alert) -> SinkResult:
        received = self._publish(ALERT_CREATED, alert)
        # No subscribers is still a successful broadcast
        return SinkResult(
            sink=self.name,
            status=DeliveryStatus.DELIVERED,
            recipients=received,
            delivered=received,
        )

    def publish_update(self, alert: Alert) -> int:
        return self._publish(ALERT_UPDATED, alert)
