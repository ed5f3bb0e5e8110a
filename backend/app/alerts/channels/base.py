"""
base.py — NotificationSink contract shared by every channel.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from backend.app.alerts.models import Alert, SinkKind, SinkResult


@runtime_checkable
class NotificationSink(Protocol):
    """Protocol for notification channels."""

    @property
    def name(self) -> str: ...

    @property
    def kind(self) -> SinkKind: ...

    async def notify(self, alert: Alert) -> SinkResult: ...
