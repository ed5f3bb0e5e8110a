"""
lifecycle.py — The alert state machine.

Operations:
    create(owner_id, lat, lng, ...)   → ACTIVE alert, fan-out scheduled
    cancel(alert_id, requester_id)    → ACTIVE → CANCELLED (owner only)
    acknowledge(alert_id, responder)  → ACTIVE → ACKNOWLEDGED (anyone)

═══════════════════════════════════════════════════════════════════════════
CHECK ORDER
═══════════════════════════════════════════════════════════════════════════

    cancel:       NotFound → Forbidden → InvalidState → CAS (Conflict)
    acknowledge:  NotFound →             InvalidState → CAS (Conflict)

The ownership check runs before the state check, so a non-owner gets
Forbidden whatever the alert's status.

The pre-check on status gives a precise InvalidState for the common
case; the store's compare-and-set is what actually guarantees that a
racing cancel and acknowledge cannot both commit. The loser of that
race gets Conflict.

═══════════════════════════════════════════════════════════════════════════
FAILURE SEMANTICS
═══════════════════════════════════════════════════════════════════════════

    • Persistence failure on create → StoreUnavailable, nothing published
    • Fan-out runs in the background; sink failures never reach the caller
    • alert.updated is published after the CAS commits; a publish error is
      logged and never reported as a failed transition

The grace period is informational: grace_expires_at is stamped on the
record for client countdowns and nothing here acts on it.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from backend.app.alerts.channels.broadcast import RealtimeBroadcastSink
from backend.app.alerts.dispatch import DispatchCoordinator
from backend.app.alerts.models import Alert, AlertStatus, Location
from backend.app.alerts.store import AlertStore
from backend.app.core.errors import (
    Conflict,
    Forbidden,
    InvalidState,
    NotFound,
    StoreUnavailable,
    Unauthorized,
)

logger = logging.getLogger(__name__)

DEFAULT_SOS_MESSAGE = "SOS — help needed"
DEFAULT_GRACE_DURATION = timedelta(seconds=30)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AlertLifecycle:
    """
    Creates, cancels and acknowledges alerts.

    All collaborators are injected; nothing here reaches for a global.
    """

    def __init__(
        self,
        store: AlertStore,
        coordinator: DispatchCoordinator,
        broadcaster: Optional[RealtimeBroadcastSink] = None,
        *,
        grace_duration: timedelta = DEFAULT_GRACE_DURATION,
        default_message: str = DEFAULT_SOS_MESSAGE,
        clock: Callable[[], datetime] = _now,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        if grace_duration < timedelta(0):
            raise ValueError("grace_duration must not be negative")
        self._store = store
        self._coordinator = coordinator
        self._broadcaster = broadcaster
        self._grace = grace_duration
        self._default_message = default_message
        self._clock = clock
        self._id_factory = id_factory

    @property
    def grace_duration(self) -> timedelta:
        return self._grace

    # ── Create ──

    async def create(
        self,
        owner_id: str,
        latitude: Any,
        longitude: Any,
        accuracy: Any = None,
        message: Any = None,
        owner_name: Optional[str] = None,
    ) -> Alert:
        """
        Record a new SOS and schedule its fan-out.

        Returns as soon as the alert is durably stored; delivery to the
        sinks continues in the background.

        Raises
        ------
        InvalidLocation
            Bad coordinates; nothing is persisted.
        StoreUnavailable
            Persistence failed; no alert exists and no fan-out happens.
        """
        if not owner_id:
            raise Unauthorized()
        location = Location.parse(latitude, longitude, accuracy)

        text = str(message).strip() if message is not None else ""

        now = self._clock()
        fields = dict(
            owner_id=owner_id,
            owner_name=owner_name,
            location=location,
            message=text or self._default_message,
            created_at=now,
            grace_expires_at=now + self._grace,
        )
        if self._id_factory is not None:
            fields["id"] = self._id_factory()
        alert = Alert(**fields)

        try:
            await self._store.create(alert)
        except StoreUnavailable:
            logger.error("Alert store rejected %s", alert.id, extra={"alert_id": alert.id})
            raise
        except Exception as exc:
            logger.error("Alert store failed for %s: %s", alert.id, exc, extra={"alert_id": alert.id})
            raise StoreUnavailable(str(exc), alert_id=alert.id) from exc

        logger.info(
            "Alert %s created by %s at (%.5f, %.5f)",
            alert.id, owner_id, location.latitude, location.longitude,
            extra={"alert_id": alert.id, "owner_id": owner_id},
        )

        try:
            self._coordinator.dispatch_in_background(alert)
        except Exception:
            logger.exception("Could not schedule fan-out for %s", alert.id)

        return alert

    # ── Transitions ──

    async def cancel(self, alert_id: str, requester_id: str) -> Alert:
        """
        Cancel an active alert on behalf of its owner.

        Raises NotFound, Forbidden, InvalidState or Conflict.
        """
        alert = await self.get(alert_id)
        if requester_id != alert.owner_id:
            logger.warning(
                "Cancel of %s refused for non-owner %s", alert_id, requester_id,
                extra={"alert_id": alert_id},
            )
            raise Forbidden("Only the alert owner may cancel it", alert_id=alert_id)
        if not alert.is_active:
            raise InvalidState(alert_id, alert.status.value)

        now = self._clock()
        updated = await self._transition(
            alert_id,
            lambda a: replace(a, status=AlertStatus.CANCELLED, cancelled_at=now),
        )
        logger.info("Alert %s cancelled by owner", alert_id, extra={"alert_id": alert_id})
        self._publish_update(updated)
        return updated

    async def acknowledge(self, alert_id: str, responder_id: str) -> Alert:
        """
        Mark an active alert as handled by a responder.

        Any identified caller may acknowledge. Raises NotFound,
        InvalidState or Conflict.
        """
        if not responder_id:
            raise Unauthorized()
        alert = await self.get(alert_id)
        if not alert.is_active:
            raise InvalidState(alert_id, alert.status.value)

        now = self._clock()
        updated = await self._transition(
            alert_id,
            lambda a: replace(
                a,
                status=AlertStatus.ACKNOWLEDGED,
                acknowledged_by=responder_id,
                acknowledged_at=now,
            ),
        )
        logger.info(
            "Alert %s acknowledged by %s", alert_id, responder_id,
            extra={"alert_id": alert_id},
        )
        self._publish_update(updated)
        return updated

    # ── Reads ──

    async def get(self, alert_id: str) -> Alert:
        """Load an alert or raise NotFound."""
        try:
            alert = await self._store.get(alert_id)
        except StoreUnavailable:
            raise
        except Exception as exc:
            raise StoreUnavailable(str(exc), alert_id=alert_id) from exc
        if alert is None:
            raise NotFound("Alert", alert_id=alert_id)
        return alert

    # ── Internals ──

    async def _transition(self, alert_id: str, mutation: Callable[[Alert], Alert]) -> Alert:
        try:
            updated = await self._store.compare_and_update(
                alert_id, AlertStatus.ACTIVE, mutation,
            )
        except StoreUnavailable:
            raise
        except Exception as exc:
            raise StoreUnavailable(str(exc), alert_id=alert_id) from exc

        if updated is None:
            logger.warning("CAS lost for %s", alert_id, extra={"alert_id": alert_id})
            raise Conflict(alert_id)
        return updated

    def _publish_update(self, alert: Alert) -> None:
        if self._broadcaster is None:
            return
        try:
            self._broadcaster.publish_update(alert)
        except Exception:
            logger.exception("Publishing alert.updated failed for %s", alert.id)
