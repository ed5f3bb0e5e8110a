"""
models.py — Shared data structures for the SOS dispatch system.

Defines:
    • AlertStatus     — lifecycle states
    • Location        — validated reporter position
    • Alert           — the SOS record (immutable; transitions use replace())
    • AlertEvent      — real-time stream event (alert.created / alert.updated)
    • DeliveryStatus  — per-sink fan-out result
    • SinkResult      — one sink's entry in a DispatchOutcome
    • DispatchOutcome — per-alert fan-out summary

═══════════════════════════════════════════════════════════════════════════
ALERT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

                    cancel (owner only)
          ┌──────────────────────────────────► CANCELLED
          │
    ACTIVE┤
          │
          └──────────────────────────────────► ACKNOWLEDGED
                    acknowledge (anyone)

    • Exactly one transition ever succeeds per alert.
    • CANCELLED and ACKNOWLEDGED are terminal.
    • cancelled_at / acknowledged_by / acknowledged_at are written only
      by their own transition.

The grace period (created_at + grace duration) is advisory: clients show
a countdown and the server never transitions an alert on its own.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from backend.app.core.errors import InvalidLocation, SinkFailureKind

__all__ = [
    "ALERT_CREATED",
    "ALERT_UPDATED",
    "Alert",
    "AlertEvent",
    "AlertStatus",
    "DeliveryStatus",
    "DispatchOutcome",
    "Location",
    "SinkFailureKind",
    "SinkKind",
    "SinkResult",
]


ALERT_CREATED = "alert.created"
ALERT_UPDATED = "alert.updated"


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertStatus(str, Enum):
    """Alert lifecycle state."""
    ACTIVE       = "active"
    CANCELLED    = "cancelled"
    ACKNOWLEDGED = "acknowledged"

    @property
    def is_terminal(self) -> bool:
        return self is not AlertStatus.ACTIVE


class SinkKind(str, Enum):
    """Notification channel families."""
    BROADCAST = "broadcast"  # real-time subscribers
    PUSH      = "push"       # device tokens in a broadcast scope
    SMS       = "sms"        # owner's emergency contacts


class DeliveryStatus(str, Enum):
    """Outcome of one sink for one alert."""
    DELIVERED = "delivered"
    SKIPPED   = "skipped"   # nothing to deliver (no contacts / tokens)
    FAILED    = "failed"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return f"SOS-{uuid.uuid4().hex[:16].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _coerce_coordinate(value: Any, name: str) -> float:
    # bool is an int subclass; numeric strings are rejected too
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidLocation(
            f"Invalid or missing {name}", field=name, value=repr(value),
        )
    result = float(value)
    if not math.isfinite(result):
        raise InvalidLocation(f"{name} must be finite", field=name)
    return result


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Location:
    """
    Reporter position at the time of the SOS.

    Attributes
    ----------
    latitude : float
        Decimal degrees in [-90, 90].
    longitude : float
        Decimal degrees in [-180, 180].
    accuracy : float | None
        Device-reported accuracy radius in metres.
    """
    latitude: float
    longitude: float
    accuracy: Optional[float] = None

    @classmethod
    def parse(cls, latitude: Any, longitude: Any, accuracy: Any = None) -> "Location":
        """
        Validate raw client input and build a Location.

        Raises
        ------
        InvalidLocation
            Non-numeric, non-finite or out-of-range coordinates, or a
            negative / non-finite accuracy.
        """
        lat = _coerce_coordinate(latitude, "latitude")
        lng = _coerce_coordinate(longitude, "longitude")

        if not -90.0 <= lat <= 90.0:
            raise InvalidLocation(
                "latitude must be within [-90, 90]", field="latitude", value=lat,
            )
        if not -180.0 <= lng <= 180.0:
            raise InvalidLocation(
                "longitude must be within [-180, 180]", field="longitude", value=lng,
            )

        acc: Optional[float] = None
        if accuracy is not None:
            acc = _coerce_coordinate(accuracy, "accuracy")
            if acc < 0:
                raise InvalidLocation(
                    "accuracy must be non-negative", field="accuracy", value=acc,
                )

        return cls(latitude=lat, longitude=lng, accuracy=acc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.latitude,
            "lng": self.longitude,
            "accuracy": self.accuracy,
        }


@dataclass(frozen=True)
class Alert:
    """
    A single SOS event.

    Instances are immutable; lifecycle transitions produce a new record
    with dataclasses.replace() and are committed through the store's
    compare-and-set.
    """
    owner_id: str
    location: Location
    created_at: datetime
    grace_expires_at: datetime
    message: str = "SOS — help needed"
    id: str = field(default_factory=_generate_id)
    owner_name: Optional[str] = None
    status: AlertStatus = AlertStatus.ACTIVE
    cancelled_at: Optional[datetime] = None
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status is AlertStatus.ACTIVE

    @property
    def display_name(self) -> str:
        return self.owner_name or self.owner_id

    def grace_remaining(self, now: Optional[datetime] = None) -> timedelta:
        """Time left in the advisory cancel window (never negative)."""
        remaining = self.grace_expires_at - (now or _now())
        return max(remaining, timedelta(0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "owner_name": self.owner_name,
            "location": self.location.to_dict(),
            "message": self.message,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "grace_expires_at": self.grace_expires_at.isoformat(),
            "cancelled_at": _iso(self.cancelled_at),
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": _iso(self.acknowledged_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        """Inverse of to_dict(); used by document stores."""
        loc = data["location"]
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            owner_name=data.get("owner_name"),
            location=Location(
                latitude=float(loc["lat"]),
                longitude=float(loc["lng"]),
                accuracy=loc.get("accuracy"),
            ),
            message=data["message"],
            status=AlertStatus(data["status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            grace_expires_at=datetime.fromisoformat(data["grace_expires_at"]),
            cancelled_at=_parse_dt(data.get("cancelled_at")),
            acknowledged_by=data.get("acknowledged_by"),
            acknowledged_at=_parse_dt(data.get("acknowledged_at")),
        )


@dataclass(frozen=True)
class AlertEvent:
    """An entry on the real-time event stream."""
    type: str
    alert: Alert

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "alert": self.alert.to_dict()}


@dataclass
class SinkResult:
    """Result of delivering one alert through one sink."""
    sink: str
    status: DeliveryStatus
    failure: Optional[SinkFailureKind] = None
    reason: Optional[str] = None
    recipients: int = 0
    delivered: int = 0
    duration_ms: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, sink: str, kind: SinkFailureKind, reason: str = "") -> "SinkResult":
        return cls(sink=sink, status=DeliveryStatus.FAILED, failure=kind, reason=reason or kind.value)

    @classmethod
    def skipped(cls, sink: str, reason: str) -> "SinkResult":
        return cls(sink=sink, status=DeliveryStatus.SKIPPED, reason=reason)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": self.status.value,
            "recipients": self.recipients,
            "delivered": self.delivered,
            "duration_ms": round(self.duration_ms, 1),
        }
        if self.failure:
            d["failure"] = self.failure.value
        if self.reason:
            d["reason"] = self.reason
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class DispatchOutcome:
    """Fan-out summary for one alert: one SinkResult per registered sink."""
    alert_id: str
    results: Dict[str, SinkResult] = field(default_factory=dict)
    started_at: datetime = field(default_factory=_now)
    completed_at: Optional[datetime] = None

    def _names(self, status: DeliveryStatus):
        return sorted(n for n, r in self.results.items() if r.status is status)

    @property
    def delivered(self):
        return self._names(DeliveryStatus.DELIVERED)

    @property
    def skipped(self):
        return self._names(DeliveryStatus.SKIPPED)

    @property
    def failed(self):
        return self._names(DeliveryStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "sinks": {name: r.to_dict() for name, r in self.results.items()},
            "delivered": self.delivered,
            "skipped": self.skipped,
            "failed": self.failed,
            "started_at": self.started_at.isoformat(),
            "completed_at": _iso(self.completed_at),
        }
