"""
test_alert_lifecycle.py — Tests for the SOS alert state machine.

Covers:
    • Location validation (ranges, non-numeric input, accuracy)
    • Create (defaults, timestamps, persistence, background fan-out)
    • Cancel / acknowledge (ownership, terminal states, NotFound)
    • Cancel-vs-acknowledge race (single-writer-wins via CAS)
    • alert.updated publication

Run with:
    pytest tests/test_alert_lifecycle.py -v
"""

from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from backend.app.alerts.channels.broadcast import RealtimeBroadcastSink
from backend.app.alerts.dispatch import DispatchCoordinator, DispatchOutcomeLog
from backend.app.alerts.events import EventHub
from backend.app.alerts.lifecycle import DEFAULT_SOS_MESSAGE, AlertLifecycle
from backend.app.alerts.models import (
    ALERT_UPDATED,
    Alert,
    AlertStatus,
    DeliveryStatus,
    Location,
    SinkKind,
    SinkResult,
)
from backend.app.alerts.store import InMemoryAlertStore
from backend.app.core.errors import (
    Conflict,
    Forbidden,
    InvalidLocation,
    InvalidState,
    NotFound,
    SinkFailureKind,
    StoreUnavailable,
    Unauthorized,
)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class _RecordingSink:
    """Sink that records calls and optionally blocks or sleeps."""

    kind = SinkKind.PUSH

    def __init__(self, name: str = "recording", *, delay: float = 0.0,
                 release: Optional[asyncio.Event] = None):
        self.name = name
        self.calls: List[str] = []
        self._delay = delay
        self._release = release

    async def notify(self, alert: Alert) -> SinkResult:
        self.calls.append(alert.id)
        if self._release is not None:
            await self._release.wait()
        if self._delay:
            await asyncio.sleep(self._delay)
        return SinkResult(sink=self.name, status=DeliveryStatus.DELIVERED, recipients=1, delivered=1)


class _FailingStore(InMemoryAlertStore):
    """Store whose writes always fail."""

    def __init__(self, exc: Exception):
        super().__init__()
        self._exc = exc

    async def create(self, alert: Alert) -> None:
        raise self._exc


class _BarrierStore(InMemoryAlertStore):
    """Holds every reader until ``parties`` readers have loaded the alert."""

    def __init__(self, parties: int):
        super().__init__()
        self._parties = parties
        self._arrived = 0
        self._all_in = asyncio.Event()

    async def get(self, alert_id: str) -> Optional[Alert]:
        alert = await super().get(alert_id)
        self._arrived += 1
        if self._arrived >= self._parties:
            self._all_in.set()
        await self._all_in.wait()
        return alert


class _ExplodingBroadcaster(RealtimeBroadcastSink):
    def publish_update(self, alert: Alert) -> int:
        raise RuntimeError("socket layer down")


def _make_lifecycle(
    *,
    store: Optional[InMemoryAlertStore] = None,
    sinks=None,
    timeout: float = 1.0,
    hub: Optional[EventHub] = None,
    broadcaster: Optional[RealtimeBroadcastSink] = None,
):
    store = store if store is not None else InMemoryAlertStore()
    hub = hub or EventHub()
    broadcaster = broadcaster or RealtimeBroadcastSink(hub)
    outcomes = DispatchOutcomeLog()
    coordinator = DispatchCoordinator(
        sinks if sinks is not None else [broadcaster],
        per_sink_timeout=timeout,
        observers=[outcomes],
    )
    lifecycle = AlertLifecycle(
        store, coordinator, broadcaster,
        grace_duration=timedelta(seconds=30),
        clock=lambda: FIXED_NOW,
    )
    return lifecycle, store, coordinator, outcomes


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Location Validation
# ═══════════════════════════════════════════════════════════════════════════

class TestLocationParse:
    """Test Location.parse."""

    @pytest.mark.parametrize("lat,lng", [
        (0, 0),
        (12.34, 56.78),
        (-90, -180),
        (90, 180),
        (-33.8688, 151.2093),
    ])
    def test_valid_coordinates(self, lat, lng):
        loc = Location.parse(lat, lng)
        assert loc.latitude == float(lat)
        assert loc.longitude == float(lng)
        assert loc.accuracy is None

    @pytest.mark.parametrize("lat,lng", [
        (90.0001, 0),
        (-91, 0),
        (0, 180.5),
        (0, -181),
    ])
    def test_out_of_range_rejected(self, lat, lng):
        with pytest.raises(InvalidLocation):
            Location.parse(lat, lng)

    @pytest.mark.parametrize("lat,lng", [
        ("abc", 56.78),
        ("12.34", 56.78),
        (None, 56.78),
        (12.34, None),
        (True, 56.78),
        ([12.34], 56.78),
        (math.nan, 0),
        (0, math.inf),
    ])
    def test_non_numeric_rejected(self, lat, lng):
        with pytest.raises(InvalidLocation):
            Location.parse(lat, lng)

    def test_accuracy_kept(self):
        loc = Location.parse(12.34, 56.78, 15)
        assert loc.accuracy == 15.0

    def test_zero_accuracy_allowed(self):
        assert Location.parse(1, 1, 0).accuracy == 0.0

    def test_negative_accuracy_rejected(self):
        with pytest.raises(InvalidLocation) as exc_info:
            Location.parse(12.34, 56.78, -1)
        assert exc_info.value.details["field"] == "accuracy"

    def test_error_maps_to_400(self):
        with pytest.raises(InvalidLocation) as exc_info:
            Location.parse("abc", 1)
        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == "INVALID_LOCATION"


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Create
# ═══════════════════════════════════════════════════════════════════════════

class TestCreate:
    """Test AlertLifecycle.create."""

    @pytest.mark.asyncio
    async def test_returns_active_alert(self):
        lifecycle, store, coordinator, _ = _make_lifecycle()
        alert = await lifecycle.create("u1", 12.34, 56.78)
        assert alert.status is AlertStatus.ACTIVE
        assert alert.id.startswith("SOS-")
        assert alert.owner_id == "u1"
        assert await store.get(alert.id) == alert
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_timestamps_and_grace(self):
        lifecycle, _, coordinator, _ = _make_lifecycle()
        alert = await lifecycle.create("u1", 12.34, 56.78)
        assert alert.created_at == FIXED_NOW
        assert alert.grace_expires_at == FIXED_NOW + timedelta(seconds=30)
        assert alert.cancelled_at is None
        assert alert.acknowledged_by is None
        assert alert.acknowledged_at is None
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_default_message(self):
        lifecycle, _, coordinator, _ = _make_lifecycle()
        alert = await lifecycle.create("u1", 1.0, 2.0)
        blank = await lifecycle.create("u1", 1.0, 2.0, message="   ")
        assert alert.message == DEFAULT_SOS_MESSAGE
        assert blank.message == DEFAULT_SOS_MESSAGE
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_custom_message_and_accuracy(self):
        lifecycle, _, coordinator, _ = _make_lifecycle()
        alert = await lifecycle.create(
            "u1", 1.0, 2.0, accuracy=8.5, message="Library stairwell", owner_name="Asha",
        )
        assert alert.message == "Library stairwell"
        assert alert.location.accuracy == 8.5
        assert alert.owner_name == "Asha"
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_ids_unique(self):
        lifecycle, _, coordinator, _ = _make_lifecycle()
        ids = {(await lifecycle.create("u1", 1.0, 2.0)).id for _ in range(20)}
        assert len(ids) == 20
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_invalid_location_persists_nothing(self):
        sink = _RecordingSink()
        lifecycle, store, coordinator, _ = _make_lifecycle(sinks=[sink])
        with pytest.raises(InvalidLocation):
            await lifecycle.create("u1", "abc", 56.78)
        assert len(store) == 0
        assert coordinator.pending == 0
        await coordinator.drain()
        assert sink.calls == []

    @pytest.mark.asyncio
    async def test_missing_owner_rejected(self):
        lifecycle, store, _, _ = _make_lifecycle()
        with pytest.raises(Unauthorized):
            await lifecycle.create("", 1.0, 2.0)
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_store_failure_is_fatal_and_skips_fanout(self):
        sink = _RecordingSink()
        lifecycle, _, coordinator, _ = _make_lifecycle(
            store=_FailingStore(StoreUnavailable("disk full")), sinks=[sink],
        )
        with pytest.raises(StoreUnavailable):
            await lifecycle.create("u1", 1.0, 2.0)
        await coordinator.drain()
        assert sink.calls == []

    @pytest.mark.asyncio
    async def test_unexpected_store_error_wrapped(self):
        lifecycle, _, _, _ = _make_lifecycle(store=_FailingStore(OSError("connection reset")))
        with pytest.raises(StoreUnavailable) as exc_info:
            await lifecycle.create("u1", 1.0, 2.0)
        assert exc_info.value.status_code == 500
        assert isinstance(exc_info.value.__cause__, OSError)

    @pytest.mark.asyncio
    async def test_does_not_wait_for_fanout(self):
        release = asyncio.Event()
        sink = _RecordingSink(release=release)
        lifecycle, _, coordinator, outcomes = _make_lifecycle(sinks=[sink], timeout=5.0)

        alert = await lifecycle.create("u1", 1.0, 2.0)
        assert coordinator.pending == 1
        assert outcomes.get(alert.id) is None

        release.set()
        await coordinator.drain()
        assert outcomes.get(alert.id).results["recording"].status is DeliveryStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_timing_out_sink_does_not_fail_create(self):
        slow = _RecordingSink("slow", delay=5.0)
        fast = [_RecordingSink(f"fast{i}") for i in range(3)]
        lifecycle, _, coordinator, outcomes = _make_lifecycle(sinks=[slow, *fast], timeout=0.05)

        alert = await lifecycle.create("u1", 12.34, 56.78)
        assert alert.status is AlertStatus.ACTIVE

        await coordinator.drain()
        outcome = outcomes.get(alert.id)
        assert len(outcome.results) == 4
        assert outcome.results["slow"].failure is SinkFailureKind.TIMEOUT
        assert outcome.delivered == ["fast0", "fast1", "fast2"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Cancel
# ═══════════════════════════════════════════════════════════════════════════

class TestCancel:
    """Test AlertLifecycle.cancel."""

    @pytest.mark.asyncio
    async def test_owner_cancel_then_second_cancel_invalid_state(self):
        lifecycle, store, coordinator, _ = _make_lifecycle()
        alert = await lifecycle.create("u1", 12.34, 56.78)

        cancelled = await lifecycle.cancel(alert.id, "u1")
        assert cancelled.status is AlertStatus.CANCELLED
        assert cancelled.cancelled_at == FIXED_NOW
        assert (await store.get(alert.id)).status is AlertStatus.CANCELLED

        with pytest.raises(InvalidState):
            await lifecycle.cancel(alert.id, "u1")
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_non_owner_forbidden_when_active(self):
        lifecycle, store, coordinator, _ = _make_lifecycle()
        alert = await lifecycle.create("u1", 1.0, 2.0)
        with pytest.raises(Forbidden):
            await lifecycle.cancel(alert.id, "intruder")
        assert (await store.get(alert.id)).status is AlertStatus.ACTIVE
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_non_owner_forbidden_when_terminal(self):
        lifecycle, _, coordinator, _ = _make_lifecycle()
        alert = await lifecycle.create("u1", 1.0, 2.0)
        await lifecycle.acknowledge(alert.id, "responder1")
        with pytest.raises(Forbidden):
            await lifecycle.cancel(alert.id, "intruder")
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_unknown_alert_not_found(self):
        lifecycle, _, _, _ = _make_lifecycle()
        with pytest.raises(NotFound):
            await lifecycle.cancel("SOS-NOPE", "u1")

    @pytest.mark.asyncio
    async def test_cancel_after_grace_still_allowed(self):
        """Grace expiry is advisory; only status gates cancellation."""
        clock = {"now": FIXED_NOW}
        store = InMemoryAlertStore()
        hub = EventHub()
        broadcaster = RealtimeBroadcastSink(hub)
        coordinator = DispatchCoordinator([broadcaster], per_sink_timeout=1.0)
        lifecycle = AlertLifecycle(
            store, coordinator, broadcaster,
            grace_duration=timedelta(seconds=30),
            clock=lambda: clock["now"],
        )
        alert = await lifecycle.create("u1", 1.0, 2.0)
        clock["now"] = FIXED_NOW + timedelta(minutes=10)
        cancelled = await lifecycle.cancel(alert.id, "u1")
        assert cancelled.status is AlertStatus.CANCELLED
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_publishes_alert_updated(self):
        hub = EventHub()
        lifecycle, _, coordinator, _ = _make_lifecycle(hub=hub)
        alert = await lifecycle.create("u1", 1.0, 2.0)
        await coordinator.drain()

        async with hub.subscribe() as queue:
            await lifecycle.cancel(alert.id, "u1")
            event = queue.get_nowait()

        assert event.type == ALERT_UPDATED
        payload = event.to_dict()
        assert payload["alert"]["id"] == alert.id
        assert payload["alert"]["status"] == "cancelled"
        assert payload["alert"]["cancelled_at"] == FIXED_NOW.isoformat()

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_undo_cancel(self):
        hub = EventHub()
        lifecycle, store, coordinator, _ = _make_lifecycle(
            hub=hub, broadcaster=_ExplodingBroadcaster(hub),
        )
        alert = await lifecycle.create("u1", 1.0, 2.0)
        cancelled = await lifecycle.cancel(alert.id, "u1")
        assert cancelled.status is AlertStatus.CANCELLED
        assert (await store.get(alert.id)).status is AlertStatus.CANCELLED
        await coordinator.drain()


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Acknowledge
# ═══════════════════════════════════════════════════════════════════════════

class TestAcknowledge:
    """Test AlertLifecycle.acknowledge."""

    @pytest.mark.asyncio
    async def test_sets_responder_fields(self):
        lifecycle, _, coordinator, _ = _make_lifecycle()
        alert = await lifecycle.create("u1", 1.0, 2.0)
        acked = await lifecycle.acknowledge(alert.id, "responder1")
        assert acked.status is AlertStatus.ACKNOWLEDGED
        assert acked.acknowledged_by == "responder1"
        assert acked.acknowledged_at == FIXED_NOW
        assert acked.cancelled_at is None
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_unknown_alert_not_found(self):
        lifecycle, _, _, _ = _make_lifecycle()
        with pytest.raises(NotFound) as exc_info:
            await lifecycle.acknowledge("unknown-id", "responder1")
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_owner_may_acknowledge(self):
        lifecycle, _, coordinator, _ = _make_lifecycle()
        alert = await lifecycle.create("u1", 1.0, 2.0)
        acked = await lifecycle.acknowledge(alert.id, "u1")
        assert acked.acknowledged_by == "u1"
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_terminal_states_reject_everything(self):
        lifecycle, _, coordinator, _ = _make_lifecycle()
        acked = await lifecycle.create("u1", 1.0, 2.0)
        cancelled = await lifecycle.create("u1", 1.0, 2.0)
        await lifecycle.acknowledge(acked.id, "r1")
        await lifecycle.cancel(cancelled.id, "u1")

        for alert_id in (acked.id, cancelled.id):
            with pytest.raises(InvalidState):
                await lifecycle.acknowledge(alert_id, "r2")
            with pytest.raises(InvalidState):
                await lifecycle.cancel(alert_id, "u1")
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_cas_miss_reports_conflict(self):
        class _NoCasStore(InMemoryAlertStore):
            async def compare_and_update(self, alert_id, expected_status, mutation):
                return None

        lifecycle, _, coordinator, _ = _make_lifecycle(store=_NoCasStore())
        alert = await lifecycle.create("u1", 1.0, 2.0)
        with pytest.raises(Conflict) as exc_info:
            await lifecycle.acknowledge(alert.id, "r1")
        assert exc_info.value.status_code == 409
        await coordinator.drain()


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Cancel vs Acknowledge Race
# ═══════════════════════════════════════════════════════════════════════════

class TestTransitionRace:
    """Exactly one of a concurrent cancel and acknowledge may commit."""

    @staticmethod
    def _assert_single_winner(results, final: Alert):
        winners = [r for r in results if isinstance(r, Alert)]
        losers = [r for r in results if not isinstance(r, Alert)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], (Conflict, InvalidState))
        assert final.status in (AlertStatus.CANCELLED, AlertStatus.ACKNOWLEDGED)
        assert not (final.cancelled_at and final.acknowledged_at)

    @pytest.mark.asyncio
    async def test_concurrent_cancel_and_acknowledge(self):
        lifecycle, store, coordinator, _ = _make_lifecycle()
        alert = await lifecycle.create("u1", 1.0, 2.0)

        results = await asyncio.gather(
            lifecycle.cancel(alert.id, "u1"),
            lifecycle.acknowledge(alert.id, "responder1"),
            return_exceptions=True,
        )
        self._assert_single_winner(results, await store.get(alert.id))
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_both_read_active_loser_gets_conflict(self):
        store = _BarrierStore(parties=2)
        lifecycle, _, coordinator, _ = _make_lifecycle(store=store)
        alert = await lifecycle.create("u1", 1.0, 2.0)

        results = await asyncio.gather(
            lifecycle.cancel(alert.id, "u1"),
            lifecycle.acknowledge(alert.id, "responder1"),
            return_exceptions=True,
        )
        final = await InMemoryAlertStore.get(store, alert.id)
        self._assert_single_winner(results, final)
        assert any(isinstance(r, Conflict) for r in results)
        await coordinator.drain()

    @pytest.mark.asyncio
    async def test_many_responders_one_winner(self):
        lifecycle, store, coordinator, _ = _make_lifecycle()
        alert = await lifecycle.create("u1", 1.0, 2.0)

        results = await asyncio.gather(
            *(lifecycle.acknowledge(alert.id, f"r{i}") for i in range(10)),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, Alert)]
        assert len(winners) == 1
        final = await store.get(alert.id)
        assert final.acknowledged_by == winners[0].acknowledged_by
        await coordinator.drain()
