"""
dispatch.py — Concurrent, failure-isolated fan-out of one alert to N sinks.

This is the coordinator that:
    1. Invokes every registered sink concurrently
    2. Bounds each sink by its own timeout
    3. Converts every failure mode into a SinkResult
    4. Produces a DispatchOutcome with exactly one entry per sink
    5. Reports the outcome to observers (logging, outcome log)

═══════════════════════════════════════════════════════════════════════════
FAN-OUT FLOW
═══════════════════════════════════════════════════════════════════════════

    AlertLifecycle.create()
              │  dispatch_in_background(alert)   ← returns immediately
              ▼
    ┌─────────────────────┐
    │  fanout(alert)      │
    └─────────┬───────────┘
              │  asyncio.gather
     ┌────────┼─────────────────┐
     ▼        ▼                 ▼
   task     task     ...     task          own task + timeout per sink
  broadcast   push             sms
     │        │                 │
     └────────┴────────┬────────┘
                       ▼
              DispatchOutcome → observers

═══════════════════════════════════════════════════════════════════════════
FAILURE ISOLATION
═══════════════════════════════════════════════════════════════════════════

    Sink behaviour                  Recorded as
    ──────────────                  ───────────
    returns SinkResult              as returned
    raises SinkFailure(kind)        failed(kind)
    exceeds timeout                 failed(timeout), call cancelled
    raises anything else            failed(transport_error)
    cancels itself                  failed(transport_error)
    returns a non-SinkResult        failed(transport_error)

No retries happen inside one fanout() call. Calling fanout() twice for
the same alert delivers twice (at-least-once); sinks key on alert id.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set

from backend.app.alerts.channels.base import NotificationSink
from backend.app.alerts.models import (
    Alert,
    DeliveryStatus,
    DispatchOutcome,
    SinkResult,
)
from backend.app.core.errors import SinkFailure, SinkFailureKind
from backend.app.core.logging_config import log_context

logger = logging.getLogger(__name__)

OutcomeObserver = Callable[[DispatchOutcome], None]

DEFAULT_SINK_TIMEOUT_SECONDS = 3.0


# ═══════════════════════════════════════════════════════════════════════════
# Outcome Log
# ═══════════════════════════════════════════════════════════════════════════

class DispatchOutcomeLog:
    """Bounded in-memory record of recent outcomes, newest wins per alert."""

    def __init__(self, max_entries: int = 1000) -> None:
        self._max_entries = max_entries
        self._outcomes: "OrderedDict[str, DispatchOutcome]" = OrderedDict()

    def record(self, outcome: DispatchOutcome) -> None:
        self._outcomes[outcome.alert_id] = outcome
        self._outcomes.move_to_end(outcome.alert_id)
        while len(self._outcomes) > self._max_entries:
            self._outcomes.popitem(last=False)

    __call__ = record

    def get(self, alert_id: str) -> Optional[DispatchOutcome]:
        return self._outcomes.get(alert_id)

    def __len__(self) -> int:
        return len(self._outcomes)


# ═══════════════════════════════════════════════════════════════════════════
# Coordinator
# ═══════════════════════════════════════════════════════════════════════════

class DispatchCoordinator:
    """
    Deliver alerts to every registered sink.

    Parameters
    ----------
    sinks : sequence of NotificationSink
        Sink names must be unique; they key the DispatchOutcome.
    per_sink_timeout : float
        Seconds each sink may take before it is abandoned.
    observers : sequence of callables
        Called with every finished DispatchOutcome.
    """

    def __init__(
        self,
        sinks: Sequence[NotificationSink],
        *,
        per_sink_timeout: float = DEFAULT_SINK_TIMEOUT_SECONDS,
        observers: Sequence[OutcomeObserver] = (),
    ) -> None:
        names = [s.name for s in sinks]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate sink names: {sorted(duplicates)}")
        if per_sink_timeout <= 0:
            raise ValueError("per_sink_timeout must be positive")

        self._sinks: List[NotificationSink] = list(sinks)
        self._timeout = per_sink_timeout
        self._observers: List[OutcomeObserver] = list(observers)
        self._tasks: Set["asyncio.Task[DispatchOutcome]"] = set()

    @property
    def sinks(self) -> List[NotificationSink]:
        return list(self._sinks)

    @property
    def per_sink_timeout(self) -> float:
        return self._timeout

    @property
    def pending(self) -> int:
        """Number of background fan-outs still running."""
        return len(self._tasks)

    def add_observer(self, observer: OutcomeObserver) -> None:
        self._observers.append(observer)

    # ── Fan-out ──

    async def fanout(self, alert: Alert) -> DispatchOutcome:
        """Deliver one alert to all sinks; never raises for sink failures."""
        outcome = DispatchOutcome(alert_id=alert.id)

        with log_context(alert_id=alert.id):
            results = await asyncio.gather(
                *(self._run_sink(sink, alert) for sink in self._sinks),
                return_exceptions=True,
            )
        for sink, result in zip(self._sinks, results):
            if not isinstance(result, SinkResult):
                logger.error(
                    "Sink %s runner failed for %s: %r", sink.name, alert.id, result,
                    extra={"alert_id": alert.id, "sink": sink.name},
                )
                result = SinkResult.failed(
                    sink.name, SinkFailureKind.TRANSPORT_ERROR, repr(result),
                )
            outcome.results[sink.name] = result
        outcome.completed_at = datetime.now(timezone.utc)

        logger.info(
            "Alert %s fan-out complete: %d delivered, %d skipped, %d failed (%.1fs)",
            alert.id,
            len(outcome.delivered), len(outcome.skipped), len(outcome.failed),
            (outcome.completed_at - outcome.started_at).total_seconds(),
            extra={"alert_id": alert.id},
        )

        self._report(outcome)
        return outcome

    async def _run_sink(self, sink: NotificationSink, alert: Alert) -> SinkResult:
        start = time.perf_counter()
        # Own task per sink: a sink cancelling itself is told apart from
        # cancellation of the fan-out, which still propagates from wait().
        task = asyncio.ensure_future(sink.notify(alert))
        try:
            await asyncio.wait({task}, timeout=self._timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            result = SinkResult.failed(
                sink.name, SinkFailureKind.TIMEOUT,
                f"no response within {self._timeout:.1f}s",
            )
        elif task.cancelled():
            logger.error("Sink %s cancelled itself for %s", sink.name, alert.id)
            result = SinkResult.failed(
                sink.name, SinkFailureKind.TRANSPORT_ERROR, "sink call was cancelled",
            )
        elif task.exception() is not None:
            exc = task.exception()
            if isinstance(exc, SinkFailure):
                result = SinkResult.failed(sink.name, exc.kind, exc.reason)
            else:
                logger.error(
                    "Sink %s crashed for %s", sink.name, alert.id, exc_info=exc,
                )
                result = SinkResult.failed(
                    sink.name, SinkFailureKind.TRANSPORT_ERROR,
                    f"{type(exc).__name__}: {exc}",
                )
        else:
            result = task.result()
            if not isinstance(result, SinkResult):
                logger.error(
                    "Sink %s returned %s instead of a SinkResult for %s",
                    sink.name, type(result).__name__, alert.id,
                )
                result = SinkResult.failed(
                    sink.name, SinkFailureKind.TRANSPORT_ERROR,
                    f"sink returned {type(result).__name__}",
                )

        result.sink = sink.name
        if not result.duration_ms:
            result.duration_ms = (time.perf_counter() - start) * 1000

        log_level = logging.WARNING if result.status is DeliveryStatus.FAILED else logging.INFO
        logger.log(
            log_level,
            "Sink %s → %s for %s%s",
            sink.name, result.status.value, alert.id,
            f" ({result.failure.value}: {result.reason})" if result.failure else "",
            extra={
                "alert_id": alert.id,
                "sink": sink.name,
                "sink_kind": getattr(getattr(sink, "kind", None), "value", None),
                "status": result.status.value,
                "failure": result.failure.value if result.failure else None,
                "duration_ms": result.duration_ms,
            },
        )
        return result

    def _report(self, outcome: DispatchOutcome) -> None:
        for observer in self._observers:
            try:
                observer(outcome)
            except Exception:
                logger.exception("Outcome observer failed for %s", outcome.alert_id)

    # ── Fire-and-observe ──

    def dispatch_in_background(self, alert: Alert) -> "asyncio.Task[DispatchOutcome]":
        """Schedule fanout() without waiting for it; must run inside a loop."""
        task = asyncio.create_task(self.fanout(alert), name=f"fanout:{alert.id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: "asyncio.Task[DispatchOutcome]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Fan-out task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Fan-out task %s crashed: %s", task.get_name(), exc, exc_info=exc)

    async def drain(self) -> Dict[str, DispatchOutcome]:
        """Wait for every in-flight background fan-out to finish."""
        finished: Dict[str, DispatchOutcome] = {}
        while self._tasks:
            in_flight = list(self._tasks)
            done = await asyncio.gather(*in_flight, return_exceptions=True)
            self._tasks.difference_update(in_flight)
            for item in done:
                if isinstance(item, DispatchOutcome):
                    finished[item.alert_id] = item
        return finished
