"""
container.py — Wires the alert services together from Settings.

Every collaborator is constructed here and passed explicitly; the rest
of the package never imports a service instance from a module global.

Usage:
    services = build_alert_services(settings)
    alert = await services.lifecycle.create("u1", 12.34, 56.78)
    ...
    await services.aclose()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from backend.app.alerts.channels.base import NotificationSink
from backend.app.alerts.channels.broadcast import RealtimeBroadcastSink
from backend.app.alerts.channels.push import PushSink
from backend.app.alerts.channels.sms import SmsSink
from backend.app.alerts.directory import ContactDirectory, InMemoryContactDirectory
from backend.app.alerts.dispatch import DispatchCoordinator, DispatchOutcomeLog
from backend.app.alerts.events import EventHub
from backend.app.alerts.lifecycle import AlertLifecycle
from backend.app.alerts.store import AlertStore, InMemoryAlertStore, RedisAlertStore
from backend.app.core.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class AlertServices:
    """Everything the API layer needs, built once per application."""
    store: AlertStore
    directory: ContactDirectory
    hub: EventHub
    broadcaster: RealtimeBroadcastSink
    coordinator: DispatchCoordinator
    lifecycle: AlertLifecycle
    outcomes: DispatchOutcomeLog
    closers: List[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    async def aclose(self) -> None:
        """Let in-flight fan-outs finish, then release clients."""
        await self.coordinator.drain()
        for close in self.closers:
            try:
                await close()
            except Exception:
                logger.exception("Error while closing %r", close)


def build_store(cfg: Settings) -> AlertStore:
    backend = cfg.STORE_BACKEND.lower()
    if backend == "memory":
        return InMemoryAlertStore()
    if backend == "redis":
        return RedisAlertStore.from_url(cfg.REDIS_URL, key_prefix=cfg.ALERT_KEY_PREFIX)
    raise ValueError(f"Unknown STORE_BACKEND: {cfg.STORE_BACKEND}")


def build_alert_services(
    cfg: Settings,
    *,
    store: Optional[AlertStore] = None,
    directory: Optional[ContactDirectory] = None,
    extra_sinks: Sequence[NotificationSink] = (),
    **lifecycle_options: Any,
) -> AlertServices:
    """
    Build the alert service graph.

    ``store`` and ``directory`` override the configured backends (tests,
    external integrations). ``lifecycle_options`` are passed through to
    AlertLifecycle (e.g. clock, id_factory).
    """
    store = store if store is not None else build_store(cfg)
    directory = directory if directory is not None else InMemoryContactDirectory()
    hub = EventHub(queue_size=cfg.EVENT_QUEUE_SIZE)

    broadcaster = RealtimeBroadcastSink(hub)
    push = PushSink(
        directory,
        scope=cfg.BROADCAST_SCOPE,
        provider=cfg.PUSH_PROVIDER,
        title=cfg.PUSH_TITLE,
        project_id=cfg.FCM_PROJECT_ID,
        access_token=cfg.FCM_ACCESS_TOKEN,
        api_url=cfg.FCM_API_URL,
    )
    sms = SmsSink(
        directory,
        provider=cfg.SMS_PROVIDER,
        account_sid=cfg.TWILIO_SID,
        auth_token=cfg.TWILIO_TOKEN,
        from_number=cfg.TWILIO_FROM,
        api_url=cfg.TWILIO_API_URL,
    )

    outcomes = DispatchOutcomeLog(max_entries=cfg.OUTCOME_LOG_SIZE)
    coordinator = DispatchCoordinator(
        [broadcaster, push, sms, *extra_sinks],
        per_sink_timeout=cfg.per_sink_timeout_seconds,
        observers=[outcomes],
    )

    lifecycle = AlertLifecycle(
        store,
        coordinator,
        broadcaster,
        grace_duration=timedelta(seconds=cfg.GRACE_DURATION_SECONDS),
        default_message=cfg.DEFAULT_SOS_MESSAGE,
        **lifecycle_options,
    )

    closers: List[Callable[[], Awaitable[Any]]] = [push.aclose, sms.aclose]
    if isinstance(store, RedisAlertStore):
        closers.append(store.close)

    logger.info(
        "Alert services ready: store=%s sinks=%s timeout=%.1fs scope=%s",
        type(store).__name__,
        [s.name for s in coordinator.sinks],
        coordinator.per_sink_timeout,
        cfg.BROADCAST_SCOPE,
    )

    return AlertServices(
        store=store,
        directory=directory,
        hub=hub,
        broadcaster=broadcaster,
        coordinator=coordinator,
        lifecycle=lifecycle,
        outcomes=outcomes,
        closers=closers,
    )
