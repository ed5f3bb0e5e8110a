"""
store.py — Durable keyed storage for Alert records.

The lifecycle depends on three primitives only:

    create(alert)                                   atomic insert
    get(alert_id)                 -> Alert | None
    compare_and_update(alert_id, expected_status, mutation)
                                  -> Alert | None   conditional update

compare_and_update is the single serialization point for status
transitions. It applies ``mutation`` only if the stored status still
equals ``expected_status`` and returns None otherwise, so a racing
Cancel and Acknowledge can never both commit.

Backends:
    • InMemoryAlertStore — dict + per-alert asyncio.Lock (emulated CAS)
    • RedisAlertStore    — JSON documents, SET NX + WATCH/MULTI/EXEC
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Callable, Dict, Optional, Protocol, runtime_checkable

from backend.app.alerts.models import Alert, AlertStatus
from backend.app.core.errors import StoreUnavailable

logger = logging.getLogger(__name__)

Mutation = Callable[[Alert], Alert]


@runtime_checkable
class AlertStore(Protocol):
    """Storage contract consumed by AlertLifecycle."""

    async def create(self, alert: Alert) -> None: ...

    async def get(self, alert_id: str) -> Optional[Alert]: ...

    async def compare_and_update(
        self,
        alert_id: str,
        expected_status: AlertStatus,
        mutation: Mutation,
    ) -> Optional[Alert]: ...

    async def ping(self) -> bool: ...


# ═══════════════════════════════════════════════════════════════════════════
# In-memory backend
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryAlertStore:
    """
    Process-local store for development and tests.

    No native CAS exists here, so updates are serialised per alert id
    with an asyncio.Lock; reads take no lock.
    """

    def __init__(self) -> None:
        self._alerts: Dict[str, Alert] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, alert_id: str) -> asyncio.Lock:
        lock = self._locks.get(alert_id)
        if lock is None:
            lock = self._locks[alert_id] = asyncio.Lock()
        return lock

    async def create(self, alert: Alert) -> None:
        async with self._lock_for(alert.id):
            if alert.id in self._alerts:
                raise StoreUnavailable(f"duplicate alert id {alert.id}", alert_id=alert.id)
            self._alerts[alert.id] = alert

    async def get(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    async def compare_and_update(
        self,
        alert_id: str,
        expected_status: AlertStatus,
        mutation: Mutation,
    ) -> Optional[Alert]:
        async with self._lock_for(alert_id):
            current = self._alerts.get(alert_id)
            if current is None or current.status is not expected_status:
                return None
            updated = mutation(current)
            self._alerts[alert_id] = updated
            return updated

    async def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._alerts)


# ═══════════════════════════════════════════════════════════════════════════
# Redis backend
# ═══════════════════════════════════════════════════════════════════════════

class RedisAlertStore:
    """
    Redis-backed store using optimistic transactions.

    Each alert is one JSON string under ``{prefix}{alert_id}``.
    """

    def __init__(self, client, *, key_prefix: str = "sos:alert:") -> None:
        self._client = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, *, key_prefix: str = "sos:alert:") -> "RedisAlertStore":
        import redis.asyncio as aioredis

        client = aioredis.from_url(url, encoding="utf-8", decode_responses=True)
        logger.info("Redis alert store: %s", url.split("@")[-1])
        return cls(client, key_prefix=key_prefix)

    def _key(self, alert_id: str) -> str:
        return f"{self._prefix}{alert_id}"

    @staticmethod
    def _dump(alert: Alert) -> str:
        return json.dumps(alert.to_dict())

    @staticmethod
    def _load(raw: str) -> Alert:
        return Alert.from_dict(json.loads(raw))

    async def create(self, alert: Alert) -> None:
        from redis.exceptions import RedisError

        try:
            created = await self._client.set(self._key(alert.id), self._dump(alert), nx=True)
        except RedisError as exc:
            raise StoreUnavailable(str(exc), alert_id=alert.id) from exc
        if not created:
            raise StoreUnavailable(f"duplicate alert id {alert.id}", alert_id=alert.id)

    async def get(self, alert_id: str) -> Optional[Alert]:
        from redis.exceptions import RedisError

        try:
            raw = await self._client.get(self._key(alert_id))
        except RedisError as exc:
            raise StoreUnavailable(str(exc), alert_id=alert_id) from exc
        return self._load(raw) if raw is not None else None

    async def compare_and_update(
        self,
        alert_id: str,
        expected_status: AlertStatus,
        mutation: Mutation,
    ) -> Optional[Alert]:
        from redis.exceptions import RedisError, WatchError

        key = self._key(alert_id)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if raw is None:
                            return None
                        current = self._load(raw)
                        if current.status is not expected_status:
                            return None
                        updated = mutation(current)
                        pipe.multi()
                        pipe.set(key, self._dump(updated))
                        await pipe.execute()
                        return updated
                    except WatchError:
                        # Another writer touched the key; re-read and re-check
                        logger.debug("CAS retry for %s", alert_id)
                        continue
        except RedisError as exc:
            raise StoreUnavailable(str(exc), alert_id=alert_id) from exc

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except Exception as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis connection closed")
