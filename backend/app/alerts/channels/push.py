"""
push.py — Push notification channel for campus subscribers.

Delivery mechanism:
    • Recipients: every device token subscribed to the broadcast scope
      (ContactDirectory.tokens_for(scope)), de-duplicated
    • Payload: notification {title, body} + data {alertId, lat, lng}
    • Provider "fcm": FCM HTTP v1, one messages:send call per token with
      an OAuth bearer token, at most MAX_CONCURRENT_SENDS in flight
    • Provider "simulation": log only, every token counts as delivered

═══════════════════════════════════════════════════════════════════════════
RESULT MAPPING
═══════════════════════════════════════════════════════════════════════════

    no tokens in scope                 → SKIPPED
    ≥1 token accepted                  → DELIVERED (per-token counts in details)
    every token rejected as invalid    → SinkFailure(INVALID_RECIPIENT)
    otherwise nothing accepted         → SinkFailure(TRANSPORT_ERROR)

    FCM v1 error codes UNREGISTERED, INVALID_ARGUMENT and
    SENDER_ID_MISMATCH mark the token itself as invalid.

Delivery by alert id is safe to repeat: the alert id is the notification
tag / collapse id, so a re-sent push replaces the earlier one on the device.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import httpx

from backend.app.alerts.directory import ContactDirectory
from backend.app.alerts.models import (
    Alert,
    DeliveryStatus,
    SinkKind,
    SinkResult,
)
from backend.app.core.errors import SinkFailure, SinkFailureKind

logger = logging.getLogger(__name__)

PROVIDERS = ("simulation", "fcm")
MAX_CONCURRENT_SENDS = 50
MAX_BODY_LENGTH = 240

# FCM v1 errorCode values that mean the token itself is bad
_INVALID_TOKEN_ERRORS = {
    "UNREGISTERED",
    "INVALID_ARGUMENT",
    "SENDER_ID_MISMATCH",
}

_FCM_ERROR_TYPE = "type.googleapis.com/google.firebase.fcm.v1.FcmError"

# Per-token outcomes
_SENT, _INVALID, _FAILED = "sent", "invalid", "failed"

TokenProvider = Callable[[], Union[str, Awaitable[str]]]


def build_push_message(alert: Alert, title: str = "Campus SOS") -> Dict[str, Any]:
    """Build the FCM v1 message for an alert, minus the target token."""
    body = f"{alert.display_name}: {alert.message}"
    if len(body) > MAX_BODY_LENGTH:
        body = body[: MAX_BODY_LENGTH - 3] + "..."
    return {
        "notification": {"title": title, "body": body},
        # FCM data values must be strings
        "data": {
            "alertId": alert.id,
            "lat": str(alert.location.latitude),
            "lng": str(alert.location.longitude),
        },
        "android": {"priority": "HIGH", "notification": {"tag": alert.id}},
        "apns": {"headers": {"apns-priority": "10", "apns-collapse-id": alert.id}},
        "webpush": {"notification": {"tag": alert.id}},
    }


def fcm_error_code(resp: httpx.Response) -> Optional[str]:
    """Extract the FCM errorCode (or the google.rpc status) from an error body."""
    try:
        error = resp.json().get("error", {})
    except ValueError:
        return None
    for detail in error.get("details", []):
        if detail.get("@type") == _FCM_ERROR_TYPE and detail.get("errorCode"):
            return detail["errorCode"]
    return error.get("status")


class PushSink:
    """Push notifications to every device subscribed to a scope."""

    kind = SinkKind.PUSH

    def __init__(
        self,
        directory: ContactDirectory,
        *,
        scope: str = "campus",
        provider: str = "simulation",
        title: str = "Campus SOS",
        project_id: Optional[str] = None,
        access_token: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        api_url: str = "https://fcm.googleapis.com/v1",
        client: Optional[httpx.AsyncClient] = None,
        name: str = "push",
    ) -> None:
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown push provider: {provider}")
        if provider == "fcm" and not project_id:
            raise ValueError("FCM provider requires a Firebase project id")
        if provider == "fcm" and not (access_token or token_provider):
            raise ValueError("FCM provider requires an access token or token provider")
        self._directory = directory
        self._scope = scope
        self._provider = provider
        self._title = title
        self._project_id = project_id
        self._access_token = access_token
        self._token_provider = token_provider
        self._api_url = api_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def scope(self) -> str:
        return self._scope

    @property
    def send_url(self) -> str:
        return f"{self._api_url}/projects/{self._project_id}/messages:send"

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def _bearer_token(self) -> str:
        if self._token_provider is None:
            return self._access_token
        token = self._token_provider()
        if inspect.isawaitable(token):
            token = await token
        return token

    async def notify(self, alert: Alert) -> SinkResult:
        start = time.perf_counter()
        tokens = sorted(set(await self._directory.tokens_for(self._scope)))

        if not tokens:
            logger.info(
                "[PUSH] No subscribers in scope %s for %s", self._scope, alert.id,
                extra={"alert_id": alert.id, "sink": self.name},
            )
            return SinkResult.skipped(self.name, f"no device tokens in scope '{self._scope}'")

        message = build_push_message(alert, self._title)

        if self._provider == "simulation":
            logger.info(
                "[PUSH] Alert %s → %d token(s) in %s: %s",
                alert.id, len(tokens), self._scope, message["notification"]["body"],
                extra={"alert_id": alert.id, "recipient_count": len(tokens)},
            )
            outcomes = [(_SENT, "")] * len(tokens)
        else:
            outcomes = await self._send_fcm(tokens, message)

        sent = sum(1 for status, _ in outcomes if status == _SENT)
        invalid = sum(1 for status, _ in outcomes if status == _INVALID)
        errors = [err for status, err in outcomes if status == _FAILED and err]

        if sent == 0:
            if invalid == len(tokens):
                raise SinkFailure(
                    SinkFailureKind.INVALID_RECIPIENT,
                    f"all {len(tokens)} push token(s) rejected",
                )
            raise SinkFailure(
                SinkFailureKind.TRANSPORT_ERROR,
                errors[0] if errors else "push provider accepted no tokens",
            )

        return SinkResult(
            sink=self.name,
            status=DeliveryStatus.DELIVERED,
            recipients=len(tokens),
            delivered=sent,
            duration_ms=(time.perf_counter() - start) * 1000,
            reason=f"{len(errors)} send error(s): {errors[0]}" if errors else None,
            details={
                "provider": self._provider,
                "scope": self._scope,
                "invalid_tokens": invalid,
                "failed_tokens": len(tokens) - sent - invalid,
            },
        )

    # ── FCM HTTP v1 ──

    async def _send_fcm(
        self, tokens: List[str], message: Dict[str, Any],
    ) -> List[Tuple[str, str]]:
        try:
            bearer = await self._bearer_token()
        except Exception as exc:
            raise SinkFailure(
                SinkFailureKind.TRANSPORT_ERROR, f"could not obtain FCM access token: {exc}",
            ) from exc

        client = self._get_client()
        headers = {"Authorization": f"Bearer {bearer}"}
        limit = asyncio.Semaphore(MAX_CONCURRENT_SENDS)

        async def send(token: str) -> Tuple[str, str]:
            async with limit:
                return await self._send_one(client, headers, token, message)

        return await asyncio.gather(*(send(t) for t in tokens))

    async def _send_one(
        self,
        client: httpx.AsyncClient,
        headers: Dict[str, str],
        token: str,
        message: Dict[str, Any],
    ) -> Tuple[str, str]:
        try:
            resp = await client.post(
                self.send_url,
                json={"message": {**message, "token": token}},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            logger.warning("[PUSH/FCM] Send to …%s failed: %s", token[-6:], exc)
            return _FAILED, str(exc) or type(exc).__name__

        if resp.status_code < 300:
            return _SENT, ""

        code = fcm_error_code(resp)
        if code in _INVALID_TOKEN_ERRORS:
            return _INVALID, f"token …{token[-6:]} rejected ({code})"
        logger.warning(
            "[PUSH/FCM] …%s → HTTP %d (%s)", token[-6:], resp.status_code, code,
        )
        return _FAILED, f"fcm HTTP {resp.status_code} ({code})"

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
