"""
sms.py — SMS to the alert owner's emergency contacts.

Delivery mechanism:
    • Recipients: ContactDirectory.contacts_for(owner_id)
    • Numbers must be E.164 (+<country><number>); anything else is an
      invalid recipient and is never sent
    • Provider "twilio": one REST call per contact, sent concurrently
    • Provider "simulation": log only

═══════════════════════════════════════════════════════════════════════════
MESSAGE TEMPLATE
═══════════════════════════════════════════════════════════════════════════

    "SOS from {name}: https://maps.google.com/?q={lat},{lng}
     - Please contact emergency services if needed."

The map link is never truncated; a long display name is.

═══════════════════════════════════════════════════════════════════════════
RESULT MAPPING
═══════════════════════════════════════════════════════════════════════════

    no contacts on file              → SKIPPED (zero deliveries, not an error)
    ≥1 contact accepted              → DELIVERED (counts in details)
    every contact invalid            → SinkFailure(INVALID_RECIPIENT)
    otherwise nothing accepted       → SinkFailure(TRANSPORT_ERROR)
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Optional, Tuple

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

PROVIDERS = ("simulation", "twilio")
MAX_NAME_LENGTH = 40

_E164 = re.compile(r"^\+[1-9]\d{6,14}$")

# Twilio error codes meaning the destination number is unusable
_TWILIO_INVALID_TO = {21211, 21214, 21217, 21612, 21614}

# Per-contact outcomes
_SENT, _INVALID, _FAILED = "sent", "invalid", "failed"


def is_valid_phone(phone: str) -> bool:
    return bool(_E164.match(phone))


def format_sms(alert: Alert) -> str:
    """Render the SMS body for an alert."""
    name = alert.display_name
    if len(name) > MAX_NAME_LENGTH:
        name = name[: MAX_NAME_LENGTH - 3] + "..."
    loc = alert.location
    return (
        f"SOS from {name}: https://maps.google.com/?q={loc.latitude},{loc.longitude}"
        f" - Please contact emergency services if needed."
    )


def _mask(phone: str) -> str:
    if len(phone) <= 4:
        return phone
    return "*" * (len(phone) - 4) + phone[-4:]


class SmsSink:
    """SMS fan-out to emergency contacts of the alert owner."""

    kind = SinkKind.SMS

    def __init__(
        self,
        directory: ContactDirectory,
        *,
        provider: str = "simulation",
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        api_url: str = "https://api.twilio.com/2010-04-01",
        client: Optional[httpx.AsyncClient] = None,
        name: str = "sms",
    ) -> None:
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown SMS provider: {provider}")
        if provider == "twilio" and not (account_sid and auth_token and from_number):
            raise ValueError("Twilio provider requires account SID, auth token and sender number")
        self._directory = directory
        self._provider = provider
        self._sid = account_sid
        self._token = auth_token
        self._from = from_number
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

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10.0)
        return self._client

    async def notify(self, alert: Alert) -> SinkResult:
        start = time.perf_counter()
        contacts = sorted(set(await self._directory.contacts_for(alert.owner_id)))

        if not contacts:
            logger.info(
                "[SMS] No emergency contacts for %s (alert %s)", alert.owner_id, alert.id,
                extra={"alert_id": alert.id, "owner_id": alert.owner_id},
            )
            return SinkResult.skipped(self.name, "no emergency contacts on file")

        body = format_sms(alert)
        outcomes = await asyncio.gather(
            *(self._send_one(alert, phone, body) for phone in contacts)
        )

        sent = sum(1 for status, _ in outcomes if status == _SENT)
        invalid = sum(1 for status, _ in outcomes if status == _INVALID)
        errors = [err for status, err in outcomes if status == _FAILED and err]

        if sent == 0:
            if invalid == len(contacts):
                raise SinkFailure(
                    SinkFailureKind.INVALID_RECIPIENT,
                    f"all {len(contacts)} contact number(s) invalid",
                )
            raise SinkFailure(
                SinkFailureKind.TRANSPORT_ERROR,
                errors[0] if errors else "SMS provider accepted no messages",
            )

        return SinkResult(
            sink=self.name,
            status=DeliveryStatus.DELIVERED,
            recipients=len(contacts),
            delivered=sent,
            duration_ms=(time.perf_counter() - start) * 1000,
            reason=errors[0] if errors else None,
            details={
                "provider": self._provider,
                "invalid_recipients": invalid,
                "failed_recipients": len(contacts) - sent - invalid,
                "message_length": len(body),
            },
        )

    async def _send_one(self, alert: Alert, phone: str, body: str) -> Tuple[str, str]:
        if not is_valid_phone(phone):
            logger.warning("[SMS] Invalid contact number %r for %s", phone, alert.owner_id)
            return _INVALID, f"invalid number {phone!r}"

        if self._provider == "simulation":
            logger.info(
                "[SMS] Alert %s → %s: %d chars", alert.id, _mask(phone), len(body),
                extra={"alert_id": alert.id, "sink": self.name},
            )
            return _SENT, ""

        return await self._send_twilio(phone, body)

    async def _send_twilio(self, phone: str, body: str) -> Tuple[str, str]:
        url = f"{self._api_url}/Accounts/{self._sid}/Messages.json"
        try:
            resp = await self._get_client().post(
                url,
                data={"To": phone, "From": self._from, "Body": body},
                auth=(self._sid, self._token),
            )
        except httpx.HTTPError as exc:
            logger.warning("[SMS/Twilio] Send to %s failed: %s", _mask(phone), exc)
            return _FAILED, str(exc) or type(exc).__name__

        if resp.status_code < 300:
            return _SENT, ""

        code = None
        try:
            code = resp.json().get("code")
        except ValueError:
            pass
        if code in _TWILIO_INVALID_TO:
            return _INVALID, f"twilio rejected {_mask(phone)} (code {code})"
        logger.warning(
            "[SMS/Twilio] %s → HTTP %d (code %s)", _mask(phone), resp.status_code, code,
        )
        return _FAILED, f"twilio HTTP {resp.status_code}"

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
