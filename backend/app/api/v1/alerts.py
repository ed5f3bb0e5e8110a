"""
FastAPI route: SOS alert lifecycle endpoints.

Provides endpoints to:
    POST /api/v1/sos                        — raise an SOS
    POST /api/v1/sos/cancel                 — owner cancels a false alarm
    POST /api/v1/alerts/{id}/acknowledge    — responder acknowledges
    GET  /api/v1/alerts/{id}                — current alert record
    GET  /api/v1/alerts/{id}/dispatch       — latest fan-out outcome
    WS   /api/v1/alerts/stream              — alert.created / alert.updated

Caller identity comes from ``Authorization: Bearer <user id>`` or the
``X-Demo-User`` header and is trusted as given.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from backend.app.alerts.container import AlertServices
from backend.app.core.errors import NotFound, Unauthorized

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["sos"])


# ---------------------------------------------------------------------------
# Request / Response Schemas
# ---------------------------------------------------------------------------

class CreateSOSRequest(BaseModel):
    """
    Raise an SOS.

    Fields are accepted untyped so that bad coordinates are reported as
    InvalidLocation (400) by the lifecycle rather than a schema error.
    The message is free text of any length; non-string values are
    stringified by the lifecycle.
    """
    lat: Any = Field(None, description="Latitude in decimal degrees", examples=[12.34])
    lng: Any = Field(None, description="Longitude in decimal degrees", examples=[56.78])
    accuracy: Any = Field(None, description="Accuracy radius in metres", examples=[15.0])
    message: Any = Field(None, description="Free-text message", examples=["Help, library stairwell"])


class CancelSOSRequest(BaseModel):
    alertId: Optional[str] = Field(None, examples=["SOS-3A7B9C2D1E0F4A5B"])


class SOSCreatedResponse(BaseModel):
    alertId: str
    status: str


class OkResponse(BaseModel):
    ok: bool = True


class AlertResponse(BaseModel):
    """Full alert record."""
    id: str
    owner_id: str
    owner_name: Optional[str]
    location: Dict[str, Optional[float]]
    message: str
    status: str
    created_at: str
    grace_expires_at: str
    grace_remaining_seconds: float
    cancelled_at: Optional[str]
    acknowledged_by: Optional[str]
    acknowledged_at: Optional[str]


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Caller:
    id: str
    name: str


def get_caller(
    authorization: Optional[str] = Header(None),
    x_demo_user: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
) -> Caller:
    """Resolve the (already trusted) caller identity from request headers."""
    token = (authorization or "").strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    if token:
        return Caller(id=token, name=x_user_name or f"User {token}")
    if x_demo_user:
        return Caller(id=x_demo_user, name=x_user_name or "Demo User")
    raise Unauthorized("Provide a Bearer token or X-Demo-User header")


def get_services(request: Request) -> AlertServices:
    return request.app.state.services


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/sos",
    response_model=SOSCreatedResponse,
    summary="Raise an SOS alert",
    description=(
        "Persists the alert and returns immediately; broadcast, push and "
        "SMS delivery continue in the background."
    ),
)
async def create_sos(
    request: CreateSOSRequest,
    caller: Caller = Depends(get_caller),
    services: AlertServices = Depends(get_services),
):
    alert = await services.lifecycle.create(
        caller.id,
        request.lat,
        request.lng,
        accuracy=request.accuracy,
        message=request.message,
        owner_name=caller.name,
    )
    return SOSCreatedResponse(alertId=alert.id, status=alert.status.value)


@router.post(
    "/sos/cancel",
    response_model=OkResponse,
    summary="Cancel an SOS alert",
    description="Only the alert owner may cancel, and only while it is active.",
)
async def cancel_sos(
    request: CancelSOSRequest,
    caller: Caller = Depends(get_caller),
    services: AlertServices = Depends(get_services),
):
    if not request.alertId:
        raise HTTPException(status_code=400, detail="Missing alertId")
    await services.lifecycle.cancel(request.alertId, caller.id)
    return OkResponse()


@router.post(
    "/alerts/{alert_id}/acknowledge",
    response_model=OkResponse,
    summary="Acknowledge an SOS alert",
)
async def acknowledge_alert(
    alert_id: str,
    caller: Caller = Depends(get_caller),
    services: AlertServices = Depends(get_services),
):
    await services.lifecycle.acknowledge(alert_id, caller.id)
    return OkResponse()


@router.get(
    "/alerts/{alert_id}",
    response_model=AlertResponse,
    summary="Get an alert",
)
async def get_alert(
    alert_id: str,
    caller: Caller = Depends(get_caller),
    services: AlertServices = Depends(get_services),
):
    alert = await services.lifecycle.get(alert_id)
    return AlertResponse(
        **alert.to_dict(),
        grace_remaining_seconds=alert.grace_remaining().total_seconds(),
    )


@router.get(
    "/alerts/{alert_id}/dispatch",
    summary="Get the latest fan-out outcome for an alert",
)
async def get_dispatch_outcome(
    alert_id: str,
    caller: Caller = Depends(get_caller),
    services: AlertServices = Depends(get_services),
):
    outcome = services.outcomes.get(alert_id)
    if outcome is None:
        raise NotFound("DispatchOutcome", alert_id=alert_id)
    return outcome.to_dict()


# ---------------------------------------------------------------------------
# Real-time stream
# ---------------------------------------------------------------------------

async def _pump_events(websocket: WebSocket, queue: "asyncio.Queue") -> None:
    while True:
        event = await queue.get()
        await websocket.send_json(event.to_dict())


@router.websocket("/alerts/stream")
async def alert_stream(websocket: WebSocket):
    """Push every alert.created / alert.updated event to the client."""
    services: AlertServices = websocket.app.state.services

    # Subscribe before accepting so no event between handshake and loop is lost
    async with services.hub.subscribe() as queue:
        await websocket.accept()
        sender = asyncio.create_task(_pump_events(websocket, queue))
        try:
            while True:
                # Inbound frames are ignored; this only detects disconnects
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("Stream subscriber disconnected")
        finally:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)

