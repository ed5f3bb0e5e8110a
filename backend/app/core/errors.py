"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Lifecycle exception classes (surfaced synchronously to callers)
    • SinkFailure for notification channels (recorded, never surfaced)
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

Usage:
    from backend.app.core.errors import (
        NotFound,
        Forbidden,
        InvalidState,
        register_error_handlers,
    )

    raise NotFound("Alert", alert_id="SOS-3A7B")

HTTP mapping:

    InvalidLocation     400
    Unauthorized        401
    Forbidden           403
    NotFound            404
    InvalidState        409
    Conflict            409
    StoreUnavailable    500
"""

from __future__ import annotations

import logging
import traceback
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class SOSDispatchError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class InvalidLocation(SOSDispatchError):
    """Latitude/longitude/accuracy missing, non-numeric or out of range (400)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=400,
            error_code="INVALID_LOCATION",
            details=d,
        )


class Unauthorized(SOSDispatchError):
    """No caller identity supplied (401)."""

    def __init__(self, message: str = "Caller identity required"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHORIZED",
        )


class Forbidden(SOSDispatchError):
    """Caller is not allowed to perform this transition (403)."""

    def __init__(self, message: str = "Not allowed", **details: Any):
        super().__init__(
            message=message,
            status_code=403,
            error_code="FORBIDDEN",
            details=details,
        )


class NotFound(SOSDispatchError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class InvalidState(SOSDispatchError):
    """Transition requested on an alert that is no longer active (409)."""

    def __init__(self, alert_id: str, status: str):
        super().__init__(
            message=f"Alert {alert_id} is {status}, not active",
            status_code=409,
            error_code="INVALID_STATE",
            details={"alert_id": alert_id, "status": status},
        )


class Conflict(SOSDispatchError):
    """Compare-and-set lost to a concurrent writer (409)."""

    def __init__(self, alert_id: str, message: str = ""):
        super().__init__(
            message=message or f"Alert {alert_id} was modified concurrently",
            status_code=409,
            error_code="CONFLICT",
            details={"alert_id": alert_id},
        )


class StoreUnavailable(SOSDispatchError):
    """Alert persistence failed (500)."""

    def __init__(self, message: str = "", **details: Any):
        super().__init__(
            message=f"Alert store unavailable: {message}" if message else "Alert store unavailable",
            status_code=500,
            error_code="STORE_UNAVAILABLE",
            details=details,
        )


class SinkFailureKind(str, Enum):
    """Why a notification sink failed to deliver."""
    TIMEOUT           = "timeout"
    TRANSPORT_ERROR   = "transport_error"
    INVALID_RECIPIENT = "invalid_recipient"


class SinkFailure(SOSDispatchError):
    """
    A notification channel could not deliver.

    Raised by sinks, caught by the dispatch coordinator and recorded in
    the DispatchOutcome. Never reaches an HTTP caller.
    """

    def __init__(self, kind: SinkFailureKind, reason: str = "", **details: Any):
        super().__init__(
            message=reason or kind.value,
            status_code=502,
            error_code="SINK_FAILURE",
            details={"kind": kind.value, **details},
        )
        self.kind = kind
        self.reason = reason or kind.value


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(SOSDispatchError)
    async def handle_dispatch_error(request: Request, exc: SOSDispatchError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(
            500, "INTERNAL_ERROR", message, request=request,
        )
