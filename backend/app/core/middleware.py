"""
Request middleware: correlation id, timing and one log line per call.

For every HTTP request:
    • X-Request-ID is taken from the caller when well-formed, else minted
    • The caller hint (Bearer subject or X-Demo-User) and any alert id in
      the path are put into the log context, so lifecycle and fan-out logs
      for that request carry them too
    • X-Request-ID and X-Process-Time are set on the response

WebSocket traffic bypasses this middleware (BaseHTTPMiddleware only sees
http scopes); the stream endpoint logs its own connects/disconnects.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

# Probes and docs are polled constantly; only failures are logged for them
_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon", "/health")

_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{8,64}$")
_ALERT_IN_PATH = re.compile(r"/alerts/(SOS-[0-9A-F]{16})(?:/|$)")


def _request_id(request: Request) -> str:
    supplied = request.headers.get("X-Request-ID", "")
    return supplied if _REQUEST_ID.match(supplied) else uuid.uuid4().hex[:16]


def _caller_hint(request: Request) -> Optional[str]:
    """Unverified caller id for log context; the routes resolve identity."""
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return request.headers.get("X-Demo-User") or None


def _alert_id(path: str) -> Optional[str]:
    match = _ALERT_IN_PATH.search(path)
    return match.group(1) if match else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Correlate, time and log each HTTP call to the dispatch API."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _request_id(request)
        path = request.url.path
        caller = _caller_hint(request)
        client_ip = request.client.host if request.client else "unknown"

        set_request_context(
            request_id=request_id,
            user_id=caller,
            alert_id=_alert_id(path),
            client_ip=client_ip,
            method=request.method,
            endpoint=path,
        )
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "%s %s crashed after %.1fms",
                request.method, path, (time.perf_counter() - start) * 1000,
                extra={"status_code": 500},
            )
            set_request_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        status = response.status_code
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        if level > logging.INFO or not path.startswith(_QUIET_PREFIXES):
            logger.log(
                level,
                "%s %s → %d (%.1fms) caller=%s",
                request.method, path, status, duration_ms, caller or "-",
                extra={"status_code": status, "request_ms": round(duration_ms, 1)},
            )

        set_request_context()
        return response
