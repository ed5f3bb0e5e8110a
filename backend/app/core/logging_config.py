"""
Structured logging configuration for the dispatch service.

Provides:
    • JSON lines in production, grouped into request / alert / delivery blocks
    • Coloured one-line console output in development with an alert/sink tail
    • Log context carried in a ContextVar, so a background fan-out task
      inherits the request_id and caller of the request that created it

═══════════════════════════════════════════════════════════════════════════
FIELD GROUPS
═══════════════════════════════════════════════════════════════════════════

    request    request_id, user_id, client_ip, method, endpoint  (context)
    alert      alert_id, owner_id, alert_status                  (extra=)
    delivery   sink, sink_kind, status, failure, recipient_count,
               duration_ms                                       (extra=)
    http       status_code, request_ms                           (extra=)

Usage:
    from backend.app.core.logging_config import setup_logging, log_context

    setup_logging()
    with log_context(alert_id=alert.id):
        logger.info("Fan-out started")
    logger.warning("Sink failed", extra={"alert_id": alert.id, "sink": "sms"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from backend.app.core.config import settings

_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

_ALERT_FIELDS = ("alert_id", "owner_id", "alert_status")
_DELIVERY_FIELDS = ("sink", "sink_kind", "status", "failure", "recipient_count", "duration_ms")
_HTTP_FIELDS = ("status_code", "request_ms")


# ── Context ──

def set_request_context(**fields: Any) -> None:
    """Replace the log context (middleware entry point); no args clears it."""
    _log_context.set({k: v for k, v in fields.items() if v not in (None, "")})


def get_request_context() -> Dict[str, Any]:
    return _log_context.get()


@contextmanager
def log_context(**fields: Any) -> Iterator[Dict[str, Any]]:
    """Add fields to the log context for the duration of the block."""
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


def _collect(record: logging.LogRecord, names, ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Record extras win over context values of the same name."""
    group = {}
    for name in names:
        if hasattr(record, name):
            group[name] = getattr(record, name)
        elif name in ctx:
            group[name] = ctx[name]
    return {k: v for k, v in group.items() if v is not None}


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """One JSON object per line for the log pipeline."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_request_context()
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "src": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        request = {k: v for k, v in ctx.items() if k not in _ALERT_FIELDS + _DELIVERY_FIELDS}
        for key, group in (
            ("request", request),
            ("alert", _collect(record, _ALERT_FIELDS, ctx)),
            ("delivery", _collect(record, _DELIVERY_FIELDS, ctx)),
            ("http", _collect(record, _HTTP_FIELDS, {})),
        ):
            if group:
                entry[key] = group

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = {
                "type": type(exc).__name__,
                "message": str(exc),
                "trace": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """
    Coloured console line:

        12:00:01 WARNING  [3fa2c1d0] <u1> backend.app.alerts.dispatch: Sink sms → failed
            {alert=SOS-3A7B… sink=sms failure=timeout 3001ms}
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    DIM = "\033[2m"

    def _tail(self, record: logging.LogRecord, ctx: Dict[str, Any]) -> str:
        alert = _collect(record, _ALERT_FIELDS, ctx)
        delivery = _collect(record, _DELIVERY_FIELDS, ctx)
        parts = []
        if "alert_id" in alert:
            parts.append(f"alert={alert['alert_id']}")
        if "sink" in delivery:
            parts.append(f"sink={delivery['sink']}")
        if "failure" in delivery:
            parts.append(f"failure={delivery['failure']}")
        if "recipient_count" in delivery:
            parts.append(f"recipients={delivery['recipient_count']}")
        if isinstance(delivery.get("duration_ms"), (int, float)):
            parts.append(f"{delivery['duration_ms']:.0f}ms")
        return f" {self.DIM}{{{' '.join(parts)}}}{self.RESET}" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        ctx = get_request_context()

        prefix = ""
        if ctx.get("request_id"):
            prefix += f" [{str(ctx['request_id'])[:8]}]"
        if ctx.get("user_id"):
            prefix += f" <{ctx['user_id']}>"

        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{prefix} {record.name}: {record.getMessage()}{self._tail(record, ctx)}"
        )

        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


# ── Setup ──

def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Install one stdout handler on the root logger."""
    root = logging.getLogger()
    level_name = (level or settings.LOG_LEVEL).upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    use_json = settings.is_production if json_output is None else json_output
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter())
    root.addHandler(handler)

    # Provider clients log every request at INFO
    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
