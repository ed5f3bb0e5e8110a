"""
Health check aggregation — deep health probe for the dispatch service.

Checks:
    • Alert store reachability (ping)
    • Notification sink configuration (provider per channel)
    • Background fan-out backlog and live stream subscribers

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

from backend.app.alerts.container import AlertServices
from backend.app.core.config import settings

logger = logging.getLogger(__name__)

# Background fan-outs beyond this count mark the service degraded
MAX_HEALTHY_BACKLOG = 100


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


async def check_store(services: AlertServices) -> ComponentHealth:
    """An unreachable store means no SOS can be recorded."""
    comp = ComponentHealth(name="alert_store")
    start = time.monotonic()
    reachable = await services.store.ping()
    comp.status = HealthStatus.HEALTHY if reachable else HealthStatus.UNHEALTHY
    comp.message = "Store reachable" if reachable else "Store ping failed"
    comp.details = {"backend": type(services.store).__name__}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_sinks(services: AlertServices) -> ComponentHealth:
    """Report which providers back each sink; simulation is degraded in production."""
    comp = ComponentHealth(name="notification_sinks")
    start = time.monotonic()

    providers = {
        sink.name: getattr(sink, "provider", "in_process")
        for sink in services.coordinator.sinks
    }
    simulated = sorted(n for n, p in providers.items() if p == "simulation")

    if simulated and settings.is_production:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Simulated sinks in production: {', '.join(simulated)}"
    else:
        comp.message = f"{len(providers)} sink(s) registered"
    comp.details = {
        "providers": providers,
        "per_sink_timeout_s": services.coordinator.per_sink_timeout,
    }
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_dispatch(services: AlertServices) -> ComponentHealth:
    comp = ComponentHealth(name="dispatch")
    pending = services.coordinator.pending
    if pending > MAX_HEALTHY_BACKLOG:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"{pending} fan-outs in flight"
    comp.details = {
        "pending_fanouts": pending,
        "stream_subscribers": services.hub.subscriber_count,
        "recorded_outcomes": len(services.outcomes),
    }
    return comp


async def run_health_check(services: AlertServices) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    for check in (check_store, check_sinks, check_dispatch):
        report.components.append(await check(services))

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
