"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Services & routers ──
from backend.app.alerts.container import AlertServices, build_alert_services
from backend.app.api.v1.alerts import router as alert_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(services: Optional[AlertServices] = None) -> FastAPI:
    """
    Build the application.

    ``services`` replaces the settings-driven service graph (tests,
    embedding); it is closed on shutdown either way.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        app.state.services = services or build_alert_services(settings)
        yield
        logger.info("Shutting down %s", settings.APP_NAME)
        await app.state.services.aclose()

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Emergency SOS dispatch: durable alert recording, real-time "
            "broadcast to live subscribers, push and SMS fan-out with "
            "per-channel failure isolation, and owner cancellation / "
            "responder acknowledgment with compare-and-set transitions."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_error_handlers(app)
    app.include_router(alert_router)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "grace_duration_seconds": settings.GRACE_DURATION_SECONDS,
            "broadcast_scope": settings.BROADCAST_SCOPE,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — checks all subsystems."""
        report = await run_health_check(app.state.services)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness probe — can we record alerts?"""
        report = await run_health_check(app.state.services)
        if report.status is HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
