"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from backend.app.core.config import settings
    print(settings.GRACE_DURATION_SECONDS)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "Campus SOS Dispatch"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:19006",  # Expo web
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Alert lifecycle ──
    GRACE_DURATION_SECONDS: float = 30.0  # advisory cancel window
    DEFAULT_SOS_MESSAGE: str = "SOS — help needed"

    # ── Fan-out ──
    PER_SINK_TIMEOUT_MS: int = 3000
    BROADCAST_SCOPE: str = "campus"
    EVENT_QUEUE_SIZE: int = 100  # per real-time subscriber
    OUTCOME_LOG_SIZE: int = 1000  # recent dispatch outcomes kept in memory

    # ── Alert store ──
    STORE_BACKEND: str = "memory"  # memory | redis
    REDIS_URL: str = "redis://localhost:6379/0"
    ALERT_KEY_PREFIX: str = "sos:alert:"

    # ── SMS (emergency contacts) ──
    SMS_PROVIDER: str = "simulation"  # simulation | twilio
    TWILIO_SID: Optional[str] = None
    TWILIO_TOKEN: Optional[str] = None
    TWILIO_FROM: Optional[str] = None
    TWILIO_API_URL: str = "https://api.twilio.com/2010-04-01"

    # ── Push (campus subscribers) ──
    PUSH_PROVIDER: str = "simulation"  # simulation | fcm
    PUSH_TITLE: str = "Campus SOS"
    FCM_PROJECT_ID: Optional[str] = None
    FCM_ACCESS_TOKEN: Optional[str] = None  # OAuth2 token with firebase.messaging scope
    FCM_API_URL: str = "https://fcm.googleapis.com/v1"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def per_sink_timeout_seconds(self) -> float:
        return self.PER_SINK_TIMEOUT_MS / 1000.0


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
