"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from backend.app.core.config import settings
    print(settings.LEDGER_DIR)
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
    APP_NAME: str = "Logistics Communication Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 3000
    RELOAD: bool = True

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Retry ──
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_MS: int = 2000
    RETRY_MAX_DELAY_MS: int = 30000

    # ── Delivery ledger ──
    LEDGER_DIR: str = "./logs"
    LEDGER_RETENTION_DAYS: int = 30
    LEDGER_COMPACT_ON_STARTUP: bool = True

    # ── Default message variants per channel ──
    DEFAULT_EMAIL_TYPE: str = "transactional"
    DEFAULT_SMS_TYPE: str = "fallback"
    DEFAULT_WHATSAPP_TYPE: str = "delivery"
    DEFAULT_TELEGRAM_TYPE: str = "notification"

    # ── Transports ──
    TRANSPORT_MODE: str = "simulation"  # only simulation ships in-tree
    PROVIDER_CACHE_TTL_SECONDS: int = 300  # provider probe cache (5 min)

    # ── Reward tracker (karma events) ──
    REWARD_TRACKER_BASE_URL: Optional[str] = None
    REWARD_TRACKER_API_KEY: Optional[str] = None
    REWARD_PUBLISH_TIMEOUT_SECONDS: float = 5.0

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
