"""
Settings for the sync scheduler backend, read from the environment / .env.
"""

import logging
from functools import lru_cache

from pydantic import ConfigDict, field_validator, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

_DEFAULT_CORS = ["http://localhost:5173", "http://localhost:3000"]


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"  # "development" or "production"

    # ── Storage & secrets ────────────────────────────────────────────
    database_url: str = "postgresql+asyncpg://localhost/adops"
    encryption_key: str = ""  # Fernet key for credential secrets

    # ── API ──────────────────────────────────────────────────────────
    api_key: str = ""  # Bearer key for /api; empty disables auth in development only
    cors_origins: str = ",".join(_DEFAULT_CORS)

    # ── Amazon Ads MCP ───────────────────────────────────────────────
    mcp_region: str = "na"  # used when a credential has no region

    # ── Sync scheduler ───────────────────────────────────────────────
    scheduler_enabled: bool = True
    scheduler_tick_seconds: int = 60
    scheduler_error_history: int = 10
    default_sync_frequency: str = "every_2_hours"

    # ── Remote call retry (HTTP 429) ─────────────────────────────────
    backoff_max_attempts: int = 5
    backoff_base_delay_ms: int = 1000

    # ── Keyword auto-execution ───────────────────────────────────────
    keyword_execution_interval_minutes: int = 1440

    @field_validator("database_url")
    @classmethod
    def _use_asyncpg_driver(cls, url: str) -> str:
        # Hosted Postgres hands out postgresql:// URLs
        if url.startswith("postgresql://"):
            return "postgresql+asyncpg://" + url[len("postgresql://"):]
        return url

    @model_validator(mode="after")
    def _check(self) -> "Settings":
        if self.is_production:
            missing = [
                name for name, value in (("API_KEY", self.api_key), ("ENCRYPTION_KEY", self.encryption_key))
                if not value
            ]
            if missing:
                raise ValueError(
                    f"{' and '.join(missing)} must be set in production. "
                    "API_KEY: python -c \"import secrets; print(secrets.token_hex(32))\"; "
                    "ENCRYPTION_KEY: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if "localhost" in self.database_url:
                logger.warning("DATABASE_URL points at localhost in production.")
        for name, value in (
            ("BACKOFF_MAX_ATTEMPTS", self.backoff_max_attempts),
            ("SCHEDULER_TICK_SECONDS", self.scheduler_tick_seconds),
            ("SCHEDULER_ERROR_HISTORY", self.scheduler_error_history),
        ):
            if value < 1:
                raise ValueError(f"{name} must be at least 1.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()] or list(_DEFAULT_CORS)


@lru_cache
def get_settings() -> Settings:
    return Settings()
