"""
Tests for application configuration and settings validation.
"""

import os
import pytest
from unittest.mock import patch


def test_settings_loads_defaults():
    """Settings should load with sensible defaults in development."""
    from adops.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.environment == "development"
        assert settings.is_production is False
        assert settings.scheduler_tick_seconds == 60
        assert settings.backoff_max_attempts == 5
        assert settings.backoff_base_delay_ms == 1000
        assert settings.default_sync_frequency == "every_2_hours"
        get_settings.cache_clear()


def test_plain_postgres_url_is_rewritten_for_asyncpg():
    from adops.config import Settings
    settings = Settings(database_url="postgresql://user:pw@db.example.com:5432/adops")
    assert settings.database_url.startswith("postgresql+asyncpg://")


def test_settings_cors_origin_list():
    """CORS origins string should be split into a list."""
    from adops.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
        "CORS_ORIGINS": "http://localhost:3000, http://example.com",
    }, clear=False):
        get_settings.cache_clear()
        origins = get_settings().cors_origin_list
        assert len(origins) == 2
        assert "http://localhost:3000" in origins
        assert "http://example.com" in origins
        get_settings.cache_clear()


def test_production_requires_api_key():
    """Production mode should refuse to start without an API key."""
    from adops.config import Settings

    with pytest.raises(ValueError, match="API_KEY must be set"):
        Settings(
            environment="production",
            api_key="",
            encryption_key="x" * 44,
            database_url="postgresql+asyncpg://prod-host/db",
        )


def test_production_requires_encryption_key():
    from adops.config import Settings

    with pytest.raises(ValueError, match="ENCRYPTION_KEY must be set"):
        Settings(
            environment="production",
            api_key="a-real-api-key",
            encryption_key="",
            database_url="postgresql+asyncpg://prod-host/db",
        )


def test_production_accepts_real_secrets():
    from adops.config import Settings
    settings = Settings(
        environment="production",
        api_key="a-real-api-key",
        encryption_key="x" * 44,
        database_url="postgresql+asyncpg://prod-host/db",
    )
    assert settings.is_production is True


def test_backoff_attempts_must_be_positive():
    from adops.config import Settings

    with pytest.raises(ValueError, match="BACKOFF_MAX_ATTEMPTS"):
        Settings(backoff_max_attempts=0)
