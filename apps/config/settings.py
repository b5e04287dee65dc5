# apps/config/settings.py
"""
Application settings with Pydantic v2 BaseSettings.

Environment variables with CAMPMETER_ prefix.
"""
from __future__ import annotations

from pydantic import Field

from apps.common.pydantic_compat import BaseSettings


class Settings(BaseSettings):
    """Utility metering settings."""

    # Core
    ENV: str = Field(default="dev", description="Environment: dev, staging, prod")
    LOG_LEVEL: str = "INFO"

    # Record store
    STORE_BACKEND: str = Field(default="memory", description="memory|sqlite")
    SQLITE_PATH: str = "var/metering/campmeter.sqlite"

    # Per-meter serialization
    LOCK_TIMEOUT_SEC: float = Field(default=5.0, gt=0)
    CONFLICT_RETRIES: int = Field(default=3, ge=0)
    BACKOFF_BASE_MS: int = Field(default=20, ge=1)
    BACKOFF_MAX_MS: int = Field(default=500, ge=1)

    # Seeding
    SEED_MAX_WORKERS: int = Field(default=4, ge=1, le=64)

    # Defaults inheritance
    SYSTEM_DEFAULTS_PATH: str = "configs/metering/system_defaults.yaml"

    # Read-only collaborators loaded at startup (skipped when the file is absent)
    SITE_DIRECTORY_PATH: str = "configs/metering/sites.yaml"
    RATE_PLANS_PATH: str = "configs/metering/rate_plans.yaml"

    def is_prod(self) -> bool:
        """Check if running in production."""
        return self.ENV.lower() == "prod"


# Singleton instance
settings = Settings()


__all__ = ['Settings', 'settings']
