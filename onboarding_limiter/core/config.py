"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Onboarding thresholds are resolved once at process startup and are
immutable afterwards (the settings model is frozen).
"""

from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BLOCK_DURATION_MINUTES = 15

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _positive_int_or_default(value: Any, default: int) -> int:
    """Coerce an environment value to a positive int, falling back to default.

    Args:
        value: Raw value (usually a string from the environment).
        default: Value used when the input is unset, non-numeric or < 1.

    Returns:
        Parsed positive integer or the default.
    """

    if value is None or isinstance(value, bool):
        return default
    try:
        parsed = int(str(value).strip(), 10)
    except ValueError:
        return default
    return parsed if parsed >= 1 else default


def _build_onboard_settings() -> "OnboardSettings":
    """Build onboarding settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat required fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return OnboardSettings()  # type: ignore[call-arg]


def _build_store_settings() -> "StoreSettings":
    """Build store settings from environment."""

    return StoreSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    """Build log settings from environment."""

    return LogSettings()  # type: ignore[call-arg]


class OnboardSettings(BaseSettings):
    """Onboarding rate limit configuration.

    Both thresholds fall back to their defaults when the variable is unset
    or not a positive integer, instead of failing startup.
    """

    max_attempts: int = Field(
        DEFAULT_MAX_ATTEMPTS,
        description="Failed onboarding attempts allowed before blocking",
    )
    block_duration_minutes: int = Field(
        DEFAULT_BLOCK_DURATION_MINUTES,
        description="How long a block lasts once triggered, in minutes",
    )
    key_prefix: str = Field(
        "onboard",
        description="Namespace prefix for per-chat record keys",
        min_length=1,
    )
    atomic_updates: bool = Field(
        False,
        description="Use compare-and-set writes instead of get-then-write",
    )
    cas_max_retries: int = Field(
        5,
        description="Compare-and-set attempts before giving up (atomic mode only)",
        ge=1,
    )
    extend_block_on_retry: bool = Field(
        False,
        description="Restart the block window on every failure while blocked",
    )
    fail_open: bool = Field(
        True,
        description="Allow onboarding when the store cannot be consulted",
    )

    model_config = SettingsConfigDict(
        env_prefix="ONBOARD_",
        case_sensitive=False,
        frozen=True,
    )

    @field_validator("max_attempts", mode="before")
    @classmethod
    def _coerce_max_attempts(cls, value: Any) -> int:
        return _positive_int_or_default(value, DEFAULT_MAX_ATTEMPTS)

    @field_validator("block_duration_minutes", mode="before")
    @classmethod
    def _coerce_block_duration(cls, value: Any) -> int:
        return _positive_int_or_default(value, DEFAULT_BLOCK_DURATION_MINUTES)

    @property
    def block_duration(self) -> timedelta:
        return timedelta(minutes=self.block_duration_minutes)


class StoreSettings(BaseSettings):
    """Shared record store configuration."""

    backend: Literal["memory", "redis"] = Field(
        "memory",
        description="Store backend (memory for single-process dev/tests, redis for shared state)",
    )
    redis_url: str | None = Field(
        None,
        description="Redis connection URL (required when backend=redis)",
    )
    collection: str = Field(
        "rate_limits",
        description="Collection/namespace that holds rate limit records",
        min_length=1,
    )
    timeout_seconds: float = Field(
        5.0,
        description="Store request timeout in seconds",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: Literal["json", "plain"] = Field("json", description="Log output format")
    output: Literal["stdout", "file"] = Field("stdout", description="Log destination")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        0,
        description="Rotate the log file at this size (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated files to keep", ge=0)

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.

    Environments:
    - development: Local development
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    onboard: OnboardSettings = Field(default_factory=_build_onboard_settings)
    store: StoreSettings = Field(default_factory=_build_store_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
