"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Nested BaseSettings don't inherit env_file, so populate os.environ up front.
if _env_file and os.getenv("TESTING", "").lower() != "true":
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class PolicySpec(BaseModel):
    """Quota policy as written in configuration.

    Limits are checked by the config registry at registration time, so a bad
    value surfaces as ConfigError rather than a settings validation error.
    """

    max_requests: int
    window_ms: int


def _default_policies() -> dict[str, PolicySpec]:
    minute = 60 * 1000
    hour = 60 * minute
    return {
        "auth:signin": PolicySpec(max_requests=5, window_ms=15 * minute),
        "auth:signup": PolicySpec(max_requests=3, window_ms=hour),
        "events:create": PolicySpec(max_requests=10, window_ms=hour),
        "events:rsvp": PolicySpec(max_requests=50, window_ms=hour),
        "messages:send": PolicySpec(max_requests=100, window_ms=hour),
        "games:search": PolicySpec(max_requests=200, window_ms=hour),
    }


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    api_key_required: bool = Field(
        True,
        description="Whether API key authentication is required for admin routes",
    )
    api_keys: str | None = Field(
        None,
        description="Comma-separated list of valid API keys for authentication",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class AdmissionSettings(BaseSettings):
    """Admission control configuration."""

    enabled: bool = Field(
        True,
        description="Enforce admission decisions on guarded routes",
    )
    fail_open: bool = Field(
        True,
        description="Admit operations with no registered policy (False denies them)",
    )
    trust_subject_header: bool = Field(
        False,
        description=(
            "Count requests against the X-Subject-ID header. Enable only when a "
            "trusted proxy sets it; clients can otherwise choose their own quota"
        ),
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers when throttling",
    )
    retention_grace_ms: int = Field(
        60_000,
        description="How long an expired counter is kept before it may be swept",
        ge=0,
    )
    sweep_interval_ms: int | None = Field(
        60_000,
        description="Minimum gap between opportunistic sweeps; null disables them",
        ge=0,
    )
    policies: dict[str, PolicySpec] = Field(
        default_factory=_default_policies,
        description="JSON mapping of operation name to {max_requests, window_ms}",
    )

    model_config = SettingsConfigDict(
        env_prefix="ADMISSION_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="json or plain")
    output: str = Field("stdout", description="stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int | None = Field(
        10 * 1024 * 1024,
        description="Rotate the log file at this size; null disables rotation",
    )
    backup_count: int = Field(5, description="Rotated files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header carrying the correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Raises validation errors on startup if a setting is malformed.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=AppSettings)
    admission: AdmissionSettings = Field(default_factory=AdmissionSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


settings = Settings()
