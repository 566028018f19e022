"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Rule tables and whitelists are read as JSON from the environment, e.g.::

    THROTTLE_IP_RULES='{"192.168.0.0/24": {"per_second": 2}}'
    THROTTLE_CLIENT_WHITELIST='["admin-key"]'
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from apithrottle.schemas.policy import RateLimits


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

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
# and never under the test suite, which sets TESTING before importing settings
_env_file = str(_env_path) if _env_path.is_file() and not os.getenv("TESTING") else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_app_settings() -> "AppSettings":
    # values come from APP_* variables, not constructor arguments
    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


def _build_throttle_settings() -> "ThrottleSettings":
    return ThrottleSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    api_key_required: bool = Field(
        True,
        description="Whether API key authentication is required for policy management",
    )
    api_keys: str | None = Field(
        None,
        description="Comma-separated list of valid admin API keys",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: Literal["json", "plain"] = Field(
        "json",
        description="json for machine-readable lines, plain for local development",
    )
    output: Literal["stdout", "file"] = Field("stdout", description="Log destination")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Rotated log files to keep", ge=0)
    throttle_level: str | None = Field(
        None,
        description="Level of the blocked-request logger (defaults to the root level)",
    )
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read and echo the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class ThrottleSettings(BaseSettings):
    """Rate limiting policy and runtime configuration."""

    enabled: bool = Field(True, description="Master switch for request throttling")

    per_second: int | None = Field(None, ge=0, description="Default limit per second")
    per_minute: int | None = Field(None, ge=0, description="Default limit per minute")
    per_hour: int | None = Field(None, ge=0, description="Default limit per hour")
    per_day: int | None = Field(None, ge=0, description="Default limit per day")
    per_week: int | None = Field(None, ge=0, description="Default limit per week")

    ip_throttling: bool = Field(True, description="Count requests per client IP")
    client_throttling: bool = Field(False, description="Count requests per client key")
    endpoint_throttling: bool = Field(False, description="Count requests per endpoint")
    stack_blocked_requests: bool = Field(
        False,
        description="Count blocked requests against every window (widest first)",
    )

    ip_rules: dict[str, RateLimits] = Field(default_factory=dict)
    client_rules: dict[str, RateLimits] = Field(default_factory=dict)
    endpoint_rules: dict[str, RateLimits] = Field(default_factory=dict)
    route_rules: dict[str, RateLimits] = Field(default_factory=dict)

    ip_whitelist: list[str] = Field(default_factory=list)
    client_whitelist: list[str] = Field(default_factory=list)
    endpoint_whitelist: list[str] = Field(default_factory=list)

    application_name: str = Field(
        "",
        description="Global prefix for throttle counter and policy keys",
    )
    throttle_key: str = Field("throttle", description="Counter key prefix")
    policy_key: str = Field("throttle_policy", description="Policy key suffix")

    store_backend: Literal["memory", "redis"] = Field(
        "memory",
        description="Where counters and the active policy are kept",
    )
    redis_url: str = Field("redis://localhost:6379/0", description="Redis connection URL")
    redis_namespace: str = Field(
        "throttle",
        description="Prefix for counter keys so clear() only touches throttle data",
    )

    client_key_header: str = Field(
        "Authorization-Token",
        description="Header carrying the client key (anon when absent)",
    )
    trust_forwarded_for: bool = Field(
        False,
        description="Resolve the client IP from X-Forwarded-For (behind a proxy)",
    )
    store_timeout_seconds: float = Field(
        2.0,
        gt=0,
        description="Upper bound for one evaluation; a timeout counts as a store failure",
    )
    fail_open: bool = Field(
        True,
        description="Allow requests when the counter store is unavailable",
    )
    include_headers: bool = Field(
        True,
        description="Include Retry-After and X-RateLimit-* headers when throttling",
    )
    quota_exceeded_message: str = Field(
        "API calls quota exceeded! maximum admitted {limit} per {period}.",
        description="429 body; {limit} and {period} are substituted",
    )

    @field_validator("store_backend", mode="before")
    @classmethod
    def _normalize_backend(cls, value: object) -> object:
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("quota_exceeded_message")
    @classmethod
    def _check_message_placeholders(cls, value: str) -> str:
        try:
            value.format(limit=0, period="Second")
        except (KeyError, IndexError, ValueError) as exc:
            raise ValueError(
                "quota_exceeded_message may only use the {limit} and {period} placeholders"
            ) from exc
        return value

    model_config = SettingsConfigDict(
        env_prefix="THROTTLE_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if required settings are missing.

    Environments:
    - development: Local development (DEBUG=true)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)
    throttle: ThrottleSettings = Field(default_factory=_build_throttle_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
