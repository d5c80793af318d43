from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core, read from the environment and `.env`."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authcore", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; allows running without JWT_SECRET or Redis.",
    )

    # Store timeouts; a timeout counts as the store being unreachable
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    database_timeout_seconds: float = env_field(5.0, "DATABASE_TIMEOUT_SECONDS")

    # Tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    jwt_access_expiry: int = env_field(
        900, "JWT_ACCESS_EXPIRY", description="Access token TTL in seconds"
    )
    jwt_refresh_expiry: int = env_field(
        604800, "JWT_REFRESH_EXPIRY", description="Refresh token TTL in seconds"
    )
    jwt_leeway_seconds: int = env_field(60, "JWT_LEEWAY_SECONDS")
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")

    # One-time codes
    otp_ttl_minutes: int = env_field(5, "OTP_TTL_MINUTES")
    otp_max_attempts: int = env_field(3, "OTP_MAX_ATTEMPTS")
    otp_block_minutes: int = env_field(15, "OTP_BLOCK_MINUTES")
    otp_hourly_limit: int = env_field(5, "OTP_HOURLY_LIMIT")
    otp_resend_cooldown_seconds: int = env_field(60, "OTP_RESEND_COOLDOWN_SECONDS")

    # Email verification
    verification_ttl_hours: int = env_field(24, "VERIFICATION_TTL_HOURS")
    verification_hourly_limit: int = env_field(3, "VERIFICATION_HOURLY_LIMIT")

    # Sliding-window rate limiter
    rate_limit_window_minutes: int = env_field(1, "RATE_LIMIT_WINDOW_MINUTES")
    rate_limit_guest_requests: int = env_field(100, "RATE_LIMIT_GUEST_REQUESTS")
    rate_limit_customer_requests: int = env_field(300, "RATE_LIMIT_CUSTOMER_REQUESTS")
    rate_limit_seller_requests: int = env_field(500, "RATE_LIMIT_SELLER_REQUESTS")
    rate_limit_sensitive_endpoints: int = env_field(
        30,
        "RATE_LIMIT_SENSITIVE_ENDPOINTS",
        description="Ceiling for login and OTP endpoints",
    )
    rate_limit_sensitive_register: int = env_field(
        10, "RATE_LIMIT_SENSITIVE_REGISTER"
    )
    rate_limit_default_requests: int = env_field(100, "RATE_LIMIT_DEFAULT_REQUESTS")

    # Outbound email (dev mode logs instead of sending when no API key is set)
    email_api_url: str = env_field("https://api.resend.com/emails", "EMAIL_API_URL")
    email_api_key: str | None = env_field(None, "EMAIL_API_KEY")
    email_from: str = env_field("noreply@authcore.local", "EMAIL_FROM")
    email_timeout_seconds: float = env_field(10.0, "EMAIL_TIMEOUT_SECONDS")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Retention job
    cleanup_enabled: bool = env_field(True, "CLEANUP_ENABLED")
    cleanup_interval_seconds: int = env_field(3600, "CLEANUP_INTERVAL_SECONDS")
    cleanup_otp_retention_hours: int = env_field(24, "CLEANUP_OTP_RETENTION_HOURS")
    cleanup_session_retention_days: int = env_field(7, "CLEANUP_SESSION_RETENTION_DAYS")
    cleanup_inactive_session_days: int = env_field(30, "CLEANUP_INACTIVE_SESSION_DAYS")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    build_sha: str = env_field("dev", "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator(
        "jwt_access_expiry",
        "jwt_refresh_expiry",
        "session_ttl_days",
        "otp_ttl_minutes",
        "otp_max_attempts",
        "otp_block_minutes",
        "otp_hourly_limit",
        "rate_limit_window_minutes",
        "cleanup_interval_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be a positive integer")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning(
                    "jwt_secret_weak",
                    length=len(value),
                    message="JWT_SECRET shorter than 32 characters",
                )
            return value
        test_mode = str(os.getenv("TEST_MODE", "false")).lower() in {"1", "true", "yes", "on"}
        if not test_mode:
            raise ValueError("JWT_SECRET must be set outside TEST_MODE")
        logger.warning("jwt_secret_generated", message="Using an ephemeral JWT secret")
        return secrets.token_urlsafe(64)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
