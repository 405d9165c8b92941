from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from relaychat.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth, rate limiting, hub and security layers."""

    app_name: str = env_field("relaychat", "APP_NAME")
    build_sha: str = env_field("dev", "BUILD_SHA")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (runtime reset, exposed tokens).",
    )

    # Token service
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("relaychat", "JWT_ISSUER")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime in minutes"
    )
    refresh_token_ttl_days: int = env_field(
        7, "REFRESH_TOKEN_TTL_DAYS", description="Refresh token lifetime in days"
    )
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Rate limits: (window seconds, max requests) per concern
    auth_rate_limit_window_seconds: int = env_field(15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS")
    auth_rate_limit_max_requests: int = env_field(5, "AUTH_RATE_LIMIT_MAX_REQUESTS")
    strict_auth_rate_limit_window_seconds: int = env_field(
        15 * 60, "STRICT_AUTH_RATE_LIMIT_WINDOW_SECONDS"
    )
    strict_auth_rate_limit_max_requests: int = env_field(
        3,
        "STRICT_AUTH_RATE_LIMIT_MAX_REQUESTS",
        description="Failed login attempts allowed per window; successful logins are not counted",
    )
    general_rate_limit_window_seconds: int = env_field(15 * 60, "GENERAL_RATE_LIMIT_WINDOW_SECONDS")
    general_rate_limit_max_requests: int = env_field(100, "GENERAL_RATE_LIMIT_MAX_REQUESTS")
    api_rate_limit_window_seconds: int = env_field(60, "API_RATE_LIMIT_WINDOW_SECONDS")
    api_rate_limit_max_requests: int = env_field(60, "API_RATE_LIMIT_MAX_REQUESTS")
    chat_rate_limit_window_seconds: int = env_field(60, "CHAT_RATE_LIMIT_WINDOW_SECONDS")
    chat_rate_limit_max_requests: int = env_field(
        20, "CHAT_RATE_LIMIT_MAX_REQUESTS", description="Messages per user per room per window"
    )
    upload_rate_limit_window_seconds: int = env_field(60 * 60, "UPLOAD_RATE_LIMIT_WINDOW_SECONDS")
    upload_rate_limit_max_requests: int = env_field(10, "UPLOAD_RATE_LIMIT_MAX_REQUESTS")

    # Background sweeps
    rate_limit_sweep_seconds: int = env_field(5 * 60, "RATE_LIMIT_SWEEP_SECONDS")
    refresh_token_sweep_seconds: int = env_field(60 * 60, "REFRESH_TOKEN_SWEEP_SECONDS")
    security_sweep_seconds: int = env_field(60 * 60, "SECURITY_SWEEP_SECONDS")

    # Security monitor
    security_block_threshold: int = env_field(
        5, "SECURITY_BLOCK_THRESHOLD", description="Suspicious events before an IP is blocked"
    )
    security_block_minutes: int = env_field(60, "SECURITY_BLOCK_MINUTES")
    security_injection_block_hours: int = env_field(24, "SECURITY_INJECTION_BLOCK_HOURS")
    max_request_bytes: int = env_field(10 * 1024 * 1024, "MAX_REQUEST_BYTES")

    # Chat
    default_message_page_size: int = env_field(50, "DEFAULT_MESSAGE_PAGE_SIZE")
    max_message_page_size: int = env_field(100, "MAX_MESSAGE_PAGE_SIZE")

    # HTTP surface
    cors_allow_origins: list[str] | None = env_field(None, "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

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
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            origins = [item.strip() for item in value.split(",") if item.strip()]
            return origins or None
        return value

    @field_validator("jwt_secret", "jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_secret(cls, value: Any, info) -> Any:
        if value:
            if isinstance(value, str) and len(value) < 32:
                logger.warning("jwt_secret_short", field=info.field_name, length=len(value))
            return value
        # Nothing is persisted, so a generated secret lives as long as the process
        logger.warning(
            "jwt_secret_generated",
            field=info.field_name,
            message="No secret configured; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_REFRESH_SECRET must differ from JWT_SECRET")
        return self


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
