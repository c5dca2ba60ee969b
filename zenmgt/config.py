from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from zenmgt.logging import get_logger

logger = get_logger(__name__)

MIN_SESSION_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Console settings read from the environment with `.env` fallback."""

    upstream_base_url: str = env_field("http://localhost:8080", "API_URL")
    upstream_api_prefix: str = env_field("/api/mgt/v1", "API_PREFIX")
    upstream_timeout_seconds: float = env_field(
        10.0,
        "API_TIMEOUT_SECONDS",
        description="Fixed timeout applied to every upstream call",
    )
    session_secret: str = env_field(
        "",
        "SESSION_SECRET",
        description="HMAC key for the session cookie; at least 32 characters",
        validate_default=True,
    )
    session_cookie_name: str = env_field("zen_session", "SESSION_COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    session_max_age_seconds: int = env_field(60 * 60 * 24, "SESSION_MAX_AGE_SECONDS")
    access_token_ttl_seconds: int = env_field(
        60 * 60 * 24,
        "ACCESS_TOKEN_TTL_SECONDS",
        description="Upper bound for access token lifetime when upstream omits or exceeds it",
    )
    temp_token_ttl_seconds: int = env_field(300, "TEMP_TOKEN_TTL_SECONDS")
    refresh_threshold_seconds: int = env_field(
        300,
        "REFRESH_THRESHOLD_SECONDS",
        description="Route guards refresh tokens that expire within this window",
    )
    sweep_interval_seconds: int = env_field(60, "SESSION_SWEEP_INTERVAL_SECONDS")
    login_rate_limit_per_minute: int = env_field(5, "LOGIN_RATE_LIMIT_PER_MINUTE")
    mfa_rate_limit_per_minute: int = env_field(10, "MFA_RATE_LIMIT_PER_MINUTE")
    proxy_rate_limit_per_minute: int = env_field(100, "PROXY_RATE_LIMIT_PER_MINUTE")
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator("session_secret")
    @classmethod
    def _require_session_secret(cls, value: str) -> str:
        value = (value or "").strip()
        if len(value) < MIN_SESSION_SECRET_LENGTH:
            logger.error(
                "session_secret_invalid",
                length=len(value),
                required=MIN_SESSION_SECRET_LENGTH,
            )
            raise ValueError(
                f"SESSION_SECRET must be at least {MIN_SESSION_SECRET_LENGTH} characters long"
            )
        return value

    @field_validator("upstream_base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("API_URL must be an http(s) URL")
        return value

    @field_validator("upstream_api_prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if value and not value.startswith("/"):
            value = "/" + value
        return value

    @field_validator("upstream_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("API_TIMEOUT_SECONDS must be positive")
        return value

    @property
    def upstream_api_url(self) -> str:
        return f"{self.upstream_base_url}{self.upstream_api_prefix}"


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
