from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TRUSTED_PROXY_CIDRS = (
    "127.0.0.1/32,10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,::1/128"
)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session-security core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/sessionguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout_seconds: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT_SECONDS")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    # Token codec
    jwt_secret: str | None = env_field(
        None, "JWT_SECRET", description="Base64-encoded HMAC key, at least 256 bits"
    )
    jwt_issuer: str = env_field("vocawik", "JWT_ISSUER")
    jwt_audience: str = env_field("vocawik-api", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(86400, "REFRESH_TOKEN_TTL_SECONDS")
    jwt_clock_skew_seconds: int = env_field(
        0,
        "JWT_CLOCK_SKEW_SECONDS",
        description="Explicit grace applied to exp checks; 0 disables it",
    )

    # Network identity
    trusted_proxy_cidrs: str = env_field(
        DEFAULT_TRUSTED_PROXY_CIDRS, "TRUSTED_PROXY_CIDRS"
    )
    guest_ip_hash_salt: str | None = env_field(None, "GUEST_IP_HASH_SALT")
    request_id_header: str = env_field("X-Request-Id", "REQUEST_ID_HEADER")

    # OAuth (Google)
    oauth_google_client_id: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_google_redirect_uri: str | None = env_field(None, "OAUTH_GOOGLE_REDIRECT_URI")
    oauth_google_auth_uri: str = env_field(
        "https://accounts.google.com/o/oauth2/v2/auth", "OAUTH_GOOGLE_AUTH_URI"
    )
    oauth_google_token_uri: str = env_field(
        "https://oauth2.googleapis.com/token", "OAUTH_GOOGLE_TOKEN_URI"
    )
    oauth_google_userinfo_uri: str = env_field(
        "https://openidconnect.googleapis.com/v1/userinfo", "OAUTH_GOOGLE_USERINFO_URI"
    )
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Rate limits
    rate_limit_default_requests: int = env_field(10, "RATE_LIMIT_DEFAULT_REQUESTS")
    rate_limit_default_window_seconds: int = env_field(
        60, "RATE_LIMIT_DEFAULT_WINDOW_SECONDS"
    )
    refresh_rate_limit_requests: int = env_field(10, "REFRESH_RATE_LIMIT_REQUESTS")
    oauth_rate_limit_requests: int = env_field(20, "OAUTH_RATE_LIMIT_REQUESTS")

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

    @field_validator("access_token_ttl_seconds", "refresh_token_ttl_seconds")
    @classmethod
    def _positive_lifetime(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token lifetimes must be positive")
        return value

    @field_validator("jwt_clock_skew_seconds")
    @classmethod
    def _non_negative_skew(cls, value: int) -> int:
        if value < 0:
            raise ValueError("clock skew cannot be negative")
        return value

    @field_validator("redis_url", "guest_ip_hash_salt", "jwt_secret")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None


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
