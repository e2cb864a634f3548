"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from sessionguard.config import DEFAULT_TRUSTED_PROXY_CIDRS, Settings, get_settings, reset_settings_cache


class TestSettings:
    def test_defaults(self):
        settings = Settings()

        assert settings.jwt_issuer == "vocawik"
        assert settings.jwt_audience == "vocawik-api"
        assert settings.access_token_ttl_seconds == 3600
        assert settings.refresh_token_ttl_seconds == 86400
        assert settings.jwt_clock_skew_seconds == 0
        assert settings.trusted_proxy_cidrs == DEFAULT_TRUSTED_PROXY_CIDRS
        assert settings.request_id_header == "X-Request-Id"

    def test_env_names_are_read(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_SECONDS", "900")
        monkeypatch.setenv("TRUSTED_PROXY_CIDRS", "10.0.0.0/8")
        monkeypatch.setenv("REFRESH_RATE_LIMIT_REQUESTS", "3")

        settings = Settings.from_env()

        assert settings.access_token_ttl_seconds == 900
        assert settings.trusted_proxy_cidrs == "10.0.0.0/8"
        assert settings.refresh_rate_limit_requests == 3

    @pytest.mark.parametrize("field", ["access_token_ttl_seconds", "refresh_token_ttl_seconds"])
    def test_non_positive_lifetime_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_negative_skew_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_clock_skew_seconds=-1)

    def test_blank_optional_values_become_none(self):
        settings = Settings(redis_url="  ", guest_ip_hash_salt="", jwt_secret=" ")

        assert settings.redis_url is None
        assert settings.guest_ip_hash_salt is None
        assert settings.jwt_secret is None

    def test_cache_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        monkeypatch.setenv("JWT_ISSUER", "other-issuer")

        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().jwt_issuer == "other-issuer"
        reset_settings_cache()
