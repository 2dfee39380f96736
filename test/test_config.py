# ============================================================================
# FILE: test/test_config.py
# Settings loading and validation
# ============================================================================

import pytest

from payment_resilience.config import Settings


class TestSettings:

    def test_defaults(self, monkeypatch):
        for name in ("ENVIRONMENT", "REDIS_URL", "ACTIVE_LOCK_TIMEOUT_SECONDS", "LOCK_RETENTION_HOURS",
                     "WEBHOOK_MAX_RETRIES", "BREAKER_FAILURE_THRESHOLD"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.active_lock_timeout_seconds == 3600
        assert settings.lock_retention_hours == 24
        assert settings.webhook_max_retries == 3
        assert settings.processed_event_ttl_seconds == 259200
        assert settings.failed_event_ttl_seconds == 86400
        assert settings.breaker.failure_threshold == 5
        assert settings.breaker.reset_timeout_seconds == 30.0
        assert settings.breaker.half_open_success_threshold == 3
        assert settings.redis_url is None

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_MAX_RETRIES", "5")
        monkeypatch.setenv("BREAKER_RESET_TIMEOUT_SECONDS", "12.5")
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")

        settings = Settings.from_env()

        assert settings.webhook_max_retries == 5
        assert settings.breaker.reset_timeout_seconds == 12.5
        assert settings.redis_url == "redis://cache:6379/0"

    def test_bad_integer_rejected(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_MAX_RETRIES", "three")

        with pytest.raises(ValueError):
            Settings.from_env()

    def test_active_timeout_must_be_shorter_than_retention(self):
        with pytest.raises(ValueError):
            Settings(active_lock_timeout_seconds=48 * 3600, lock_retention_hours=24).validate()

    def test_production_requires_shared_cache_and_webhook_secret(self):
        with pytest.raises(ValueError):
            Settings(environment="production", stripe_webhook_secret="whsec_x").validate()
        with pytest.raises(ValueError):
            Settings(environment="production", redis_url="redis://cache").validate()

        Settings(environment="production", redis_url="redis://cache", stripe_webhook_secret="whsec_x").validate()
