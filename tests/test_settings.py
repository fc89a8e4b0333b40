"""Tests for environment-driven settings -- defaults, aliases, and caching."""

import pytest
from billsync.config import Settings, get_settings, reset_settings_cache

ALIASES = (
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "RETRY_DRAIN_SECRET",
    "RETRY_MAX_ATTEMPTS",
    "RETRY_BACKOFF_BASE_SECONDS",
    "RETRY_BACKOFF_MAX_SECONDS",
    "CATALOG_SYNC_QUIET_SECONDS",
    "TRUST_SCHEDULER_SIGNAL",
    "BACKGROUND_WORKERS_ENABLED",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ALIASES:
        monkeypatch.delenv(name, raising=False)
    reset_settings_cache()
    yield
    reset_settings_cache()


class TestDefaults:
    def test_retry_defaults(self):
        s = Settings(_env_file=None)
        assert s.retry_max_attempts == 3
        assert s.retry_backoff_base_seconds == 30.0
        assert s.retry_backoff_max_seconds == 3600.0
        assert s.retry_batch_size == 10
        assert s.retry_claim_lease_seconds == 600

    def test_secrets_default_empty(self):
        s = Settings(_env_file=None)
        assert s.stripe_secret_key == ""
        assert s.stripe_webhook_secret == ""
        assert s.retry_drain_secret == ""
        assert s.trust_scheduler_signal is False

    def test_webhook_and_coalescer_defaults(self):
        s = Settings(_env_file=None)
        assert s.stripe_webhook_tolerance_seconds == 300
        assert s.catalog_sync_quiet_seconds == 5.0
        assert s.catalog_sync_lock_enabled is False


class TestEnvironmentAliases:
    def test_upper_case_env_names(self, monkeypatch):
        monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_abc")
        monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("TRUST_SCHEDULER_SIGNAL", "true")
        s = Settings(_env_file=None)
        assert s.stripe_webhook_secret == "whsec_abc"
        assert s.retry_max_attempts == 5
        assert s.trust_scheduler_signal is True


class TestCache:
    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()

    def test_reset_picks_up_new_environment(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("RETRY_BACKOFF_BASE_SECONDS", "2")
        assert get_settings().retry_backoff_base_seconds == first.retry_backoff_base_seconds
        reset_settings_cache()
        assert get_settings().retry_backoff_base_seconds == 2.0
