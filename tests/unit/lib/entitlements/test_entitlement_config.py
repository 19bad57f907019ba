"""Unit tests for client engine configuration."""

import pytest

from src.lib.entitlements.config import ConfigurationError, EntitlementConfig, get_config


class TestGetConfig:
    def test_defaults(self):
        config = get_config()

        assert config.cache_timeout_seconds == 300.0
        assert config.health_check_interval_seconds == 30.0
        assert config.max_failed_events == 3
        assert config.stuck_threshold_ms == 120_000

    def test_overrides_are_typed(self, monkeypatch):
        monkeypatch.setenv("CACHE_TIMEOUT_SECONDS", "12.5")
        monkeypatch.setenv("MAX_FAILED_EVENTS", "5")
        monkeypatch.setenv("LOCAL_FALLBACK_DIR", "/tmp/entitlements")

        config = get_config()

        assert config.cache_timeout_seconds == 12.5
        assert config.max_failed_events == 5
        assert isinstance(config.max_failed_events, int)
        assert config.local_fallback_dir == "/tmp/entitlements"

    def test_unparseable_value(self, monkeypatch):
        monkeypatch.setenv("RECOVERY_MAX_ATTEMPTS", "three")
        with pytest.raises(ConfigurationError, match="RECOVERY_MAX_ATTEMPTS"):
            get_config()


class TestValidation:
    @pytest.mark.parametrize(
        "field,value",
        [
            ("cache_timeout_seconds", 0),
            ("health_check_interval_seconds", -1),
            ("health_lookback_hours", 0),
            ("max_failed_events", 0),
            ("recovery_max_attempts", 0),
            ("recovery_max_attempts_per_cooldown", 0),
            ("activation_poll_multiplier", 0.5),
            ("activation_poll_initial_seconds", 0),
            ("free_workout_limit", -1),
        ],
    )
    def test_invalid_values(self, field, value):
        with pytest.raises(ConfigurationError):
            EntitlementConfig(**{field: value})
