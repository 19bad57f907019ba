"""
Entitlement Engine Configuration
================================

Tuning for the client-side cache, health monitor and recovery manager.

For Developers:
    Environment variables (all optional, defaults in parentheses):
    - CACHE_TIMEOUT_SECONDS (300): how long a cached record is served
    - LOCAL_FALLBACK_DIR (~/.cache/entitlements): local fallback copies
    - LOCAL_FALLBACK_MAX_AGE_SECONDS (3600): oldest usable local copy
    - STORE_POLL_INTERVAL_SECONDS (5): canonical change polling
    - HEALTH_CHECK_INTERVAL_SECONDS (30), HEALTH_LOOKBACK_HOURS (1)
    - MAX_FAILED_EVENTS (3), WEBHOOK_TIMEOUT_MS (30000)
    - STUCK_THRESHOLD_SECONDS (120): age after which `incomplete` is stuck
    - RECOVERY_MAX_ATTEMPTS (3), RECOVERY_BASE_DELAY_SECONDS (1),
      RECOVERY_MAX_DELAY_SECONDS (8)
    - RECOVERY_COOLDOWN_SECONDS (300), RECOVERY_MAX_ATTEMPTS_PER_COOLDOWN (3)
    - ACTIVATION_POLL_INITIAL_SECONDS (1), ACTIVATION_POLL_MULTIPLIER (1.5),
      ACTIVATION_POLL_MAX_SECONDS (30), ACTIVATION_TIMEOUT_SECONDS (120)
    - DEFAULT_FREE_WORKOUT_LIMIT (5)

    Construct EntitlementConfig directly in tests to shrink the timings.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class EntitlementConfig:
    """
    Configuration for the client-side entitlement engine.

    All fields are validated on instantiation.
    """

    cache_timeout_seconds: float = 300.0
    local_fallback_dir: str = str(Path.home() / ".cache" / "entitlements")
    local_fallback_max_age_seconds: float = 3600.0
    store_poll_interval_seconds: float = 5.0

    health_check_interval_seconds: float = 30.0
    health_lookback_hours: float = 1.0
    max_failed_events: int = 3
    webhook_timeout_ms: float = 30000.0
    stuck_threshold_seconds: float = 120.0

    recovery_max_attempts: int = 3
    recovery_base_delay_seconds: float = 1.0
    recovery_max_delay_seconds: float = 8.0
    recovery_cooldown_seconds: float = 300.0
    recovery_max_attempts_per_cooldown: int = 3

    activation_poll_initial_seconds: float = 1.0
    activation_poll_multiplier: float = 1.5
    activation_poll_max_seconds: float = 30.0
    activation_timeout_seconds: float = 120.0

    free_workout_limit: int = 5

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self):
        """
        Raises:
            ConfigurationError: If any validation fails
        """
        if self.cache_timeout_seconds <= 0:
            raise ConfigurationError("CACHE_TIMEOUT_SECONDS must be positive")

        if self.health_check_interval_seconds <= 0:
            raise ConfigurationError("HEALTH_CHECK_INTERVAL_SECONDS must be positive")

        if self.health_lookback_hours <= 0:
            raise ConfigurationError("HEALTH_LOOKBACK_HOURS must be positive")

        if self.max_failed_events < 1:
            raise ConfigurationError("MAX_FAILED_EVENTS must be at least 1")

        if self.recovery_max_attempts < 1:
            raise ConfigurationError("RECOVERY_MAX_ATTEMPTS must be at least 1")

        if self.recovery_max_attempts_per_cooldown < 1:
            raise ConfigurationError(
                "RECOVERY_MAX_ATTEMPTS_PER_COOLDOWN must be at least 1"
            )

        if self.activation_poll_multiplier < 1:
            raise ConfigurationError("ACTIVATION_POLL_MULTIPLIER must be >= 1")

        if self.activation_poll_initial_seconds <= 0:
            raise ConfigurationError("ACTIVATION_POLL_INITIAL_SECONDS must be positive")

        if self.free_workout_limit < 0:
            raise ConfigurationError("DEFAULT_FREE_WORKOUT_LIMIT cannot be negative")

    @property
    def stuck_threshold_ms(self) -> int:
        return int(self.stuck_threshold_seconds * 1000)


# Field name -> environment variable, where the names differ
_ENV_NAMES = {
    "max_failed_events": "MAX_FAILED_EVENTS",
    "webhook_timeout_ms": "WEBHOOK_TIMEOUT_MS",
    "free_workout_limit": "DEFAULT_FREE_WORKOUT_LIMIT",
}


def get_config() -> EntitlementConfig:
    """
    Load configuration from environment variables.

    Unset variables keep their defaults.

    Raises:
        ConfigurationError: If a value cannot be parsed or is invalid
    """
    overrides: dict[str, object] = {}
    for config_field in fields(EntitlementConfig):
        env_name = _ENV_NAMES.get(config_field.name, config_field.name.upper())
        raw = os.environ.get(env_name, "")
        if not raw:
            continue
        try:
            if config_field.type in ("int", int):
                overrides[config_field.name] = int(raw)
            elif config_field.type in ("float", float):
                overrides[config_field.name] = float(raw)
            else:
                overrides[config_field.name] = raw
        except ValueError:
            raise ConfigurationError(f"{env_name} has invalid value {raw!r}") from None

    config = EntitlementConfig(**overrides)
    logger.info(
        "Configuration loaded",
        extra={
            "cache_timeout_seconds": config.cache_timeout_seconds,
            "health_check_interval_seconds": config.health_check_interval_seconds,
            "overrides": sorted(overrides),
        },
    )
    return config


class ConfigurationError(Exception):
    """
    Raised when configuration is invalid or missing.
    """

    pass
