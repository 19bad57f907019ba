"""
Webhook Lambda Configuration
============================

Parses and validates configuration from environment variables.

For On-Call Engineers:
    Environment variables:
    - DYNAMODB_TABLE (or DATABASE_TABLE): canonical store table
    - STRIPE_WEBHOOK_SECRET or STRIPE_WEBHOOK_SECRET_ARN: signing secret
    - STRIPE_API_KEY or STRIPE_SECRET_ARN: API key for re-fetching subscriptions
    - PROVIDER_TIMEOUT_SECONDS: timeout for secondary Stripe calls (default 10)
    - HANDLER_TIMEOUT_SECONDS: Lambda timeout (default 60)
    - PAYMENT_FAILED_POLICY: fixed_past_due (default) or requery
    - DEFAULT_FREE_WORKOUT_LIMIT: free tier size for new records (default 5)
    - CUSTOMER_INDEX_NAME: GSI for customer lookups (default by_customer_id)

    If the Lambda fails at cold start with ConfigurationError, the message
    names the missing or invalid variable.

For Developers:
    - Use get_config() to load all configuration
    - Secret values are resolved lazily by resolve_webhook_secret() and
      resolve_api_key(); plain env values win over ARNs (tests, local runs)
"""

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

PAYMENT_FAILED_FIXED = "fixed_past_due"
PAYMENT_FAILED_REQUERY = "requery"
PAYMENT_FAILED_POLICIES = (PAYMENT_FAILED_FIXED, PAYMENT_FAILED_REQUERY)

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 10.0
DEFAULT_HANDLER_TIMEOUT_SECONDS = 60.0


@dataclass
class WebhookConfig:
    """
    Configuration for the webhook Lambda.

    All fields are validated on instantiation.
    """

    dynamodb_table: str
    webhook_secret: str = ""
    webhook_secret_arn: str = ""
    api_key: str = ""
    api_key_secret_arn: str = ""
    provider_timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    handler_timeout_seconds: float = DEFAULT_HANDLER_TIMEOUT_SECONDS
    payment_failed_policy: str = PAYMENT_FAILED_FIXED
    free_workout_limit: int = 5
    customer_index_name: str = "by_customer_id"

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self):
        """
        Raises:
            ConfigurationError: If any validation fails
        """
        if not self.dynamodb_table:
            raise ConfigurationError("DYNAMODB_TABLE is required")

        if not self.webhook_secret and not self.webhook_secret_arn:
            raise ConfigurationError(
                "STRIPE_WEBHOOK_SECRET or STRIPE_WEBHOOK_SECRET_ARN is required"
            )

        if not self.api_key and not self.api_key_secret_arn:
            raise ConfigurationError("STRIPE_API_KEY or STRIPE_SECRET_ARN is required")

        if self.provider_timeout_seconds <= 0:
            raise ConfigurationError("PROVIDER_TIMEOUT_SECONDS must be positive")

        # Secondary provider calls must finish well inside the Lambda timeout
        if self.provider_timeout_seconds >= self.handler_timeout_seconds / 2:
            raise ConfigurationError(
                "PROVIDER_TIMEOUT_SECONDS must be less than half of "
                f"HANDLER_TIMEOUT_SECONDS ({self.handler_timeout_seconds})"
            )

        if self.payment_failed_policy not in PAYMENT_FAILED_POLICIES:
            raise ConfigurationError(
                f"PAYMENT_FAILED_POLICY must be one of {PAYMENT_FAILED_POLICIES}, "
                f"got {self.payment_failed_policy!r}"
            )

        if self.free_workout_limit < 0:
            raise ConfigurationError("DEFAULT_FREE_WORKOUT_LIMIT cannot be negative")

    def resolve_webhook_secret(self) -> str:
        if self.webhook_secret:
            return self.webhook_secret
        from src.lambdas.shared.secrets import get_secret_value

        return get_secret_value(
            self.webhook_secret_arn, "webhook_secret", "STRIPE_WEBHOOK_SECRET"
        )

    def resolve_api_key(self) -> str:
        if self.api_key:
            return self.api_key
        from src.lambdas.shared.secrets import get_secret_value

        return get_secret_value(self.api_key_secret_arn, "api_key", "STRIPE_API_KEY")


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def get_config() -> WebhookConfig:
    """
    Load and validate configuration from environment variables.

    Raises:
        ConfigurationError: If required vars missing or invalid

    On-Call Note:
        This is called at Lambda cold start. If it fails, check
        Lambda environment variables in AWS Console.
    """
    config = WebhookConfig(
        dynamodb_table=os.environ.get("DATABASE_TABLE")
        or os.environ.get("DYNAMODB_TABLE", ""),
        webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", ""),
        webhook_secret_arn=os.environ.get("STRIPE_WEBHOOK_SECRET_ARN", ""),
        api_key=os.environ.get("STRIPE_API_KEY", ""),
        api_key_secret_arn=os.environ.get("STRIPE_SECRET_ARN", ""),
        provider_timeout_seconds=_float_env(
            "PROVIDER_TIMEOUT_SECONDS", DEFAULT_PROVIDER_TIMEOUT_SECONDS
        ),
        handler_timeout_seconds=_float_env(
            "HANDLER_TIMEOUT_SECONDS", DEFAULT_HANDLER_TIMEOUT_SECONDS
        ),
        payment_failed_policy=os.environ.get(
            "PAYMENT_FAILED_POLICY", PAYMENT_FAILED_FIXED
        ),
        free_workout_limit=_int_env("DEFAULT_FREE_WORKOUT_LIMIT", 5),
        customer_index_name=os.environ.get("CUSTOMER_INDEX_NAME", "by_customer_id"),
    )

    logger.info(
        "Configuration loaded",
        extra={
            "dynamodb_table": config.dynamodb_table,
            "payment_failed_policy": config.payment_failed_policy,
            "provider_timeout_seconds": config.provider_timeout_seconds,
        },
    )

    return config


class ConfigurationError(Exception):
    """
    Raised when configuration is invalid or missing.

    On-Call Note:
        This error means Lambda cannot start. Check environment
        variables in AWS Console and CloudWatch logs for details.
    """

    pass
