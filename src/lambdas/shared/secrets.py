"""
Secrets Manager Helper Module
=============================

Loads billing provider credentials (API key, webhook signing secret) from
AWS Secrets Manager and keeps them in memory for a TTL.

For On-Call Engineers:
    If secrets fail to load, check:
    1. Secret exists: aws secretsmanager describe-secret --secret-id <path>
    2. Lambda IAM role has secretsmanager:GetSecretValue permission

    After rotating the webhook signing secret, expect up to one cache TTL
    (default 5 minutes) of INVALID_SIGNATURE responses on warm Lambdas.
    The provider redelivers, so nothing is lost.

For Developers:
    - Secrets are either JSON objects ({"api_key": ..., "webhook_secret": ...})
      or a bare plain-text value; get_secret_value() handles both
    - SECRETS_CACHE_TTL_SECONDS overrides the cache TTL
    - Only the sanitized secret name is ever logged
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300

RETRY_CONFIG = Config(
    retries={"max_attempts": 3, "mode": "adaptive"},
    connect_timeout=5,
    read_timeout=10,
)

SecretValue = dict[str, Any] | str


class SecretError(Exception):
    """Base exception for secret-related errors."""


class SecretNotFoundError(SecretError):
    pass


class SecretAccessDeniedError(SecretError):
    pass


class SecretRetrievalError(SecretError):
    """Any other failure, including a binary secret or a missing key."""


_ERRORS_BY_CODE: dict[str, tuple[type[SecretError], str]] = {
    "ResourceNotFoundException": (SecretNotFoundError, "Secret not found"),
    "AccessDeniedException": (SecretAccessDeniedError, "Access denied to secret"),
    "UnauthorizedAccess": (SecretAccessDeniedError, "Access denied to secret"),
}


@dataclass(frozen=True)
class _CachedSecret:
    value: SecretValue
    expires_at: float


_secrets_cache: dict[str, _CachedSecret] = {}


def _sanitize_secret_id_for_log(secret_id: str) -> str:
    """
    Reduce a secret id or ARN to its bare name.

    Example:
        >>> _sanitize_secret_id_for_log("arn:aws:secretsmanager:us-east-1:123:secret:stripe-abc123")
        'stripe'
    """
    if secret_id.startswith("arn:"):
        parts = secret_id.split(":")
        if len(parts) >= 7:
            # AWS appends a random "-xxxxxx" suffix to the name
            return parts[6].rsplit("-", 1)[0]
    return secret_id.split("/")[-1]


def get_secrets_client(region_name: str | None = None) -> Any:
    region = (
        region_name
        or os.environ.get("AWS_DEFAULT_REGION")
        or os.environ.get("AWS_REGION")
    )
    if not region:
        raise ValueError("AWS_DEFAULT_REGION or AWS_REGION environment variable must be set")
    return boto3.client("secretsmanager", region_name=region, config=RETRY_CONFIG)


def get_secret(
    secret_id: str,
    region_name: str | None = None,
    force_refresh: bool = False,
) -> SecretValue:
    """
    Fetch a secret, serving it from the in-memory cache while fresh.

    Args:
        secret_id: Secret name or ARN
        region_name: AWS region
        force_refresh: Skip the cache (e.g. right after a rotation)

    Returns:
        dict for JSON secrets, str for plain-text secrets

    Raises:
        SecretNotFoundError, SecretAccessDeniedError, SecretRetrievalError
    """
    if not force_refresh:
        cached = _secrets_cache.get(secret_id)
        if cached is not None and time.time() <= cached.expires_at:
            return cached.value

    secret_name = _sanitize_secret_id_for_log(secret_id)
    try:
        response = get_secrets_client(region_name).get_secret_value(SecretId=secret_id)
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "Unknown")
        logger.error(
            "secret_retrieval_failed",
            extra={"secret_name": secret_name, "error_code": error_code},
        )
        error_class, message = _ERRORS_BY_CODE.get(
            error_code, (SecretRetrievalError, "Failed to retrieve secret")
        )
        raise error_class(f"{message}: {secret_name}") from e

    secret_string = response.get("SecretString")
    if not secret_string:
        raise SecretRetrievalError(f"Secret is binary, not string: {secret_name}")

    value = _parse_secret_string(secret_string)
    ttl = int(os.environ.get("SECRETS_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS))
    _secrets_cache[secret_id] = _CachedSecret(value, time.time() + ttl)
    logger.info("secret_loaded", extra={"secret_name": secret_name})
    return value


def _parse_secret_string(secret_string: str) -> SecretValue:
    try:
        parsed = json.loads(secret_string)
    except json.JSONDecodeError:
        # Plain-text secret, e.g. a bare whsec_... value
        return secret_string
    return parsed if isinstance(parsed, dict) else secret_string


def get_secret_value(secret_id: str, *keys: str) -> str:
    """
    Return the first non-empty field among keys.

    Plain-text secrets are returned as-is.

    Example:
        >>> get_secret_value(arn, "webhook_secret", "STRIPE_WEBHOOK_SECRET")
    """
    secret = get_secret(secret_id)
    if isinstance(secret, str):
        return secret
    for key in keys:
        if secret.get(key):
            return str(secret[key])
    raise SecretRetrievalError(
        f"None of {list(keys)} found in secret: {_sanitize_secret_id_for_log(secret_id)}"
    )


def clear_cache() -> None:
    """Drop every cached secret (tests, forced rotation pickup)."""
    _secrets_cache.clear()
