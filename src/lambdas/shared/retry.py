"""Retry utilities for transient store and billing provider failures.

Provides retry decorators for DynamoDB operations, optimistic-write
conflicts, and an async retry policy for billing provider queries.

For On-Call Engineers:
    - Retries are for TRANSIENT failures only (throttling, timeouts, 5xx)
    - Validation errors, not-found and permissions errors are NOT retried
    - Each retry is logged with attempt number
    - DynamoDB: max 3 attempts with exponential backoff (0.5s, 1s, 2s)
    - Provider (recovery): RECOVERY_MAX_ATTEMPTS with exponential backoff
"""

import logging

from botocore.exceptions import ClientError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

from src.lambdas.shared.errors.billing_errors import (
    ConflictError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)

# DynamoDB error codes that are retryable (transient)
DYNAMODB_RETRYABLE_ERRORS = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "InternalServerError",
    "ServiceUnavailable",
    "RequestLimitExceeded",
}

CONFLICT_MAX_ATTEMPTS = 5


def _is_dynamodb_retryable(exception: BaseException) -> bool:
    """Check if DynamoDB exception is retryable."""
    if not isinstance(exception, ClientError):
        return False
    error_code = exception.response.get("Error", {}).get("Code", "")
    return error_code in DYNAMODB_RETRYABLE_ERRORS


# Pre-configured retry decorator for DynamoDB operations
dynamodb_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception(_is_dynamodb_retryable),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)

# Optimistic-write conflicts: re-read and try again quickly, with jitter
# so racing writers spread out
conflict_retry = retry(
    stop=stop_after_attempt(CONFLICT_MAX_ATTEMPTS),
    wait=wait_random_exponential(multiplier=0.05, max=1),
    retry=retry_if_exception_type(ConflictError),
    before_sleep=before_sleep_log(logger, logging.INFO),
    reraise=True,
)


def provider_retry_policy(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 8.0,
) -> AsyncRetrying:
    """Async retry policy for billing provider queries.

    Only ProviderUnavailableError is retried; not-found and permanent
    provider errors propagate on the first attempt.

    Example:
        >>> async for attempt in provider_retry_policy(3):
        ...     with attempt:
        ...         sub = await loop.run_in_executor(None, fetch)
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, min=base_delay, max=max_delay),
        retry=retry_if_exception_type(ProviderUnavailableError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
