"""
Standardized Error Response Helper
==================================

Provides consistent error bodies and status codes for the webhook endpoint.

For On-Call Engineers:
    Error codes and their meanings:
    - INVALID_SIGNATURE: Webhook signature failed verification (400, not redelivered)
    - VALIDATION_ERROR: Payload of a recognized event had an unexpected shape (400)
    - UNRESOLVED_USER: No user for the billing customer yet (503, redelivered)
    - PROVIDER_UNAVAILABLE: Billing provider API failed transiently (503, redelivered)
    - DATABASE_ERROR: Canonical store operation failed (500, redelivered)
    - INTERNAL_ERROR: Unexpected server error (500, redelivered)

    Search logs by error code:
    aws logs filter-log-events \
      --log-group-name /aws/lambda/dev-entitlement-webhook \
      --filter-pattern "UNRESOLVED_USER"

For Developers:
    - Use error_response() for all API error responses
    - Use status_for_error() to map the exception taxonomy onto HTTP
    - 400 tells the provider to stop redelivering; 5xx asks it to retry

Security Notes:
    - Never expose internal error details to end users
    - request_id enables correlation without exposing internals
"""

import logging
from enum import Enum
from typing import Any

from src.lambdas.shared.errors.billing_errors import (
    CanonicalStoreError,
    EntitlementError,
    PayloadValidationError,
    ProviderError,
    SignatureVerificationFailed,
    UnresolvedUserError,
)

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    """
    Standardized error codes for machine-readable error handling.

    On-Call Note:
        These codes appear in logs and can be used for filtering:
        filter @message like /UNRESOLVED_USER/
    """

    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNRESOLVED_USER = "UNRESOLVED_USER"
    PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
    DATABASE_ERROR = "DATABASE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


def error_response(
    status_code: int,
    message: str,
    code: str | ErrorCode,
    request_id: str,
    details: dict[str, Any] | None = None,
    log_error: bool = True,
) -> dict[str, Any]:
    """
    Create a standardized error body.

    Body format:
    {
        "received": false,
        "error": "Human readable message",
        "code": "MACHINE_READABLE_CODE",
        "details": {},
        "request_id": "request-id-123"
    }

    Args:
        status_code: HTTP status code (400, 500, 503)
        message: Human-readable error message
        code: Machine-readable error code (from ErrorCode enum)
        request_id: Request ID for correlation
        details: Additional non-sensitive details
        log_error: Whether to log the error (default True)

    Returns:
        JSON-serializable error body
    """
    error_code = code.value if isinstance(code, ErrorCode) else code

    body: dict[str, Any] = {
        "received": False,
        "error": message,
        "code": error_code,
        "request_id": request_id,
    }
    if details:
        body["details"] = details

    # Log metadata only; details may carry provider identifiers
    if log_error:
        log_level = logging.ERROR if status_code >= 500 else logging.WARNING
        logger.log(
            log_level,
            message,
            extra={
                "status_code": status_code,
                "error_code": error_code,
                "request_id": request_id,
            },
        )

    return body


def status_for_error(error: Exception) -> tuple[int, ErrorCode]:
    """
    Map an exception onto (HTTP status, ErrorCode).

    Non-retryable errors map to 400 so the provider stops redelivering.
    Everything else is 5xx.
    """
    if isinstance(error, SignatureVerificationFailed):
        return 400, ErrorCode.INVALID_SIGNATURE
    if isinstance(error, PayloadValidationError):
        return 400, ErrorCode.VALIDATION_ERROR
    if isinstance(error, UnresolvedUserError):
        return 503, ErrorCode.UNRESOLVED_USER
    if isinstance(error, ProviderError) and error.retryable:
        return 503, ErrorCode.PROVIDER_UNAVAILABLE
    if isinstance(error, CanonicalStoreError):
        return 500, ErrorCode.DATABASE_ERROR
    if isinstance(error, EntitlementError) and not error.retryable:
        return 400, ErrorCode.VALIDATION_ERROR
    return 500, ErrorCode.INTERNAL_ERROR
