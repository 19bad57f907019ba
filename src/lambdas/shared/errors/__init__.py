"""Shared error types for the entitlement reconciler.

Re-exports the response helpers from responses.py together with the
reconciliation error taxonomy.
"""

from src.lambdas.shared.errors.billing_errors import (
    CanonicalStoreError,
    ConflictError,
    EntitlementError,
    PayloadValidationError,
    ProviderError,
    ProviderNotFoundError,
    ProviderPermanentError,
    ProviderUnavailableError,
    SignatureVerificationFailed,
    UnresolvedUserError,
)
from src.lambdas.shared.errors.responses import (
    ErrorCode,
    error_response,
    status_for_error,
)

__all__ = [
    # Response helpers
    "ErrorCode",
    "error_response",
    "status_for_error",
    # Reconciliation taxonomy
    "CanonicalStoreError",
    "ConflictError",
    "EntitlementError",
    "PayloadValidationError",
    "ProviderError",
    "ProviderNotFoundError",
    "ProviderPermanentError",
    "ProviderUnavailableError",
    "SignatureVerificationFailed",
    "UnresolvedUserError",
]
