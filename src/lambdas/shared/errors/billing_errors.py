"""Error taxonomy for entitlement reconciliation.

Every error carries a `retryable` flag. The webhook endpoint maps it onto
the HTTP status (400 = do not redeliver, 5xx = redeliver) and the recovery
manager uses it to decide whether to back off and try again.

For On-Call Engineers:
    - SignatureVerificationFailed spikes usually mean the webhook secret
      was rotated in the provider dashboard but not in Secrets Manager.
    - UnresolvedUserError is expected briefly after signup (webhook can
      beat user provisioning). Sustained counts mean metadata is missing
      on checkout sessions.
    - ProviderNotFoundError during recovery is terminal; the subscription
      id in the canonical record points at nothing.
"""


class EntitlementError(Exception):
    """Base class for reconciliation errors."""

    retryable = False


class SignatureVerificationFailed(EntitlementError):
    """Webhook signature did not verify. Terminal; event is discarded."""

    retryable = False


class PayloadValidationError(EntitlementError):
    """Provider payload did not match the expected shape."""

    retryable = False

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class UnresolvedUserError(EntitlementError):
    """No user could be resolved for a billing object.

    Retryable: the user record may not be provisioned yet.
    """

    retryable = True

    def __init__(self, customer_id: str | None, object_id: str | None = None):
        self.customer_id = customer_id
        self.object_id = object_id
        super().__init__(
            f"No user for customer {customer_id or 'unknown'}"
            f" (object {object_id or 'unknown'})"
        )


class ProviderError(EntitlementError):
    """Base class for billing provider failures."""


class ProviderUnavailableError(ProviderError):
    """Transient provider failure (network, rate limit, 5xx)."""

    retryable = True


class ProviderNotFoundError(ProviderError):
    """Requested provider object does not exist. Permanent."""

    retryable = False

    def __init__(self, object_id: str):
        self.object_id = object_id
        super().__init__(f"Provider object not found: {object_id}")


class ProviderPermanentError(ProviderError):
    """Non-transient provider failure such as bad credentials."""

    retryable = False


class CanonicalStoreError(EntitlementError):
    """Canonical store read or write failed."""

    retryable = True


class ConflictError(EntitlementError):
    """Optimistic write lost a race with a concurrent writer."""

    retryable = True

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Concurrent modification for user {user_id}")
