"""Billing provider client backed by the Stripe SDK.

For On-Call Engineers:
    - ProviderUnavailableError: Stripe API unreachable, rate limited or 5xx.
      Webhooks return 503 and Stripe redelivers; recovery retries with backoff.
    - ProviderNotFoundError: subscription id unknown to Stripe. Usually a
      test-mode id in a live-mode record (or the reverse).
    - ProviderPermanentError: bad API key. Check STRIPE_SECRET_ARN.

For Developers:
    - Each client owns a stripe.StripeClient with its own HTTP client, so
      module-level stripe settings (api_key, default_http_client,
      max_network_retries) are never touched
    - Secondary calls are bounded by that HTTP client timeout, which must
      stay well under the webhook Lambda timeout
"""

import logging
import time
from collections.abc import Mapping
from typing import Any, Protocol

import stripe

# Stripe SDK v8+: error classes live at the package root
from stripe import (
    APIConnectionError,
    AuthenticationError,
    InvalidRequestError,
    PermissionError as StripePermissionError,
    RateLimitError,
    SignatureVerificationError,
    StripeError,
)

from src.lambdas.shared.errors.billing_errors import (
    PayloadValidationError,
    ProviderNotFoundError,
    ProviderPermanentError,
    ProviderUnavailableError,
    SignatureVerificationFailed,
)
from src.lambdas.shared.logging_utils import get_safe_error_info, sanitize_for_log
from src.lambdas.shared.models.webhook_event import RECOGNIZED_EVENT_TYPES, WebhookEvent

logger = logging.getLogger(__name__)

# Matches the provider's default page size for event listing
EVENT_LIST_LIMIT = 50


class BillingProviderClient(Protocol):
    """What the reconciler needs from a billing provider."""

    def verify_signature(
        self, body: bytes, signature: str, secret: str
    ) -> Mapping[str, Any]: ...

    def get_subscription(self, subscription_id: str) -> Mapping[str, Any]: ...

    def list_recent_webhook_events(self, window_hours: float) -> list[WebhookEvent]: ...


class StripeBillingClient:
    """BillingProviderClient for Stripe.

    Args:
        api_key: Stripe secret key
        timeout_seconds: HTTP timeout applied to every API call
        max_network_retries: SDK-level retries for idempotent requests
        sdk: Prebuilt stripe.StripeClient; built from the other arguments if None
    """

    def __init__(
        self,
        api_key: str,
        timeout_seconds: float = 10.0,
        max_network_retries: int = 0,
        sdk: stripe.StripeClient | None = None,
    ):
        self._sdk = sdk or stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout_seconds),
            max_network_retries=max_network_retries,
        )

    def verify_signature(
        self, body: bytes, signature: str, secret: str
    ) -> Mapping[str, Any]:
        """Verify the webhook signature and return the event envelope.

        Raises:
            SignatureVerificationFailed: Signature missing, stale or wrong
            PayloadValidationError: Body is not valid JSON
        """
        if not signature:
            raise SignatureVerificationFailed("Missing signature header")
        try:
            event = stripe.Webhook.construct_event(
                payload=body,
                sig_header=signature,
                secret=secret,
            )
        except SignatureVerificationError as e:
            logger.warning("stripe_signature_invalid", extra=get_safe_error_info(e))
            raise SignatureVerificationFailed("Invalid webhook signature") from e
        except ValueError as e:
            raise PayloadValidationError("Webhook body is not valid JSON") from e

        logger.info(
            "stripe_signature_verified",
            extra={"event_id": event.get("id"), "event_type": event.get("type")},
        )
        return event

    def get_subscription(self, subscription_id: str) -> Mapping[str, Any]:
        """Retrieve the authoritative subscription object.

        Raises:
            ProviderNotFoundError: No such subscription
            ProviderUnavailableError: Transient failure
            ProviderPermanentError: Credentials or request rejected
        """
        try:
            return self._sdk.subscriptions.retrieve(subscription_id)
        except StripeError as e:
            raise _translate_error(e, subscription_id) from e

    def list_recent_webhook_events(self, window_hours: float) -> list[WebhookEvent]:
        """List subscription/invoice events created within the window.

        An event counts as delivered once Stripe has no webhook deliveries
        pending for it. Stripe does not expose delivery latency here, so
        delivery_time is left empty.
        """
        since = int(time.time() - window_hours * 3600)
        try:
            page = self._sdk.events.list(
                params={
                    "created": {"gte": since},
                    "types": sorted(RECOGNIZED_EVENT_TYPES),
                    "limit": EVENT_LIST_LIMIT,
                }
            )
        except StripeError as e:
            raise _translate_error(e, "events") from e

        events = []
        for raw in page.data:
            pending = int(raw["pending_webhooks"] or 0)
            events.append(
                WebhookEvent(
                    id=raw["id"],
                    type=raw["type"],
                    created=int(raw["created"]) * 1000,
                    delivered=pending == 0,
                    error=None if pending == 0 else f"{pending} deliveries pending",
                )
            )
        return events


def _translate_error(error: StripeError, object_id: str) -> Exception:
    """Map a Stripe SDK error onto the reconciliation taxonomy."""
    status = getattr(error, "http_status", None)
    code = getattr(error, "code", None)
    extra = {
        "object_id": sanitize_for_log(object_id),
        "http_status": status,
        **get_safe_error_info(error),
    }

    if isinstance(error, InvalidRequestError) and (
        status == 404 or code == "resource_missing"
    ):
        logger.warning("stripe_object_not_found", extra=extra)
        return ProviderNotFoundError(object_id)
    if isinstance(error, (APIConnectionError, RateLimitError)) or (
        status is not None and status >= 500
    ):
        logger.warning("stripe_unavailable", extra=extra)
        return ProviderUnavailableError(f"Stripe unavailable ({type(error).__name__})")
    if isinstance(error, (AuthenticationError, StripePermissionError)):
        logger.error("stripe_credentials_rejected", extra=extra)
        return ProviderPermanentError("Stripe rejected credentials")

    logger.error("stripe_request_failed", extra=extra)
    if status is None:
        return ProviderUnavailableError(f"Stripe request failed ({type(error).__name__})")
    return ProviderPermanentError(f"Stripe request rejected ({status})")
