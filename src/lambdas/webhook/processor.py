"""
Webhook Event Processor
=======================

Verifies inbound billing webhooks and applies them to the canonical store.

For On-Call Engineers:
    Every event produces one `webhook_event_processed` log line with
    event_id, event_type, user_id, user_source, outcome and
    processing_time_ms. Outcomes:
    - applied:  canonical record changed
    - skipped:  duplicate, stale or terminal (no change needed)
    - ignored:  event type we do not handle, or invoice without subscription
    - rejected: bad signature or malformed payload (400, not redelivered)
    - failed:   retryable failure (5xx, provider will redeliver)

    A burst of `failed` with error_code UNRESOLVED_USER right after signup
    is expected: the webhook beat user provisioning. It should clear on
    redelivery.

For Developers:
    - Delivery is at-least-once and unordered; never assume the previous
      event for a subscription has been seen
    - All writes go through CanonicalUpdater.apply()
    - invoice.payment_succeeded re-fetches the subscription because the
      invoice alone lacks the subscription fields
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from aws_xray_sdk.core import xray_recorder

from src.lambdas.shared.billing.payload import (
    ParsedInvoice,
    parse_invoice,
    parse_subscription,
)
from src.lambdas.shared.billing.stripe_client import BillingProviderClient
from src.lambdas.shared.billing.user_resolver import (
    UserResolution,
    UserSource,
    resolve_user_id,
)
from src.lambdas.shared.canonical_update import CanonicalUpdater
from src.lambdas.shared.errors import (
    EntitlementError,
    PayloadValidationError,
    ProviderError,
    SignatureVerificationFailed,
    UnresolvedUserError,
    status_for_error,
)
from src.lambdas.shared.logging_utils import get_safe_error_info, sanitize_for_log
from src.lambdas.shared.models.subscription import SubscriptionPatch, SubscriptionStatus
from src.lambdas.shared.models.webhook_event import RECOGNIZED_EVENT_TYPES
from src.lambdas.webhook.config import PAYMENT_FAILED_REQUERY, WebhookConfig
from src.lib.metrics import (
    EVENTS_FAILED,
    EVENTS_PROCESSED,
    PROCESSING_LATENCY_MS,
    SIGNATURE_FAILURES,
    Timer,
    emit_metric,
)

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
PAYMENT_FAILED = "invoice.payment_failed"


@dataclass
class HandlerResult:
    """Outcome of handling one webhook delivery."""

    status_code: int
    received: bool
    outcome: str
    event_id: str | None = None
    event_type: str | None = None
    processing_time_ms: float = 0.0
    user_id: str | None = None
    user_source: UserSource | None = None
    retryable: bool = False
    error_code: str | None = None

    def to_response_body(self) -> dict[str, Any]:
        return {
            "received": self.received,
            "eventId": self.event_id,
            "eventType": self.event_type,
            "processingTimeMs": round(self.processing_time_ms, 2),
            "timestamp": datetime.now(UTC).isoformat(),
        }


@dataclass
class _Dispatch:
    outcome: str
    resolution: UserResolution | None = None


class EventProcessor:
    """Verifies webhook deliveries and dispatches them by event type.

    Args:
        billing: Billing provider client (signature check and re-fetch)
        updater: The canonical-update path
        webhook_secret: Signing secret for this endpoint
        config: Webhook configuration (payment_failed policy)
        metrics_emitter: emit_metric-compatible callable
    """

    def __init__(
        self,
        billing: BillingProviderClient,
        updater: CanonicalUpdater,
        webhook_secret: str,
        config: WebhookConfig,
        metrics_emitter: Callable[..., None] = emit_metric,
    ):
        self._billing = billing
        self._updater = updater
        self._store = updater.store
        self._webhook_secret = webhook_secret
        self._config = config
        self._emit = metrics_emitter

    @xray_recorder.capture("handle_webhook")
    def handle_webhook(self, raw_body: bytes, signature_header: str | None) -> HandlerResult:
        """Verify, parse and apply one webhook delivery.

        Never raises: every failure is folded into the returned
        HandlerResult, whose status_code tells the transport whether to
        redeliver (5xx) or not (2xx/400).
        """
        with Timer(PROCESSING_LATENCY_MS, emit=False) as timer:
            result = self._handle(raw_body, signature_header or "")
        result.processing_time_ms = timer.elapsed_ms

        self._log_result(result)
        self._emit_metrics(result)
        return result

    def _handle(self, raw_body: bytes, signature: str) -> HandlerResult:
        try:
            event = self._billing.verify_signature(
                raw_body, signature, self._webhook_secret
            )
        except (SignatureVerificationFailed, PayloadValidationError) as e:
            status, code = status_for_error(e)
            return HandlerResult(
                status_code=status,
                received=False,
                outcome="rejected",
                error_code=code.value,
            )

        event_id = event.get("id")
        event_type = event.get("type")

        if event_type not in RECOGNIZED_EVENT_TYPES:
            # Forward compatible: acknowledge so the provider stops sending
            return HandlerResult(
                status_code=200,
                received=True,
                outcome="ignored",
                event_id=event_id,
                event_type=event_type,
            )

        try:
            dispatch = self._dispatch(event)
        except EntitlementError as e:
            status, code = status_for_error(e)
            resolution = None
            if isinstance(e, UnresolvedUserError):
                resolution = UserResolution(None, UserSource.UNRESOLVED)
            return HandlerResult(
                status_code=status,
                received=False,
                outcome="failed" if e.retryable else "rejected",
                event_id=event_id,
                event_type=event_type,
                user_source=resolution.source if resolution else None,
                retryable=e.retryable,
                error_code=code.value,
            )
        except Exception as e:
            logger.error(
                "webhook_processing_error",
                extra={
                    "event_id": sanitize_for_log(event_id),
                    "event_type": sanitize_for_log(event_type),
                    **get_safe_error_info(e),
                },
                exc_info=True,
            )
            status, code = status_for_error(e)
            return HandlerResult(
                status_code=status,
                received=False,
                outcome="failed",
                event_id=event_id,
                event_type=event_type,
                retryable=True,
                error_code=code.value,
            )

        resolution = dispatch.resolution
        return HandlerResult(
            status_code=200,
            received=True,
            outcome=dispatch.outcome,
            event_id=event_id,
            event_type=event_type,
            user_id=resolution.user_id if resolution else None,
            user_source=resolution.source if resolution else None,
        )

    def _dispatch(self, event: Mapping[str, Any]) -> _Dispatch:
        event_type = event["type"]
        data = event.get("data") or {}
        if not isinstance(data, Mapping):
            raise PayloadValidationError("Event data is not an object", field="data")
        obj = data.get("object")
        if not isinstance(obj, Mapping):
            raise PayloadValidationError("Event has no data.object", field="data.object")

        created = event.get("created")
        if created is not None and (isinstance(created, bool) or not isinstance(created, int)):
            raise PayloadValidationError("Event created is not a timestamp", field="created")
        created_ms = created * 1000 if created is not None else None

        if event_type in (SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED):
            return self._handle_subscription_event(event_type, obj, created_ms)
        if event_type == PAYMENT_SUCCEEDED:
            return self._handle_payment_succeeded(obj, created_ms)
        return self._handle_payment_failed(obj, created_ms)

    def _handle_subscription_event(
        self, event_type: str, obj: Mapping[str, Any], created_ms: int | None
    ) -> _Dispatch:
        parsed = parse_subscription(obj)
        resolution = self._resolve(parsed.metadata, parsed.customer_id, parsed.subscription_id)

        if event_type == SUBSCRIPTION_DELETED:
            patch = parsed.terminal_patch()
        else:
            patch = parsed.full_patch()

        result = self._updater.apply(
            resolution.user_id,
            patch,
            origin=f"webhook:{event_type}",
            event_created_ms=created_ms,
        )
        return _Dispatch("applied" if result.applied else "skipped", resolution)

    def _handle_payment_succeeded(
        self, obj: Mapping[str, Any], created_ms: int | None
    ) -> _Dispatch:
        invoice = parse_invoice(obj)
        if invoice.subscription_id is None:
            return _Dispatch("ignored")

        resolution = self._resolve(
            invoice.metadata, invoice.customer_id, invoice.subscription_id
        )
        patch = self._refetch_patch(invoice)
        event_time = created_ms
        if patch is None:
            patch = self._best_known_patch(resolution.user_id, invoice)
            # Not derived from provider state; must not block later events
            event_time = None

        result = self._updater.apply(
            resolution.user_id,
            patch,
            origin=f"webhook:{PAYMENT_SUCCEEDED}",
            event_created_ms=event_time,
        )
        return _Dispatch("applied" if result.applied else "skipped", resolution)

    def _handle_payment_failed(
        self, obj: Mapping[str, Any], created_ms: int | None
    ) -> _Dispatch:
        invoice = parse_invoice(obj)
        if invoice.subscription_id is None:
            return _Dispatch("ignored")

        resolution = self._resolve(
            invoice.metadata, invoice.customer_id, invoice.subscription_id
        )

        patch = None
        if self._config.payment_failed_policy == PAYMENT_FAILED_REQUERY:
            patch = self._refetch_patch(invoice)
        if patch is None:
            patch = SubscriptionPatch(
                kind="minimal",
                subscription_id=invoice.subscription_id,
                status=SubscriptionStatus.PAST_DUE,
            )

        result = self._updater.apply(
            resolution.user_id,
            patch,
            origin=f"webhook:{PAYMENT_FAILED}",
            event_created_ms=created_ms,
        )
        return _Dispatch("applied" if result.applied else "skipped", resolution)

    def _resolve(
        self,
        metadata: Mapping[str, str],
        customer_id: str | None,
        object_id: str | None,
    ) -> UserResolution:
        resolution = resolve_user_id(metadata, customer_id, self._store)
        if not resolution.resolved:
            raise UnresolvedUserError(customer_id, object_id)
        return resolution

    def _refetch_patch(self, invoice: ParsedInvoice) -> SubscriptionPatch | None:
        """Full patch from the provider's current subscription, or None on failure."""
        try:
            subscription = self._billing.get_subscription(invoice.subscription_id)
            return parse_subscription(subscription).full_patch()
        except (ProviderError, PayloadValidationError) as e:
            logger.warning(
                "subscription_refetch_failed",
                extra={
                    "invoice_id": sanitize_for_log(invoice.invoice_id),
                    "subscription_id": sanitize_for_log(invoice.subscription_id),
                    **get_safe_error_info(e),
                },
            )
            return None

    def _best_known_patch(
        self, user_id: str, invoice: ParsedInvoice
    ) -> SubscriptionPatch:
        """Minimal patch that keeps the status we already know.

        A paid invoice alone does not prove the subscription is active, so
        this never guesses a status: it keeps the stored one (incomplete for
        a new record) and lets recovery or the next event settle it.
        """
        existing = self._store.get(user_id)
        if existing is not None and existing.subscription_id in (
            None,
            invoice.subscription_id,
        ):
            status = existing.status
        else:
            status = SubscriptionStatus.INCOMPLETE

        values: dict[str, Any] = {
            "kind": "minimal",
            "subscription_id": invoice.subscription_id,
            "status": status,
        }
        if invoice.customer_id:
            values["customer_id"] = invoice.customer_id
        return SubscriptionPatch(**values)

    def _log_result(self, result: HandlerResult) -> None:
        extra = {
            "event_id": sanitize_for_log(result.event_id),
            "event_type": sanitize_for_log(result.event_type),
            "user_id": sanitize_for_log(result.user_id) if result.user_id else None,
            "user_source": result.user_source.value if result.user_source else None,
            "outcome": result.outcome,
            "status_code": result.status_code,
            "processing_time_ms": round(result.processing_time_ms, 2),
            "error_code": result.error_code,
        }
        if result.outcome == "failed":
            logger.error("webhook_event_processed", extra=extra)
        elif result.outcome == "rejected":
            logger.warning("webhook_event_processed", extra=extra)
        else:
            logger.info("webhook_event_processed", extra=extra)

    def _emit_metrics(self, result: HandlerResult) -> None:
        dimensions = {
            "EventType": result.event_type or "unknown",
            "Outcome": result.outcome,
        }
        self._emit(EVENTS_PROCESSED, 1, dimensions=dimensions)
        self._emit(
            PROCESSING_LATENCY_MS,
            result.processing_time_ms,
            unit="Milliseconds",
            dimensions={"EventType": result.event_type or "unknown"},
        )
        if result.outcome == "failed":
            self._emit(EVENTS_FAILED, 1, dimensions=dimensions)
        if result.error_code == "INVALID_SIGNATURE":
            self._emit(SIGNATURE_FAILURES, 1)
