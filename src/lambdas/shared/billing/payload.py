"""Explicit parsing of billing provider payloads.

Converts raw subscription and invoice objects (plain dicts or stripe
StripeObjects, which are dict subclasses) into internal types. Unexpected
shapes raise PayloadValidationError instead of being trusted.

Provider timestamps are epoch seconds; everything internal is epoch ms.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from src.lambdas.shared.errors.billing_errors import PayloadValidationError
from src.lambdas.shared.logging_utils import sanitize_for_log
from src.lambdas.shared.models.subscription import SubscriptionPatch, SubscriptionStatus

logger = logging.getLogger(__name__)

# Provider statuses with no direct internal counterpart
STATUS_ALIASES = {
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.PAST_DUE,
}


def _to_ms(seconds: int | None) -> int | None:
    return None if seconds is None else int(seconds) * 1000


def _object_id(value: Any) -> str | None:
    """Expanded objects carry an id; collapsed ones are the id."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        object_id = value.get("id")
        return str(object_id) if object_id else None
    raise ValueError(f"expected id or object, got {type(value).__name__}")


class _ProviderPrice(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str


class _ProviderItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    price: _ProviderPrice | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None


class _ProviderItemList(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[_ProviderItem] = []


class ProviderSubscription(BaseModel):
    """The subset of a provider subscription object we rely on."""

    model_config = ConfigDict(extra="ignore")

    id: str
    customer: str | None = None
    status: str
    metadata: dict[str, str] = {}
    items: _ProviderItemList = _ProviderItemList()
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    canceled_at: int | None = None

    @field_validator("customer", mode="before")
    @classmethod
    def _collapse_customer(cls, value: Any) -> str | None:
        return _object_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_or_empty(cls, value: Any) -> Any:
        return {} if value is None else value


@dataclass
class ParsedSubscription:
    subscription_id: str
    customer_id: str | None
    status: SubscriptionStatus
    price_id: str | None
    current_period_start: int | None
    current_period_end: int | None
    cancel_at_period_end: bool
    canceled_at: int | None
    metadata: dict[str, str] = field(default_factory=dict)

    def full_patch(self) -> SubscriptionPatch:
        """Patch for created/updated events and re-fetched subscriptions.

        canceled_at is only carried when the provider set it.
        """
        values: dict[str, Any] = {
            "kind": "full",
            "subscription_id": self.subscription_id,
            "customer_id": self.customer_id,
            "status": self.status,
            "price_id": self.price_id,
            "current_period_start": self.current_period_start,
            "current_period_end": self.current_period_end,
            "cancel_at_period_end": self.cancel_at_period_end,
        }
        if self.canceled_at is not None:
            values["canceled_at"] = self.canceled_at
        return SubscriptionPatch(**values)

    def terminal_patch(self) -> SubscriptionPatch:
        """Patch for a deleted subscription: status forced to canceled."""
        patch = self.full_patch()
        return patch.model_copy(
            update={"kind": "terminal", "status": SubscriptionStatus.CANCELED}
        )


@dataclass
class ParsedInvoice:
    invoice_id: str
    subscription_id: str | None
    customer_id: str | None
    metadata: dict[str, str] = field(default_factory=dict)


def parse_status(raw: str) -> SubscriptionStatus:
    """Map a provider status string onto SubscriptionStatus.

    Raises:
        PayloadValidationError: Unknown status
    """
    if raw in STATUS_ALIASES:
        return STATUS_ALIASES[raw]
    try:
        return SubscriptionStatus(raw)
    except ValueError:
        raise PayloadValidationError(
            f"Unknown subscription status: {sanitize_for_log(raw)}", field="status"
        ) from None


def parse_subscription(obj: Mapping[str, Any]) -> ParsedSubscription:
    """Validate a provider subscription object.

    Period bounds fall back to the first subscription item; newer provider
    API versions only report them per item.

    Raises:
        PayloadValidationError: Missing or malformed fields
    """
    if not isinstance(obj, Mapping):
        raise PayloadValidationError("Subscription payload is not an object")
    try:
        sub = ProviderSubscription.model_validate(dict(obj))
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        logger.warning(
            "subscription_payload_invalid",
            extra={"invalid_fields": fields},
        )
        raise PayloadValidationError(
            "Malformed subscription payload", field=",".join(fields)
        ) from e

    first_item = sub.items.data[0] if sub.items.data else None
    period_start = sub.current_period_start
    period_end = sub.current_period_end
    if first_item is not None:
        if period_start is None:
            period_start = first_item.current_period_start
        if period_end is None:
            period_end = first_item.current_period_end

    return ParsedSubscription(
        subscription_id=sub.id,
        customer_id=sub.customer,
        status=parse_status(sub.status),
        price_id=first_item.price.id if first_item and first_item.price else None,
        current_period_start=_to_ms(period_start),
        current_period_end=_to_ms(period_end),
        cancel_at_period_end=sub.cancel_at_period_end,
        canceled_at=_to_ms(sub.canceled_at),
        metadata=dict(sub.metadata),
    )


def parse_invoice(obj: Mapping[str, Any]) -> ParsedInvoice:
    """Extract subscription and customer references from an invoice.

    Handles both the legacy top-level `subscription` field and the
    `parent.subscription_details` layout.
    """
    if not isinstance(obj, Mapping) or not obj.get("id"):
        raise PayloadValidationError("Invoice payload missing id", field="id")

    try:
        customer_id = _object_id(obj.get("customer"))
        subscription_id = _object_id(obj.get("subscription"))
    except ValueError as e:
        raise PayloadValidationError("Malformed invoice references") from e

    metadata: dict[str, str] = {}
    details = (obj.get("parent") or {}).get("subscription_details") or obj.get(
        "subscription_details"
    )
    if isinstance(details, Mapping):
        if subscription_id is None:
            try:
                subscription_id = _object_id(details.get("subscription"))
            except ValueError as e:
                raise PayloadValidationError("Malformed invoice references") from e
        metadata.update(details.get("metadata") or {})
    metadata.update(obj.get("metadata") or {})

    return ParsedInvoice(
        invoice_id=str(obj["id"]),
        subscription_id=subscription_id,
        customer_id=customer_id,
        metadata={str(k): str(v) for k, v in metadata.items()},
    )
