"""Billing provider integration: client, payload parsing, user resolution."""

from src.lambdas.shared.billing.payload import (
    ParsedInvoice,
    ParsedSubscription,
    parse_invoice,
    parse_status,
    parse_subscription,
)
from src.lambdas.shared.billing.stripe_client import (
    BillingProviderClient,
    StripeBillingClient,
)
from src.lambdas.shared.billing.user_resolver import (
    UserResolution,
    UserSource,
    resolve_user_id,
)

__all__ = [
    "BillingProviderClient",
    "ParsedInvoice",
    "ParsedSubscription",
    "StripeBillingClient",
    "UserResolution",
    "UserSource",
    "parse_invoice",
    "parse_status",
    "parse_subscription",
    "resolve_user_id",
]
