"""Shared models for subscription reconciliation.

This module exports the entity models used by the webhook Lambda and the
client-side entitlement engine:
- SubscriptionRecord: canonical entitlement and free-tier usage for one user
- SubscriptionPatch: partial record derived from one provider payload
- CacheEntry: client-side snapshot with its source tier
- WebhookEvent: one sampled provider webhook delivery
- HealthStatus: webhook delivery health classification
"""

from src.lambdas.shared.models.cache_entry import CacheEntry, CacheSource
from src.lambdas.shared.models.health import (
    HEALTH_SK,
    HealthStatus,
    RecommendedAction,
)
from src.lambdas.shared.models.subscription import (
    DEFAULT_FREE_WORKOUT_LIMIT,
    ENTITLED_STATUSES,
    SUBSCRIPTION_SK,
    SubscriptionPatch,
    SubscriptionRecord,
    SubscriptionStatus,
    can_generate_workout,
    default_subscription_record,
    is_subscription_active,
    remaining_free_workouts,
)
from src.lambdas.shared.models.webhook_event import RECOGNIZED_EVENT_TYPES, WebhookEvent

__all__ = [
    "CacheEntry",
    "CacheSource",
    "DEFAULT_FREE_WORKOUT_LIMIT",
    "ENTITLED_STATUSES",
    "HEALTH_SK",
    "HealthStatus",
    "RECOGNIZED_EVENT_TYPES",
    "RecommendedAction",
    "SUBSCRIPTION_SK",
    "SubscriptionPatch",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "WebhookEvent",
    "can_generate_workout",
    "default_subscription_record",
    "is_subscription_active",
    "remaining_free_workouts",
]
