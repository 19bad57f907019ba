"""SubscriptionRecord model: the canonical entitlement record for one user.

Uses single-table design: PK=USER#{user_id}, SK=SUBSCRIPTION

For On-Call Engineers:
    - `status == canceled` is terminal for a subscription_id. A resubscribe
      shows up as a new subscription_id on the same item, never as an
      in-place revival of the old one.
    - `updated_at` never goes backwards. If it does, something bypassed
      CanonicalUpdater (see canonical_update.py).
    - `last_event_at` is the provider timestamp (ms) of the last webhook
      event applied. Older events are skipped against it.

For Developers:
    - All timestamps are epoch milliseconds (int)
    - Only CanonicalUpdater writes these items
    - SubscriptionPatch distinguishes "absent" from "explicitly None" via
      pydantic's model_fields_set
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

DEFAULT_FREE_WORKOUT_LIMIT = 5

SUBSCRIPTION_SK = "SUBSCRIPTION"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states as stored in the canonical record."""

    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class SubscriptionRecord(BaseModel):
    """Canonical subscription and free-tier usage state for one user."""

    user_id: str
    subscription_id: str | None = None
    customer_id: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    price_id: str | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool = False
    canceled_at: int | None = None

    # Free-tier usage counters (monotonic)
    free_workouts_used: int = Field(0, ge=0)
    free_workout_limit: int = Field(DEFAULT_FREE_WORKOUT_LIMIT, ge=0)
    workout_count: int = Field(0, ge=0)

    created_at: int = 0
    updated_at: int = 0
    last_event_at: int | None = None

    @property
    def pk(self) -> str:
        """DynamoDB partition key."""
        return f"USER#{self.user_id}"

    @property
    def sk(self) -> str:
        """DynamoDB sort key."""
        return SUBSCRIPTION_SK

    @property
    def is_canceled(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED

    def to_dynamodb_item(self) -> dict:
        """Convert to DynamoDB item format.

        Optional fields are omitted when None so the by_customer_id GSI
        stays sparse.
        """
        item: dict[str, Any] = {
            "PK": self.pk,
            "SK": self.sk,
            "entity_type": "subscription",
            "user_id": self.user_id,
            "status": self.status.value,
            "cancel_at_period_end": self.cancel_at_period_end,
            "free_workouts_used": self.free_workouts_used,
            "free_workout_limit": self.free_workout_limit,
            "workout_count": self.workout_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        for name in (
            "subscription_id",
            "customer_id",
            "price_id",
            "current_period_start",
            "current_period_end",
            "canceled_at",
            "last_event_at",
        ):
            value = getattr(self, name)
            if value is not None:
                item[name] = value
        return item

    @classmethod
    def from_dynamodb_item(cls, item: dict) -> "SubscriptionRecord":
        """Parse DynamoDB item to SubscriptionRecord model.

        Expects numeric values already converted from Decimal
        (see dynamodb.parse_dynamodb_item).
        """
        data = {k: v for k, v in item.items() if k in cls.model_fields}
        return cls.model_validate(data)

    def to_json_dict(self) -> dict[str, Any]:
        """JSON-safe dict used by the local fallback file and broadcasts."""
        return self.model_dump(mode="json")


PatchKind = Literal["full", "terminal", "minimal"]


class SubscriptionPatch(BaseModel):
    """Partial SubscriptionRecord built from one provider payload.

    kind:
        full:     every subscription field copied from a complete object
        terminal: the subscription was deleted; forces status=canceled
        minimal:  status (and ids) only, used when full state is unavailable
    """

    kind: PatchKind = "full"
    subscription_id: str | None = None
    customer_id: str | None = None
    status: SubscriptionStatus | None = None
    price_id: str | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None
    cancel_at_period_end: bool | None = None
    canceled_at: int | None = None

    def changes(self) -> dict[str, Any]:
        """Fields explicitly carried by this patch (kind excluded)."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name != "kind"
        }


def default_subscription_record(
    user_id: str, free_workout_limit: int = DEFAULT_FREE_WORKOUT_LIMIT
) -> SubscriptionRecord:
    """Conservative record used when no source can answer. Grants nothing."""
    return SubscriptionRecord(
        user_id=user_id,
        status=SubscriptionStatus.INCOMPLETE,
        free_workout_limit=free_workout_limit,
    )


def is_subscription_active(record: SubscriptionRecord | None, now_ms: int) -> bool:
    """True when the record grants paid entitlement at now_ms."""
    if record is None or record.status not in ENTITLED_STATUSES:
        return False
    if record.current_period_end is not None and record.current_period_end <= now_ms:
        return False
    return True


def remaining_free_workouts(record: SubscriptionRecord | None) -> int:
    if record is None:
        return 0
    return max(0, record.free_workout_limit - record.free_workouts_used)


def can_generate_workout(record: SubscriptionRecord | None, now_ms: int) -> bool:
    """Paid users always can; free users until the free limit is used up."""
    if is_subscription_active(record, now_ms):
        return True
    return remaining_free_workouts(record) > 0
