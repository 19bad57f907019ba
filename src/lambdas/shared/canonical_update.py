"""
Canonical Update Path
=====================

The one code path that mutates SubscriptionRecord items. The webhook event
processor and the recovery manager both write through CanonicalUpdater.

For On-Call Engineers:
    Every decision is logged as `canonical_update` with a `reason`:
    - created / applied / canceled / lineage_switch: record written
    - no_change: payload matched stored state (duplicate delivery)
    - stale_event: event older than the last applied event, skipped
      (or created in the same second but ranked lower, see STATUS_PROGRESSION)
    - terminal: record is canceled; non-cancel update ignored
    - other_subscription / older_subscription: payload for a subscription
      that is not the record's current lineage

    A user stuck at a wrong status after a burst of events usually shows
    a `stale_event` line for the event you expected to win. Compare the
    event `created` timestamps.

For Developers:
    - reconcile() is pure; test it directly
    - Writes are conditional on the updated_at that was read, and
      ConflictError triggers a re-read and retry (conflict_retry)
    - Usage counters are only changed by record_workout() and
      reset_free_workouts(); reconciliation never touches them
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from src.lambdas.shared.canonical_store import CanonicalStore
from src.lambdas.shared.logging_utils import sanitize_for_log
from src.lambdas.shared.models.subscription import (
    DEFAULT_FREE_WORKOUT_LIMIT,
    SubscriptionPatch,
    SubscriptionRecord,
    SubscriptionStatus,
    is_subscription_active,
)
from src.lambdas.shared.retry import conflict_retry

logger = logging.getLogger(__name__)

# Fields a patch may clear with an explicit None
OPTIONAL_FIELDS = frozenset(
    {
        "customer_id",
        "price_id",
        "current_period_start",
        "current_period_end",
        "canceled_at",
    }
)

# Order in which a subscription normally moves; breaks ties between events
# created in the same provider second
STATUS_PROGRESSION = {
    SubscriptionStatus.INCOMPLETE: 0,
    SubscriptionStatus.TRIALING: 1,
    SubscriptionStatus.ACTIVE: 2,
    SubscriptionStatus.PAST_DUE: 3,
    SubscriptionStatus.UNPAID: 4,
    SubscriptionStatus.CANCELED: 5,
}


def now_ms() -> int:
    """Current wall clock in epoch milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


@dataclass
class ReconcileDecision:
    """Outcome of reconciling one patch against the stored record."""

    applied: bool
    reason: str
    fields: dict[str, Any] = field(default_factory=dict)
    remove: tuple[str, ...] = ()
    record: SubscriptionRecord | None = None


@dataclass
class ApplyResult:
    applied: bool
    reason: str
    record: SubscriptionRecord | None


def reconcile(
    user_id: str,
    existing: SubscriptionRecord | None,
    patch: SubscriptionPatch,
    now: int,
    event_created_ms: int | None = None,
    free_workout_limit: int = DEFAULT_FREE_WORKOUT_LIMIT,
) -> ReconcileDecision:
    """Decide what (if anything) a patch writes.

    Args:
        user_id: Owner of the record
        existing: Stored record, None if the user has none yet
        patch: Changes derived from one provider payload
        now: Current time, epoch ms
        event_created_ms: Provider timestamp of the originating webhook
            event; None for recovery writes
        free_workout_limit: Limit used when creating a new record

    Returns:
        ReconcileDecision with the fields to SET and REMOVE and the
        resulting record
    """
    changes = patch.changes()
    is_cancel = (
        patch.kind == "terminal" or changes.get("status") == SubscriptionStatus.CANCELED
    )

    if existing is None:
        return _build(
            user_id,
            None,
            changes,
            is_cancel,
            now,
            event_created_ms,
            free_workout_limit,
            "created",
        )

    incoming_id = changes.get("subscription_id")
    same_lineage = (
        incoming_id is None
        or existing.subscription_id is None
        or incoming_id == existing.subscription_id
    )

    if not same_lineage:
        if patch.kind != "full" or is_cancel:
            return ReconcileDecision(False, "other_subscription", record=existing)
        newer = event_created_ms is not None and (
            existing.last_event_at is None or event_created_ms >= existing.last_event_at
        )
        if not (existing.is_canceled or newer):
            return ReconcileDecision(False, "older_subscription", record=existing)
        return _build(
            user_id,
            existing,
            changes,
            False,
            now,
            event_created_ms,
            free_workout_limit,
            "lineage_switch",
        )

    if existing.is_canceled:
        if not is_cancel:
            return ReconcileDecision(False, "terminal", record=existing)
        if _is_stale(existing, changes, event_created_ms):
            return ReconcileDecision(False, "stale_event", record=existing)
        reason = "applied"
    elif is_cancel:
        # Entering the terminal state always applies, even out of order
        reason = "canceled"
    elif _is_stale(existing, changes, event_created_ms):
        return ReconcileDecision(False, "stale_event", record=existing)
    else:
        reason = "applied"

    return _build(
        user_id,
        existing,
        changes,
        is_cancel,
        now,
        event_created_ms,
        free_workout_limit,
        reason,
    )


def _tie_key(values: dict[str, Any]) -> tuple[tuple[str, str], ...]:
    return tuple(
        sorted((name, "" if value is None else str(value)) for name, value in values.items())
    )


def _is_stale(
    existing: SubscriptionRecord,
    changes: dict[str, Any],
    event_created_ms: int | None,
) -> bool:
    if event_created_ms is None or existing.last_event_at is None:
        return False
    if event_created_ms != existing.last_event_at:
        return event_created_ms < existing.last_event_at

    # Same provider second: rank by status progression, then by content
    incoming_rank = STATUS_PROGRESSION[changes.get("status") or existing.status]
    stored_rank = STATUS_PROGRESSION[existing.status]
    if incoming_rank != stored_rank:
        return incoming_rank < stored_rank
    stored = existing.model_dump()
    return _tie_key(changes) < _tie_key({name: stored.get(name) for name in changes})


def _build(
    user_id: str,
    existing: SubscriptionRecord | None,
    changes: dict[str, Any],
    is_cancel: bool,
    now: int,
    event_created_ms: int | None,
    free_workout_limit: int,
    reason: str,
) -> ReconcileDecision:
    """Merge changes over the existing record and diff the result."""
    if existing is None:
        current = SubscriptionRecord(
            user_id=user_id,
            free_workout_limit=free_workout_limit,
            created_at=now,
            updated_at=0,
        )
    else:
        current = existing

    target = current.model_dump()
    for name, value in changes.items():
        if value is None and name not in OPTIONAL_FIELDS:
            continue
        target[name] = value

    if is_cancel:
        target["status"] = SubscriptionStatus.CANCELED
        if target.get("canceled_at") is None:
            target["canceled_at"] = current.canceled_at or now
    else:
        # canceled_at only exists once the record is canceled
        target["canceled_at"] = None

    if target.get("status") is None:
        target["status"] = current.status

    if event_created_ms is not None:
        target["last_event_at"] = event_created_ms

    target["updated_at"] = current.updated_at
    candidate = SubscriptionRecord.model_validate(target)

    fields: dict[str, Any] = {}
    remove: list[str] = []
    stored = current.to_dynamodb_item() if existing is not None else {}
    new_item = candidate.to_dynamodb_item()
    for name in SubscriptionRecord.model_fields:
        if name in ("user_id", "updated_at"):
            continue
        if name in new_item:
            if existing is None or stored.get(name) != new_item[name]:
                fields[name] = new_item[name]
        elif name in stored:
            remove.append(name)

    if existing is not None and not fields and not remove:
        return ReconcileDecision(False, "no_change", record=existing)

    # Strictly increasing so the optimistic condition detects same-ms races
    updated_at = max(now, current.updated_at + 1)
    fields["updated_at"] = updated_at
    record = candidate.model_copy(update={"updated_at": updated_at})
    return ReconcileDecision(True, reason, fields, tuple(remove), record)


class CanonicalUpdater:
    """Applies patches and usage changes to the canonical store.

    Args:
        store: Canonical store backend
        clock: Returns epoch ms; defaults to wall clock
        free_workout_limit: Limit assigned to newly created records
    """

    def __init__(
        self,
        store: CanonicalStore,
        clock: Callable[[], int] | None = None,
        free_workout_limit: int = DEFAULT_FREE_WORKOUT_LIMIT,
    ):
        self._store = store
        self._clock = clock or now_ms
        self._free_workout_limit = free_workout_limit

    @property
    def store(self) -> CanonicalStore:
        return self._store

    @conflict_retry
    def apply(
        self,
        user_id: str,
        patch: SubscriptionPatch,
        origin: str,
        event_created_ms: int | None = None,
    ) -> ApplyResult:
        """Reconcile a patch against the stored record and write the result.

        Args:
            user_id: Target user
            patch: Provider-derived changes
            origin: Who is writing, e.g. "webhook:customer.subscription.updated"
                or "recovery"; logged only
            event_created_ms: Provider event timestamp for webhook writes

        Raises:
            ConflictError: Lost the optimistic race on every attempt
            CanonicalStoreError: Store read/write failed
        """
        existing = self._store.get(user_id)
        decision = reconcile(
            user_id,
            existing,
            patch,
            self._clock(),
            event_created_ms=event_created_ms,
            free_workout_limit=self._free_workout_limit,
        )

        logger.info(
            "canonical_update",
            extra={
                "user_id": sanitize_for_log(user_id),
                "origin": origin,
                "reason": decision.reason,
                "applied": decision.applied,
                "patch_kind": patch.kind,
                "fields": sorted(decision.fields),
            },
        )

        if decision.applied:
            self._store.merge(
                user_id,
                decision.fields,
                remove=decision.remove,
                expected_updated_at=existing.updated_at if existing else None,
                create_only=existing is None,
            )
        return ApplyResult(decision.applied, decision.reason, decision.record)

    @conflict_retry
    def record_workout(self, user_id: str) -> SubscriptionRecord:
        """Count one generated workout.

        workout_count always increments; free_workouts_used only while the
        user has no active subscription.
        """
        existing = self._store.get(user_id)
        now = self._clock()
        if existing is None:
            existing = SubscriptionRecord(
                user_id=user_id,
                free_workout_limit=self._free_workout_limit,
                created_at=now,
            )
            create = True
        else:
            create = False

        fields: dict[str, Any] = {
            "workout_count": existing.workout_count + 1,
            "updated_at": max(now, existing.updated_at + 1),
        }
        if not is_subscription_active(existing, now):
            fields["free_workouts_used"] = existing.free_workouts_used + 1
        if create:
            fields.update(
                {
                    k: v
                    for k, v in existing.to_dynamodb_item().items()
                    if k not in ("PK", "SK", "entity_type") and k not in fields
                }
            )

        self._store.merge(
            user_id,
            fields,
            expected_updated_at=None if create else existing.updated_at,
            create_only=create,
        )
        counters = ("workout_count", "free_workouts_used", "updated_at")
        return existing.model_copy(
            update={k: v for k, v in fields.items() if k in counters}
        )

    @conflict_retry
    def reset_free_workouts(
        self, user_id: str, admin_id: str = "system"
    ) -> SubscriptionRecord | None:
        """Administrative reset of the free-tier counter.

        The only operation allowed to decrease free_workouts_used.
        """
        existing = self._store.get(user_id)
        if existing is None:
            return None
        fields = {
            "free_workouts_used": 0,
            "updated_at": max(self._clock(), existing.updated_at + 1),
        }
        self._store.merge(user_id, fields, expected_updated_at=existing.updated_at)
        logger.warning(
            "free_workouts_reset",
            extra={
                "user_id": sanitize_for_log(user_id),
                "admin_id": sanitize_for_log(admin_id),
                "previous_value": existing.free_workouts_used,
            },
        )
        return existing.model_copy(update=fields)
