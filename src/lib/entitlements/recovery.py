"""
Recovery Manager
================

Repairs a canonical record from the billing provider's authoritative view
of one subscription, through the same CanonicalUpdater the webhook path
uses.

For On-Call Engineers:
    - `recovery_completed` with changed=true means the canonical record
      was behind the provider (usually a lost or late webhook)
    - `recovery_not_found`: the subscription id is unknown to the provider;
      not retried
    - `recovery_cooldown`: too many attempts for one id inside the cooldown
      window; the id is left alone until the window passes

For Developers:
    - At most one recovery per subscription id is in flight; concurrent
      callers await the same task
    - Transient provider errors retry with provider_retry_policy
    - Expected failures come back as RecoveryResult(success=False); the
      public methods do not raise for them
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from src.lambdas.shared.billing.payload import ParsedSubscription, parse_subscription
from src.lambdas.shared.billing.stripe_client import BillingProviderClient
from src.lambdas.shared.billing.user_resolver import resolve_user_id
from src.lambdas.shared.canonical_store import CanonicalStore
from src.lambdas.shared.canonical_update import CanonicalUpdater
from src.lambdas.shared.errors.billing_errors import (
    EntitlementError,
    ProviderNotFoundError,
)
from src.lambdas.shared.logging_utils import get_safe_error_info, sanitize_for_log
from src.lambdas.shared.models.subscription import ENTITLED_STATUSES, SubscriptionStatus
from src.lambdas.shared.retry import provider_retry_policy
from src.lib.entitlements.config import EntitlementConfig

logger = logging.getLogger(__name__)

RECOVERY_ORIGIN = "recovery"


@dataclass(frozen=True)
class RecoveryResult:
    success: bool
    subscription_id: str
    user_id: str | None = None
    changed: bool = False
    remote_status: SubscriptionStatus | None = None
    error: str | None = None


@dataclass(frozen=True)
class RecoveryAttempt:
    timestamp: float
    success: bool
    error: str | None = None


@dataclass
class RecoveryStats:
    total_attempts: int = 0
    successful: int = 0
    failed: int = 0
    rejected_by_cooldown: int = 0
    in_flight: int = 0
    last_recovery_at: float | None = None
    attempts_by_subscription: dict[str, int] = field(default_factory=dict)


class RecoveryManager:
    """Provider-driven repair of canonical subscription records.

    Args:
        billing: Billing provider client
        updater: The canonical-update path
        store: Canonical store (reads and user lookup)
        cache_manager: Refreshed after a successful recovery; optional
        config: Retry and cooldown settings
        clock: Returns seconds; defaults to time.time
    """

    def __init__(
        self,
        billing: BillingProviderClient,
        updater: CanonicalUpdater,
        store: CanonicalStore,
        cache_manager: Any | None,
        config: EntitlementConfig,
        clock: Callable[[], float] | None = None,
    ):
        self._billing = billing
        self._updater = updater
        self._store = store
        self._cache_manager = cache_manager
        self._config = config
        self._clock = clock or time.time

        self._inflight: dict[str, asyncio.Task] = {}
        self._attempts: dict[str, list[RecoveryAttempt]] = {}
        self._stats = RecoveryStats()

    async def force_activate_subscription(self, subscription_id: str) -> bool:
        """Reconcile from the provider; True when the user is now entitled."""
        result = await self.fix_subscription(subscription_id)
        return result.success and result.remote_status in ENTITLED_STATUSES

    async def fix_subscription(self, subscription_id: str) -> RecoveryResult:
        """Bring the canonical record in line with the provider.

        A call for an id that is already being recovered waits for, and
        returns, the running recovery's result.
        """
        task = self._inflight.get(subscription_id)
        if task is not None:
            logger.info(
                "recovery_joined",
                extra={"subscription_id": sanitize_for_log(subscription_id)},
            )
            return await asyncio.shield(task)

        if self._cooldown_exhausted(subscription_id):
            self._stats.rejected_by_cooldown += 1
            logger.warning(
                "recovery_cooldown",
                extra={
                    "subscription_id": sanitize_for_log(subscription_id),
                    "cooldown_seconds": self._config.recovery_cooldown_seconds,
                },
            )
            return RecoveryResult(False, subscription_id, error="cooldown")

        task = asyncio.get_running_loop().create_task(self._run(subscription_id))
        self._inflight[subscription_id] = task
        self._stats.in_flight = len(self._inflight)
        task.add_done_callback(lambda t: self._clear_inflight(subscription_id, t))
        return await asyncio.shield(task)

    def is_recovering(self, subscription_id: str) -> bool:
        return subscription_id in self._inflight

    def get_attempts(self, subscription_id: str) -> list[RecoveryAttempt]:
        return list(self._attempts.get(subscription_id, []))

    def get_stats(self) -> RecoveryStats:
        stats = RecoveryStats(
            total_attempts=self._stats.total_attempts,
            successful=self._stats.successful,
            failed=self._stats.failed,
            rejected_by_cooldown=self._stats.rejected_by_cooldown,
            in_flight=len(self._inflight),
            last_recovery_at=self._stats.last_recovery_at,
            attempts_by_subscription={k: len(v) for k, v in self._attempts.items()},
        )
        return stats

    async def stop(self) -> None:
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()

    def _clear_inflight(self, subscription_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(subscription_id) is task:
            del self._inflight[subscription_id]
        self._stats.in_flight = len(self._inflight)

    def _cooldown_exhausted(self, subscription_id: str) -> bool:
        window_start = self._clock() - self._config.recovery_cooldown_seconds
        recent = [
            a for a in self._attempts.get(subscription_id, []) if a.timestamp >= window_start
        ]
        return len(recent) >= self._config.recovery_max_attempts_per_cooldown

    async def _run(self, subscription_id: str) -> RecoveryResult:
        started_at = self._clock()
        try:
            result = await self._recover(subscription_id)
        except EntitlementError as e:
            result = RecoveryResult(False, subscription_id, error=type(e).__name__)
            logger.error(
                "recovery_failed",
                extra={
                    "subscription_id": sanitize_for_log(subscription_id),
                    "retryable": e.retryable,
                    **get_safe_error_info(e),
                },
            )
        except Exception as e:
            result = RecoveryResult(False, subscription_id, error=type(e).__name__)
            logger.error(
                "recovery_failed",
                extra={
                    "subscription_id": sanitize_for_log(subscription_id),
                    **get_safe_error_info(e),
                },
                exc_info=True,
            )

        self._attempts.setdefault(subscription_id, []).append(
            RecoveryAttempt(started_at, result.success, result.error)
        )
        self._stats.total_attempts += 1
        if result.success:
            self._stats.successful += 1
        else:
            self._stats.failed += 1
        self._stats.last_recovery_at = self._clock()
        return result

    async def _recover(self, subscription_id: str) -> RecoveryResult:
        loop = asyncio.get_running_loop()

        try:
            parsed = await self._fetch(subscription_id)
        except ProviderNotFoundError:
            logger.error(
                "recovery_not_found",
                extra={"subscription_id": sanitize_for_log(subscription_id)},
            )
            return RecoveryResult(False, subscription_id, error="not_found")

        resolution = await loop.run_in_executor(
            None, resolve_user_id, parsed.metadata, parsed.customer_id, self._store
        )
        if not resolution.resolved:
            return RecoveryResult(
                False,
                subscription_id,
                remote_status=parsed.status,
                error="unresolved_user",
            )
        user_id = resolution.user_id

        existing = await loop.run_in_executor(None, self._store.get, user_id)
        changed = False
        if (
            existing is None
            or existing.subscription_id != subscription_id
            or existing.status != parsed.status
        ):
            patch = (
                parsed.terminal_patch()
                if parsed.status == SubscriptionStatus.CANCELED
                else parsed.full_patch()
            )
            applied = await loop.run_in_executor(
                None, self._updater.apply, user_id, patch, RECOVERY_ORIGIN
            )
            changed = applied.applied

        logger.info(
            "recovery_completed",
            extra={
                "subscription_id": sanitize_for_log(subscription_id),
                "user_id": sanitize_for_log(user_id),
                "remote_status": parsed.status.value,
                "previous_status": existing.status.value if existing else None,
                "changed": changed,
            },
        )

        if self._cache_manager is not None:
            await self._cache_manager.refresh_subscription(user_id)

        return RecoveryResult(
            True,
            subscription_id,
            user_id=user_id,
            changed=changed,
            remote_status=parsed.status,
        )

    async def _fetch(self, subscription_id: str) -> ParsedSubscription:
        loop = asyncio.get_running_loop()
        async for attempt in provider_retry_policy(
            self._config.recovery_max_attempts,
            self._config.recovery_base_delay_seconds,
            self._config.recovery_max_delay_seconds,
        ):
            with attempt:
                obj = await loop.run_in_executor(
                    None, self._billing.get_subscription, subscription_id
                )
        return parse_subscription(obj)
