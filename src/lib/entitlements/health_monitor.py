"""
Webhook Health Monitor
======================

Samples recent webhook deliveries from the billing provider on an interval,
classifies delivery health and enables fallback mode when webhooks cannot
be trusted.

For On-Call Engineers:
    recommended_action, in priority order:
    - manual_intervention: >= MAX_FAILED_EVENTS failed deliveries in the
      window. Logged at CRITICAL as `webhook_manual_intervention_required`.
      Check the endpoint in the provider dashboard.
    - fallback: at least one failed delivery. Recovery starts polling the
      provider for stuck subscriptions.
    - monitor: no events in the window, listing failed, or average
      delivery time above WEBHOOK_TIMEOUT_MS
    - none: everything delivered

    The last result is persisted on the user's WEBHOOK_HEALTH item
    (health_* attributes, last_checked, fallback_mode).

For Developers:
    - analyze() is pure and static; test the decision table with it
    - A record stuck in `incomplete` longer than STUCK_THRESHOLD_SECONDS
      gets one background recovery at a time (see _recovery_tasks)
"""

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Sequence

from src.lambdas.shared.billing.stripe_client import BillingProviderClient
from src.lambdas.shared.canonical_store import CanonicalStore
from src.lambdas.shared.errors.billing_errors import CanonicalStoreError
from src.lambdas.shared.logging_utils import get_safe_error_info, sanitize_for_log
from src.lambdas.shared.models.health import HealthStatus, RecommendedAction
from src.lambdas.shared.models.subscription import SubscriptionRecord, SubscriptionStatus
from src.lambdas.shared.models.webhook_event import WebhookEvent
from src.lib.entitlements.config import EntitlementConfig
from src.lib.entitlements.recovery import RecoveryManager

logger = logging.getLogger(__name__)


class WebhookHealthMonitor:
    """Periodic webhook health checks for one user session.

    Args:
        billing: Billing provider client (event listing)
        store: Canonical store (record read, health persistence)
        recovery: Recovery manager used for stuck subscriptions
        config: Interval, thresholds and lookback window
        user_id: Whose record region holds the health item
        clock: Returns seconds; defaults to time.time
    """

    def __init__(
        self,
        billing: BillingProviderClient,
        store: CanonicalStore,
        recovery: RecoveryManager,
        config: EntitlementConfig,
        user_id: str,
        clock: Callable[[], float] | None = None,
    ):
        self._billing = billing
        self._store = store
        self._recovery = recovery
        self._config = config
        self._user_id = user_id
        self._clock = clock or time.time

        self._task: asyncio.Task | None = None
        self._recovery_tasks: dict[str, asyncio.Task] = {}
        self._last_status: HealthStatus | None = None
        self._fallback_enabled_at: int | None = None

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            "health_monitor_started",
            extra={
                "user_id": sanitize_for_log(self._user_id),
                "interval_seconds": self._config.health_check_interval_seconds,
            },
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        pending = [t for t in (task, *self._recovery_tasks.values()) if t is not None]
        for t in pending:
            t.cancel()
        for t in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        self._recovery_tasks.clear()
        logger.info("health_monitor_stopped", extra={"user_id": sanitize_for_log(self._user_id)})

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            try:
                await self.perform_health_check()
            except Exception as e:
                logger.error("health_check_failed", extra=get_safe_error_info(e), exc_info=True)
            await asyncio.sleep(self._config.health_check_interval_seconds)

    # -- checks ------------------------------------------------------------

    async def perform_health_check(self) -> HealthStatus:
        """Sample deliveries, classify, persist, and react."""
        loop = asyncio.get_running_loop()
        events_result, record_result = await asyncio.gather(
            loop.run_in_executor(
                None,
                self._billing.list_recent_webhook_events,
                self._config.health_lookback_hours,
            ),
            loop.run_in_executor(None, self._store.get, self._user_id),
            return_exceptions=True,
        )

        if isinstance(events_result, BaseException):
            logger.warning("webhook_event_listing_failed", extra=get_safe_error_info(events_result))
            events: Sequence[WebhookEvent] = []
        else:
            events = events_result

        record: SubscriptionRecord | None = None
        if isinstance(record_result, BaseException):
            logger.warning("health_record_read_failed", extra=get_safe_error_info(record_result))
        else:
            record = record_result

        status = self.analyze(
            events, self._config.webhook_timeout_ms, self._config.max_failed_events
        )
        now_ms = int(self._clock() * 1000)
        status = status.model_copy(update={"last_checked": now_ms})
        self._last_status = status

        if status.recommended_action == RecommendedAction.MANUAL_INTERVENTION:
            logger.critical(
                "webhook_manual_intervention_required",
                extra={
                    "user_id": sanitize_for_log(self._user_id),
                    "failed_event_count": status.failed_event_count,
                    "last_failure_reason": sanitize_for_log(status.last_failure_reason),
                },
            )
        if status.requires_fallback and self._fallback_enabled_at is None:
            self._fallback_enabled_at = now_ms
            logger.warning(
                "webhook_fallback_enabled",
                extra={
                    "user_id": sanitize_for_log(self._user_id),
                    "recommended_action": status.recommended_action.value,
                },
            )

        await self._persist(status)

        if record is not None:
            self._scan_for_stuck(record, now_ms)

        logger.info(
            "webhook_health_checked",
            extra={
                "user_id": sanitize_for_log(self._user_id),
                "is_healthy": status.is_healthy,
                "failed_event_count": status.failed_event_count,
                "successful_event_count": status.successful_event_count,
                "recommended_action": status.recommended_action.value,
            },
        )
        return status

    @staticmethod
    def analyze(
        events: Sequence[WebhookEvent],
        webhook_timeout_ms: float,
        max_failed: int,
    ) -> HealthStatus:
        """Classify a window of delivery samples.

        Zero events yields `monitor`: silence may be healthy or a total
        outage, and neither warrants paging.
        """
        failed = [e for e in events if e.failed]
        delivered = [e for e in events if e.delivered]
        timings = [e.delivery_time for e in delivered if e.delivery_time is not None]
        average = sum(timings) / len(timings) if timings else 0.0

        if not events:
            action = RecommendedAction.MONITOR
        elif len(failed) >= max_failed:
            action = RecommendedAction.MANUAL_INTERVENTION
        elif failed:
            action = RecommendedAction.FALLBACK
        elif average > webhook_timeout_ms:
            action = RecommendedAction.MONITOR
        else:
            action = RecommendedAction.NONE

        last_failure = max(failed, key=lambda e: e.created) if failed else None
        return HealthStatus(
            is_healthy=not failed and bool(delivered),
            last_successful_event=max((e.created for e in delivered), default=None),
            failed_event_count=len(failed),
            successful_event_count=len(delivered),
            average_delivery_time=average,
            recommended_action=action,
            last_failure_reason=(last_failure.error or "delivery failed")
            if last_failure
            else None,
        )

    async def _persist(self, status: HealthStatus) -> None:
        fields = status.to_dynamodb_fields()
        fields["fallback_mode"] = self._fallback_enabled_at is not None
        if self._fallback_enabled_at is not None:
            fields["fallback_enabled_at"] = self._fallback_enabled_at
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._store.put_health, self._user_id, fields)
        except CanonicalStoreError as e:
            logger.warning("health_status_persist_failed", extra=get_safe_error_info(e))

    def _scan_for_stuck(self, record: SubscriptionRecord, now_ms: int) -> None:
        if record.status != SubscriptionStatus.INCOMPLETE or not record.subscription_id:
            return
        if now_ms - record.updated_at <= self._config.stuck_threshold_ms:
            return

        subscription_id = record.subscription_id
        running = self._recovery_tasks.get(subscription_id)
        if running is not None and not running.done():
            logger.debug(
                "stuck_recovery_already_running",
                extra={"subscription_id": sanitize_for_log(subscription_id)},
            )
            return

        logger.warning(
            "stuck_subscription_detected",
            extra={
                "user_id": sanitize_for_log(self._user_id),
                "subscription_id": sanitize_for_log(subscription_id),
                "stuck_for_ms": now_ms - record.updated_at,
            },
        )
        task = asyncio.get_running_loop().create_task(
            self._recovery.fix_subscription(subscription_id)
        )
        self._recovery_tasks[subscription_id] = task
        task.add_done_callback(lambda t: self._recovery_done(subscription_id, t))

    def _recovery_done(self, subscription_id: str, task: asyncio.Task) -> None:
        if self._recovery_tasks.get(subscription_id) is task:
            del self._recovery_tasks[subscription_id]
        if task.cancelled():
            return
        result = task.result()
        logger.info(
            "stuck_recovery_finished",
            extra={
                "subscription_id": sanitize_for_log(subscription_id),
                "success": result.success,
                "changed": result.changed,
            },
        )

    # -- readers -----------------------------------------------------------

    async def get_current_health_status(self) -> HealthStatus | None:
        """Persisted status, falling back to the last in-memory result."""
        loop = asyncio.get_running_loop()
        try:
            item = await loop.run_in_executor(None, self._store.get_health, self._user_id)
        except CanonicalStoreError as e:
            logger.warning("health_status_read_failed", extra=get_safe_error_info(e))
            return self._last_status
        if not item:
            return self._last_status
        return HealthStatus.from_dynamodb_fields(item)

    def is_fallback_enabled(self) -> bool:
        return self._fallback_enabled_at is not None

    @property
    def fallback_enabled_at(self) -> int | None:
        return self._fallback_enabled_at
