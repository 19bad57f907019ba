"""
Entitlement Service
===================

Composition root for one user session: wires the cache manager, recovery
manager and health monitor to a canonical store and a billing provider,
and owns their lifecycle.

Example:
    >>> async with EntitlementService.from_environment(user_id, hub=hub) as svc:
    ...     record = await svc.get_subscription()
    ...     if await svc.can_generate_workout():
    ...         ...

Construct one per session and pass it around; nothing here is a module
global.
"""

import asyncio
import logging
import os
import time
from collections.abc import Callable

from src.lambdas.shared.billing.stripe_client import (
    BillingProviderClient,
    StripeBillingClient,
)
from src.lambdas.shared.canonical_store import CanonicalStore, DynamoDBCanonicalStore
from src.lambdas.shared.canonical_update import CanonicalUpdater
from src.lambdas.shared.logging_utils import sanitize_for_log
from src.lambdas.shared.models.health import HealthStatus
from src.lambdas.shared.models.subscription import (
    SubscriptionRecord,
    can_generate_workout,
    default_subscription_record,
    remaining_free_workouts,
)
from src.lambdas.shared.secrets import get_secret_value
from src.lib.entitlements.broadcast import BroadcastHub
from src.lib.entitlements.cache_manager import Listener, SubscriptionCacheManager
from src.lib.entitlements.config import ConfigurationError, EntitlementConfig, get_config
from src.lib.entitlements.health_monitor import WebhookHealthMonitor
from src.lib.entitlements.local_fallback import LocalFallbackStore
from src.lib.entitlements.recovery import RecoveryManager

logger = logging.getLogger(__name__)


class EntitlementService:
    """Entitlement engine for one signed-in user.

    Args:
        user_id: The signed-in user
        store: Canonical store
        billing: Billing provider client
        config: Engine configuration; loaded from the environment if omitted
        hub: Broadcast hub shared with sibling sessions in this process
        local_fallback: Overrides the file store built from config
        clock: Returns seconds; shared by every component
    """

    def __init__(
        self,
        user_id: str,
        store: CanonicalStore,
        billing: BillingProviderClient,
        config: EntitlementConfig | None = None,
        hub: BroadcastHub | None = None,
        local_fallback: LocalFallbackStore | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self.user_id = user_id
        self.config = config or get_config()
        self._clock = clock or time.time

        self.updater = CanonicalUpdater(
            store,
            clock=lambda: int(self._clock() * 1000),
            free_workout_limit=self.config.free_workout_limit,
        )
        self.cache = SubscriptionCacheManager(
            store,
            self.config,
            billing=billing,
            local_fallback=local_fallback
            or LocalFallbackStore(
                self.config.local_fallback_dir,
                self.config.local_fallback_max_age_seconds,
                clock=self._clock,
            ),
            broadcast=hub.channel() if hub is not None else None,
            clock=self._clock,
        )
        self.recovery = RecoveryManager(
            billing, self.updater, store, self.cache, self.config, clock=self._clock
        )
        self.health = WebhookHealthMonitor(
            billing, store, self.recovery, self.config, user_id, clock=self._clock
        )
        self._started = False

    @classmethod
    def from_environment(
        cls, user_id: str, hub: BroadcastHub | None = None
    ) -> "EntitlementService":
        """Build against DynamoDB and Stripe using environment configuration.

        Raises:
            ConfigurationError: Neither STRIPE_API_KEY nor STRIPE_SECRET_ARN set
        """
        config = get_config()
        api_key = os.environ.get("STRIPE_API_KEY", "")
        if not api_key:
            secret_arn = os.environ.get("STRIPE_SECRET_ARN", "")
            if not secret_arn:
                raise ConfigurationError(
                    "STRIPE_API_KEY or STRIPE_SECRET_ARN environment variable is required"
                )
            api_key = get_secret_value(secret_arn, "api_key", "STRIPE_API_KEY")

        store = DynamoDBCanonicalStore(poll_interval=config.store_poll_interval_seconds)
        return cls(user_id, store, StripeBillingClient(api_key), config=config, hub=hub)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        await self.cache.start()
        self.cache.watch(self.user_id)
        self.health.start()
        self._started = True
        logger.info("entitlement_service_started", extra={"user_id": sanitize_for_log(self.user_id)})

    async def stop(self) -> None:
        if not self._started:
            return
        await self.health.stop()
        await self.recovery.stop()
        await self.cache.stop()
        self._started = False
        logger.info("entitlement_service_stopped", extra={"user_id": sanitize_for_log(self.user_id)})

    async def __aenter__(self) -> "EntitlementService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    # -- reads -------------------------------------------------------------

    async def get_subscription(self, force_refresh: bool = False) -> SubscriptionRecord | None:
        return await self.cache.get_subscription(self.user_id, force_refresh=force_refresh)

    async def refresh_subscription(self) -> SubscriptionRecord | None:
        return await self.cache.refresh_subscription(self.user_id)

    def add_listener(self, callback: Listener) -> None:
        self.cache.add_listener(self.user_id, callback)

    def remove_listener(self, callback: Listener) -> None:
        self.cache.remove_listener(self.user_id, callback)

    async def wait_for_activation(self, timeout: float | None = None) -> bool:
        return await self.cache.wait_for_activation(self.user_id, timeout=timeout)

    async def can_generate_workout(self) -> bool:
        record = await self._usage_record()
        return can_generate_workout(record, int(self._clock() * 1000))

    async def remaining_free_workouts(self) -> int:
        return remaining_free_workouts(await self._usage_record())

    async def _usage_record(self) -> SubscriptionRecord:
        # No record yet means a new user with the whole free tier
        record = await self.get_subscription()
        if record is None:
            return default_subscription_record(self.user_id, self.config.free_workout_limit)
        return record

    # -- writes ------------------------------------------------------------

    async def record_workout(self) -> SubscriptionRecord:
        """Count a generated workout and refresh listeners."""
        loop = asyncio.get_running_loop()
        record = await loop.run_in_executor(None, self.updater.record_workout, self.user_id)
        await self.cache.refresh_subscription(self.user_id)
        return record

    async def force_activate_subscription(self, subscription_id: str) -> bool:
        return await self.recovery.force_activate_subscription(subscription_id)

    # -- health ------------------------------------------------------------

    async def get_health_status(self) -> HealthStatus | None:
        return await self.health.get_current_health_status()

    def is_fallback_enabled(self) -> bool:
        return self.health.is_fallback_enabled()
