"""
Subscription Cache Manager
==========================

Client-side entitlement reads. Every read resolves to some value; the
worst case is a conservative default that grants nothing.

Resolution order (force_refresh skips 1 and 2):
    1. valid cache entry
    2. live value from the canonical store push subscription
    3. direct canonical store read
    4. billing provider verification (canonical read failed, subscription
       id known from an earlier snapshot)
    5. local fallback copy, if younger than its own max age
    6. default record tagged `default`

For On-Call Engineers:
    - `subscription_resolved` with source=default means the store and the
      local copy were both unavailable. The user sees the free tier.
    - `canonical_push_error` means the watch lost access; reads keep
      serving the last valid entry until the store answers again.

For Developers:
    - Runs on one asyncio loop. Store and provider calls are blocking and
      go through run_in_executor.
    - Concurrent resolves for one user share a single task (see _inflight).
      A forced refresh only joins a task that has not yet read the store;
      otherwise it queues a new read behind it, so a refresh requested after
      a write never returns the pre-write record.
    - Push callbacks arrive on the store's watcher thread and are
      marshalled onto the loop with call_soon_threadsafe.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from src.lambdas.shared.billing.payload import parse_subscription
from src.lambdas.shared.billing.stripe_client import BillingProviderClient
from src.lambdas.shared.canonical_store import CanonicalStore, Unsubscribe
from src.lambdas.shared.logging_utils import get_safe_error_info, sanitize_for_log
from src.lambdas.shared.models.cache_entry import CacheEntry, CacheSource
from src.lambdas.shared.models.subscription import (
    SubscriptionRecord,
    SubscriptionStatus,
    default_subscription_record,
    is_subscription_active,
)
from src.lib.entitlements.broadcast import (
    BroadcastChannel,
    CacheInvalidatedMessage,
    SubscriptionUpdatedMessage,
)
from src.lib.entitlements.config import EntitlementConfig
from src.lib.entitlements.local_fallback import LocalFallbackStore

logger = logging.getLogger(__name__)

Listener = Callable[[SubscriptionRecord | None], None]


@dataclass(frozen=True)
class ResolutionResult:
    """A resolved record and the tier that produced it."""

    record: SubscriptionRecord | None
    source: CacheSource
    from_cache: bool = False


@dataclass
class _PendingRead:
    task: asyncio.Task | None = None
    read_started: bool = False


class SubscriptionCacheManager:
    """Cached, deduplicated, fail-safe subscription reads for one process.

    Args:
        store: Canonical store (read and subscribe only)
        config: Engine configuration
        billing: Optional provider client for verification when the store fails
        local_fallback: Optional file-backed fallback copies
        broadcast: Optional channel shared with sibling managers
        clock: Returns seconds; defaults to time.time
    """

    def __init__(
        self,
        store: CanonicalStore,
        config: EntitlementConfig,
        billing: BillingProviderClient | None = None,
        local_fallback: LocalFallbackStore | None = None,
        broadcast: BroadcastChannel | None = None,
        clock: Callable[[], float] | None = None,
    ):
        self._store = store
        self._config = config
        self._billing = billing
        self._local_fallback = local_fallback
        self._broadcast = broadcast
        self._clock = clock or time.time

        self._entries: dict[str, CacheEntry] = {}
        self._live: dict[str, CacheEntry] = {}
        self._subscription_ids: dict[str, str] = {}
        self._inflight: dict[str, _PendingRead] = {}
        self._listeners: dict[str, list[Listener]] = {}
        self._watches: dict[str, Unsubscribe] = {}
        # Watches opened by add_listener, closed with the last listener
        self._listener_watches: set[str] = set()
        self._loop: asyncio.AbstractEventLoop | None = None

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        if self._loop is not None:
            return
        self._loop = asyncio.get_running_loop()
        if self._broadcast is not None:
            self._broadcast.on_message(self._on_broadcast)
        logger.info("subscription_cache_started")

    async def stop(self) -> None:
        for user_id in list(self._watches):
            self.unwatch(user_id)
        for pending in list(self._inflight.values()):
            pending.task.cancel()
        self._inflight.clear()
        self._listeners.clear()
        if self._broadcast is not None:
            self._broadcast.close()
        self._loop = None
        logger.info("subscription_cache_stopped")

    @property
    def started(self) -> bool:
        return self._loop is not None

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError("SubscriptionCacheManager.start() has not been awaited")
        return self._loop

    # -- reads -------------------------------------------------------------

    async def get_subscription(
        self, user_id: str, force_refresh: bool = False
    ) -> SubscriptionRecord | None:
        result = await self.resolve(user_id, force_refresh=force_refresh)
        return result.record

    async def resolve(self, user_id: str, force_refresh: bool = False) -> ResolutionResult:
        """Resolve through the fallback chain. Never raises for read failures."""
        loop = self._require_loop()

        if not force_refresh:
            now = self._clock()
            entry = self._entries.get(user_id)
            if entry is not None and entry.is_valid(now, self._config.cache_timeout_seconds):
                return ResolutionResult(entry.data, entry.source, from_cache=True)

            live = self._live.get(user_id)
            if live is not None and user_id in self._watches:
                self._entries[user_id] = CacheEntry(live.data, now, CacheSource.CANONICAL)
                return ResolutionResult(live.data, CacheSource.CANONICAL, from_cache=True)

        pending = self._inflight.get(user_id)
        if pending is None:
            pending = self._start_read(loop, user_id)
        elif force_refresh and pending.read_started:
            pending = self._start_read(loop, user_id, after=pending.task)
        # Cancelling one caller must not cancel the shared read
        return await asyncio.shield(pending.task)

    def _start_read(
        self,
        loop: asyncio.AbstractEventLoop,
        user_id: str,
        after: asyncio.Task | None = None,
    ) -> _PendingRead:
        pending = _PendingRead()
        pending.task = loop.create_task(self._resolve_uncached(user_id, pending, after))
        self._inflight[user_id] = pending
        pending.task.add_done_callback(lambda _: self._clear_inflight(user_id, pending))
        return pending

    def _clear_inflight(self, user_id: str, pending: _PendingRead) -> None:
        if self._inflight.get(user_id) is pending:
            del self._inflight[user_id]

    async def _resolve_uncached(
        self,
        user_id: str,
        pending: _PendingRead,
        after: asyncio.Task | None = None,
    ) -> ResolutionResult:
        loop = self._require_loop()
        if after is not None:
            # One store read per user at a time; the earlier result is not reused
            await asyncio.wait([after])
        pending.read_started = True

        try:
            record = await loop.run_in_executor(None, self._store.get, user_id)
        except Exception as e:
            logger.warning(
                "canonical_read_failed",
                extra={"user_id": sanitize_for_log(user_id), **get_safe_error_info(e)},
            )
        else:
            self._store_entry(user_id, record, CacheSource.CANONICAL)
            self._save_local(user_id, record)
            return self._resolved(user_id, record, CacheSource.CANONICAL)

        previous = self._last_known(user_id)

        record = await self._verify_with_provider(user_id, previous)
        if record is not None:
            self._store_entry(user_id, record, CacheSource.BILLING_PROVIDER)
            return self._resolved(user_id, record, CacheSource.BILLING_PROVIDER)

        if self._local_fallback is not None:
            loaded = await loop.run_in_executor(None, self._local_fallback.load, user_id)
            if loaded is not None:
                record, _saved_at = loaded
                self._store_entry(user_id, record, CacheSource.LOCAL_FALLBACK)
                return self._resolved(user_id, record, CacheSource.LOCAL_FALLBACK)

        record = default_subscription_record(user_id, self._config.free_workout_limit)
        self._store_entry(user_id, record, CacheSource.DEFAULT)
        return self._resolved(user_id, record, CacheSource.DEFAULT)

    def _last_known(self, user_id: str) -> SubscriptionRecord | None:
        entry = self._entries.get(user_id)
        if entry is not None and entry.data is not None and entry.source != CacheSource.DEFAULT:
            return entry.data
        if self._local_fallback is not None:
            loaded = self._local_fallback.load(user_id)
            if loaded is not None and loaded[0] is not None:
                return loaded[0]
        return None

    async def _verify_with_provider(
        self, user_id: str, previous: SubscriptionRecord | None
    ) -> SubscriptionRecord | None:
        """Provider view of the last known subscription; never persisted."""
        subscription_id = self._subscription_ids.get(user_id) or (
            previous.subscription_id if previous is not None else None
        )
        if self._billing is None or not subscription_id:
            return None

        loop = self._require_loop()
        try:
            obj = await loop.run_in_executor(
                None, self._billing.get_subscription, subscription_id
            )
            parsed = parse_subscription(obj)
        except Exception as e:
            logger.warning(
                "provider_verification_failed",
                extra={
                    "user_id": sanitize_for_log(user_id),
                    "subscription_id": sanitize_for_log(subscription_id),
                    **get_safe_error_info(e),
                },
            )
            return None

        base = previous or default_subscription_record(
            user_id, self._config.free_workout_limit
        )
        update = parsed.full_patch().changes()
        if parsed.status != SubscriptionStatus.CANCELED:
            update["canceled_at"] = None
        return base.model_copy(update=update)

    def _resolved(
        self, user_id: str, record: SubscriptionRecord | None, source: CacheSource
    ) -> ResolutionResult:
        log = logger.warning if source == CacheSource.DEFAULT else logger.debug
        log(
            "subscription_resolved",
            extra={
                "user_id": sanitize_for_log(user_id),
                "source": source.value,
                "status": record.status.value if record is not None else None,
            },
        )
        return ResolutionResult(record, source)

    def _store_entry(
        self, user_id: str, record: SubscriptionRecord | None, source: CacheSource
    ) -> None:
        self._entries[user_id] = CacheEntry(record, self._clock(), source)
        if record is not None and record.subscription_id:
            self._subscription_ids[user_id] = record.subscription_id

    def _save_local(self, user_id: str, record: SubscriptionRecord | None) -> None:
        if self._local_fallback is not None:
            self._local_fallback.save(user_id, record)

    # -- refresh and invalidation -----------------------------------------

    async def refresh_subscription(self, user_id: str) -> SubscriptionRecord | None:
        """Resolve end to end, then tell listeners and sibling managers."""
        result = await self.resolve(user_id, force_refresh=True)
        self._notify(user_id, result.record)
        if result.source == CacheSource.CANONICAL:
            self._post_update(user_id, result.record)
        return result.record

    def invalidate(self, user_id: str, broadcast: bool = True) -> None:
        """Make the cached entry invalid. The entry is kept for get_cache_info."""
        entry = self._entries.get(user_id)
        if entry is not None:
            expired = self._clock() - self._config.cache_timeout_seconds
            self._entries[user_id] = CacheEntry(entry.data, expired, entry.source)
        self._live.pop(user_id, None)
        if broadcast and self._broadcast is not None:
            self._broadcast.post(
                CacheInvalidatedMessage(
                    origin_id=self._broadcast.origin_id,
                    user_id=user_id,
                    sent_at=self._clock(),
                )
            )

    async def wait_for_activation(self, user_id: str, timeout: float | None = None) -> bool:
        """Poll until the user's subscription grants entitlement.

        Used right after checkout while the webhook is in flight. Polls
        with exponential backoff and gives up after timeout seconds.
        """
        loop = self._require_loop()
        timeout = self._config.activation_timeout_seconds if timeout is None else timeout
        deadline = loop.time() + timeout
        delay = self._config.activation_poll_initial_seconds
        attempts = 0

        while True:
            attempts += 1
            record = await self.get_subscription(user_id, force_refresh=True)
            if is_subscription_active(record, int(self._clock() * 1000)):
                logger.info(
                    "subscription_activated",
                    extra={"user_id": sanitize_for_log(user_id), "attempts": attempts},
                )
                self._notify(user_id, record)
                return True
            if loop.time() + delay > deadline:
                break
            await asyncio.sleep(delay)
            delay = min(
                delay * self._config.activation_poll_multiplier,
                self._config.activation_poll_max_seconds,
            )

        logger.warning(
            "subscription_activation_timeout",
            extra={"user_id": sanitize_for_log(user_id), "attempts": attempts},
        )
        return False

    def get_cache_info(self, user_id: str) -> dict[str, Any]:
        now = self._clock()
        entry = self._entries.get(user_id)
        return {
            "cached": entry is not None,
            "valid": entry is not None
            and entry.is_valid(now, self._config.cache_timeout_seconds),
            "source": entry.source.value if entry is not None else None,
            "age_seconds": entry.age_seconds(now) if entry is not None else None,
            "watching": user_id in self._watches,
            "listeners": len(self._listeners.get(user_id, [])),
            "refresh_in_flight": user_id in self._inflight,
        }

    # -- push subscription -------------------------------------------------

    def watch(self, user_id: str) -> None:
        """Open the canonical push subscription for user_id (idempotent)."""
        loop = self._require_loop()
        if user_id in self._watches:
            return

        def on_change(record: SubscriptionRecord | None) -> None:
            loop.call_soon_threadsafe(self._apply_push, user_id, record)

        def on_error(exc: Exception) -> None:
            loop.call_soon_threadsafe(self._on_push_error, user_id, exc)

        self._watches[user_id] = self._store.subscribe(user_id, on_change, on_error)
        logger.debug("canonical_watch_started", extra={"user_id": sanitize_for_log(user_id)})

    def unwatch(self, user_id: str) -> None:
        unsubscribe = self._watches.pop(user_id, None)
        self._listener_watches.discard(user_id)
        self._live.pop(user_id, None)
        if unsubscribe is not None:
            unsubscribe()

    def _apply_push(self, user_id: str, record: SubscriptionRecord | None) -> None:
        if user_id not in self._watches:
            return
        entry = CacheEntry(record, self._clock(), CacheSource.CANONICAL)
        self._entries[user_id] = entry
        self._live[user_id] = entry
        if record is not None and record.subscription_id:
            self._subscription_ids[user_id] = record.subscription_id
        self._save_local(user_id, record)
        self._notify(user_id, record)
        self._post_update(user_id, record)

    def _on_push_error(self, user_id: str, exc: Exception) -> None:
        # Keep serving the last valid entry
        self._live.pop(user_id, None)
        logger.warning(
            "canonical_push_error",
            extra={"user_id": sanitize_for_log(user_id), **get_safe_error_info(exc)},
        )

    # -- listeners ---------------------------------------------------------

    def add_listener(self, user_id: str, callback: Listener) -> None:
        """Register callback for user_id and make sure the user is watched.

        If a valid entry is cached the callback is invoked with it at once.
        """
        self._listeners.setdefault(user_id, []).append(callback)
        if user_id not in self._watches:
            self.watch(user_id)
            self._listener_watches.add(user_id)

        entry = self._entries.get(user_id)
        if entry is not None and entry.is_valid(
            self._clock(), self._config.cache_timeout_seconds
        ):
            self._call_listener(user_id, callback, entry.data)

    def remove_listener(self, user_id: str, callback: Listener) -> None:
        listeners = self._listeners.get(user_id)
        if not listeners or callback not in listeners:
            return
        listeners.remove(callback)
        if not listeners:
            del self._listeners[user_id]
            if user_id in self._listener_watches:
                self.unwatch(user_id)

    def _notify(self, user_id: str, record: SubscriptionRecord | None) -> None:
        for callback in list(self._listeners.get(user_id, [])):
            self._call_listener(user_id, callback, record)

    def _call_listener(
        self, user_id: str, callback: Listener, record: SubscriptionRecord | None
    ) -> None:
        try:
            callback(record)
        except Exception as e:
            logger.error(
                "subscription_listener_failed",
                extra={"user_id": sanitize_for_log(user_id), **get_safe_error_info(e)},
            )

    # -- broadcast ---------------------------------------------------------

    def _post_update(self, user_id: str, record: SubscriptionRecord | None) -> None:
        if self._broadcast is None:
            return
        self._broadcast.post(
            SubscriptionUpdatedMessage(
                origin_id=self._broadcast.origin_id,
                user_id=user_id,
                record=record,
                sent_at=self._clock(),
            )
        )

    def _on_broadcast(
        self, message: SubscriptionUpdatedMessage | CacheInvalidatedMessage
    ) -> None:
        user_id = message.user_id
        if isinstance(message, CacheInvalidatedMessage):
            self.invalidate(user_id, broadcast=False)
            return

        current = self._entries.get(user_id)
        if (
            current is not None
            and current.data is not None
            and message.record is not None
            and message.record.updated_at < current.data.updated_at
        ):
            logger.debug(
                "broadcast_update_stale", extra={"user_id": sanitize_for_log(user_id)}
            )
            return

        self._store_entry(user_id, message.record, CacheSource.CANONICAL)
        self._notify(user_id, message.record)
