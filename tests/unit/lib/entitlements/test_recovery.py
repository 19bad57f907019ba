"""
Unit Tests for RecoveryManager
==============================

Provider state comes from FakeBillingClient; writes go through a real
CanonicalUpdater onto FakeCanonicalStore.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.lambdas.shared.canonical_update import CanonicalUpdater
from src.lambdas.shared.errors.billing_errors import ProviderUnavailableError
from src.lambdas.shared.models.subscription import SubscriptionRecord, SubscriptionStatus
from src.lib.entitlements.recovery import RecoveryManager
from tests.conftest import assert_error_logged
from tests.fixtures.mocks.fake_billing import stripe_subscription
from tests.fixtures.mocks.fake_clock import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache_manager():
    cache = MagicMock()
    cache.refresh_subscription = AsyncMock(return_value=None)
    return cache


@pytest.fixture
def recovery(fake_billing, fake_store, cache_manager, fast_config, clock):
    updater = CanonicalUpdater(fake_store, clock=clock.ms)
    return RecoveryManager(
        billing=fake_billing,
        updater=updater,
        store=fake_store,
        cache_manager=cache_manager,
        config=fast_config,
        clock=clock,
    )


def _seed(fake_store, status=SubscriptionStatus.INCOMPLETE, **overrides):
    values = {
        "user_id": "user-1",
        "subscription_id": "sub_123",
        "customer_id": "cus_123",
        "status": status,
        "created_at": 1000,
        "updated_at": 1000,
    }
    values.update(overrides)
    fake_store.seed(SubscriptionRecord(**values))


def _provider(fake_billing, status="active"):
    fake_billing.add_subscription(
        stripe_subscription(status=status, metadata={"user_id": "user-1"})
    )


class TestFixSubscription:
    """Provider-driven repair."""

    @pytest.mark.asyncio
    async def test_repairs_stale_record(self, recovery, fake_store, fake_billing, cache_manager):
        _seed(fake_store)
        _provider(fake_billing)

        result = await recovery.fix_subscription("sub_123")

        assert result.success
        assert result.changed
        assert result.user_id == "user-1"
        assert result.remote_status == SubscriptionStatus.ACTIVE
        assert fake_store.record("user-1").status == SubscriptionStatus.ACTIVE
        cache_manager.refresh_subscription.assert_awaited_once_with("user-1")

    @pytest.mark.asyncio
    async def test_matching_record_is_not_rewritten(self, recovery, fake_store, fake_billing):
        _seed(fake_store, status=SubscriptionStatus.ACTIVE)
        _provider(fake_billing)

        result = await recovery.fix_subscription("sub_123")

        assert result.success
        assert not result.changed
        assert fake_store.merge_calls == []

    @pytest.mark.asyncio
    async def test_creates_missing_record(self, recovery, fake_store, fake_billing):
        _provider(fake_billing)

        result = await recovery.fix_subscription("sub_123")

        assert result.changed
        assert fake_store.record("user-1").subscription_id == "sub_123"

    @pytest.mark.asyncio
    async def test_canceled_upstream_becomes_terminal(self, recovery, fake_store, fake_billing):
        _seed(fake_store, status=SubscriptionStatus.ACTIVE)
        _provider(fake_billing, status="canceled")

        result = await recovery.fix_subscription("sub_123")

        assert result.remote_status == SubscriptionStatus.CANCELED
        record = fake_store.record("user-1")
        assert record.status == SubscriptionStatus.CANCELED
        assert record.canceled_at is not None

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_recovery(self, recovery, fake_store, fake_billing):
        _seed(fake_store)
        _provider(fake_billing)

        results = await asyncio.gather(
            *(recovery.fix_subscription("sub_123") for _ in range(5))
        )

        assert fake_billing.get_subscription_calls == ["sub_123"]
        assert all(r.success for r in results)
        assert recovery.get_stats().total_attempts == 1
        assert not recovery.is_recovering("sub_123")

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, recovery, fake_store, fake_billing):
        _seed(fake_store)
        _provider(fake_billing)
        fake_billing.fail_next(
            "sub_123", ProviderUnavailableError("down"), ProviderUnavailableError("down")
        )

        result = await recovery.fix_subscription("sub_123")

        assert result.success
        assert len(fake_billing.get_subscription_calls) == 3

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, recovery, fake_store, fake_billing, caplog):
        _seed(fake_store)
        fake_billing.fail_next("sub_123", *[ProviderUnavailableError("down")] * 5)

        with caplog.at_level(logging.ERROR):
            result = await recovery.fix_subscription("sub_123")

        assert not result.success
        assert result.error == "ProviderUnavailableError"
        assert len(fake_billing.get_subscription_calls) == 3
        assert_error_logged(caplog, "recovery_failed")

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self, recovery, fake_billing, caplog):
        with caplog.at_level(logging.ERROR):
            result = await recovery.fix_subscription("sub_missing")

        assert not result.success
        assert result.error == "not_found"
        assert fake_billing.get_subscription_calls == ["sub_missing"]
        assert_error_logged(caplog, "recovery_not_found")

    @pytest.mark.asyncio
    async def test_unresolved_user(self, recovery, fake_store, fake_billing, cache_manager):
        fake_billing.add_subscription(stripe_subscription(customer="cus_unknown"))

        result = await recovery.fix_subscription("sub_123")

        assert not result.success
        assert result.error == "unresolved_user"
        assert fake_store.merge_calls == []
        cache_manager.refresh_subscription.assert_not_awaited()


class TestCooldown:
    @pytest.mark.asyncio
    async def test_attempts_beyond_limit_are_rejected(self, recovery, fake_store, fake_billing):
        _seed(fake_store)
        _provider(fake_billing)

        for _ in range(3):
            assert (await recovery.fix_subscription("sub_123")).success

        rejected = await recovery.fix_subscription("sub_123")

        assert not rejected.success
        assert rejected.error == "cooldown"
        assert len(fake_billing.get_subscription_calls) == 3
        assert recovery.get_stats().rejected_by_cooldown == 1

    @pytest.mark.asyncio
    async def test_window_expires(self, recovery, fake_store, fake_billing, clock, fast_config):
        _seed(fake_store)
        _provider(fake_billing)
        for _ in range(3):
            await recovery.fix_subscription("sub_123")

        clock.advance(fast_config.recovery_cooldown_seconds + 1)

        assert (await recovery.fix_subscription("sub_123")).success

    @pytest.mark.asyncio
    async def test_failed_attempts_count_too(self, recovery, fake_billing):
        for _ in range(3):
            await recovery.fix_subscription("sub_missing")

        result = await recovery.fix_subscription("sub_missing")

        assert result.error == "cooldown"
        attempts = recovery.get_attempts("sub_missing")
        assert len(attempts) == 3
        assert not any(a.success for a in attempts)


class TestForceActivate:
    @pytest.mark.asyncio
    async def test_true_when_provider_is_active(self, recovery, fake_store, fake_billing):
        _seed(fake_store)
        _provider(fake_billing, status="trialing")

        assert await recovery.force_activate_subscription("sub_123")

    @pytest.mark.asyncio
    async def test_false_when_provider_is_not_active(self, recovery, fake_store, fake_billing):
        _seed(fake_store)
        _provider(fake_billing, status="past_due")

        assert not await recovery.force_activate_subscription("sub_123")
        assert fake_store.record("user-1").status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_false_on_failure(self, recovery):
        assert not await recovery.force_activate_subscription("sub_missing")


class TestStats:
    @pytest.mark.asyncio
    async def test_counts(self, recovery, fake_store, fake_billing, clock):
        _seed(fake_store)
        _provider(fake_billing)

        await recovery.fix_subscription("sub_123")
        await recovery.fix_subscription("sub_missing")
        stats = recovery.get_stats()

        assert stats.total_attempts == 2
        assert stats.successful == 1
        assert stats.failed == 1
        assert stats.in_flight == 0
        assert stats.last_recovery_at == clock.now
        assert stats.attempts_by_subscription == {"sub_123": 1, "sub_missing": 1}

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight(self, recovery, fake_billing):
        blocked = asyncio.Event()

        async def never_finishes(subscription_id):
            blocked.set()
            await asyncio.sleep(3600)

        recovery._recover = never_finishes
        waiter = asyncio.ensure_future(recovery.fix_subscription("sub_123"))
        await blocked.wait()

        await recovery.stop()

        assert not recovery.is_recovering("sub_123")
        with pytest.raises(asyncio.CancelledError):
            await waiter
