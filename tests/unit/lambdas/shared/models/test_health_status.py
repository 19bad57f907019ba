"""Unit tests for HealthStatus, CacheEntry and WebhookEvent models."""

from src.lambdas.shared.models.cache_entry import CacheEntry, CacheSource
from src.lambdas.shared.models.health import HealthStatus, RecommendedAction
from src.lambdas.shared.models.webhook_event import WebhookEvent


class TestRecommendedAction:
    def test_severity_order(self):
        ordered = sorted(RecommendedAction, key=lambda a: a.severity)
        assert ordered == [
            RecommendedAction.NONE,
            RecommendedAction.MONITOR,
            RecommendedAction.FALLBACK,
            RecommendedAction.MANUAL_INTERVENTION,
        ]

    def test_requires_fallback(self):
        assert HealthStatus(
            is_healthy=False, recommended_action=RecommendedAction.FALLBACK
        ).requires_fallback
        assert HealthStatus(
            is_healthy=False, recommended_action=RecommendedAction.MANUAL_INTERVENTION
        ).requires_fallback
        assert not HealthStatus(
            is_healthy=True, recommended_action=RecommendedAction.NONE
        ).requires_fallback


class TestHealthStatusPersistence:
    """health_* attribute round trip."""

    def test_fields_are_prefixed_and_rounded(self):
        status = HealthStatus(
            is_healthy=False,
            failed_event_count=2,
            successful_event_count=3,
            average_delivery_time=1234.6,
            recommended_action=RecommendedAction.FALLBACK,
            last_failure_reason="1 deliveries pending",
            last_checked=1_700_000_000_000,
        )
        fields = status.to_dynamodb_fields()

        assert fields["health_average_delivery_time"] == 1235
        assert fields["health_recommended_action"] == "fallback"
        assert fields["last_checked"] == 1_700_000_000_000
        assert "health_last_successful_event" not in fields

        restored = HealthStatus.from_dynamodb_fields(fields)
        assert restored.recommended_action == RecommendedAction.FALLBACK
        assert restored.failed_event_count == 2
        assert restored.last_failure_reason == "1 deliveries pending"


class TestCacheEntry:
    """Validity is computed from the timestamp on every read."""

    def test_valid_inside_timeout(self):
        entry = CacheEntry(None, timestamp=100.0, source=CacheSource.CANONICAL)
        assert entry.is_valid(now=399.9, cache_timeout=300)

    def test_invalid_at_exactly_timeout(self):
        entry = CacheEntry(None, timestamp=100.0, source=CacheSource.CANONICAL)
        assert not entry.is_valid(now=400.0, cache_timeout=300)

    def test_age(self):
        entry = CacheEntry(None, timestamp=100.0, source=CacheSource.DEFAULT)
        assert entry.age_seconds(150.0) == 50.0
        assert entry.age_seconds(50.0) == 0.0

    def test_source_values(self):
        assert CacheSource.BILLING_PROVIDER.value == "billing-provider"
        assert CacheSource.LOCAL_FALLBACK.value == "local-fallback"


class TestWebhookEvent:
    def test_failed_is_not_delivered(self):
        event = WebhookEvent(
            id="evt_1", type="invoice.payment_failed", created=1, delivered=False
        )
        assert event.failed
