"""Client-side entitlement engine: cache, broadcast, recovery, health."""

from src.lib.entitlements.broadcast import (
    BroadcastChannel,
    BroadcastHub,
    BroadcastValidationError,
    CacheInvalidatedMessage,
    SubscriptionUpdatedMessage,
    parse_broadcast_message,
)
from src.lib.entitlements.cache_manager import ResolutionResult, SubscriptionCacheManager
from src.lib.entitlements.config import EntitlementConfig
from src.lib.entitlements.health_monitor import WebhookHealthMonitor
from src.lib.entitlements.local_fallback import LocalFallbackStore
from src.lib.entitlements.recovery import RecoveryManager, RecoveryResult, RecoveryStats
from src.lib.entitlements.service import EntitlementService

__all__ = [
    "BroadcastChannel",
    "BroadcastHub",
    "BroadcastValidationError",
    "CacheInvalidatedMessage",
    "EntitlementConfig",
    "EntitlementService",
    "LocalFallbackStore",
    "RecoveryManager",
    "RecoveryResult",
    "RecoveryStats",
    "ResolutionResult",
    "SubscriptionCacheManager",
    "SubscriptionUpdatedMessage",
    "WebhookHealthMonitor",
    "parse_broadcast_message",
]
