"""Client-side cache entry for one user's subscription snapshot."""

from dataclasses import dataclass
from enum import Enum

from src.lambdas.shared.models.subscription import SubscriptionRecord


class CacheSource(str, Enum):
    """Which tier of the fallback chain produced a value."""

    CANONICAL = "canonical"
    BILLING_PROVIDER = "billing-provider"
    LOCAL_FALLBACK = "local-fallback"
    DEFAULT = "default"


@dataclass
class CacheEntry:
    """A snapshot plus where and when it came from.

    Entries are invalidated by age, not deleted; validity is derived from
    timestamp on every read.
    """

    data: SubscriptionRecord | None
    timestamp: float  # clock seconds when fetched
    source: CacheSource

    def is_valid(self, now: float, cache_timeout: float) -> bool:
        return now - self.timestamp < cache_timeout

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.timestamp)
