"""HealthStatus model for webhook delivery health.

Persisted on the user's item collection: PK=USER#{user_id}, SK=WEBHOOK_HEALTH
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel

HEALTH_SK = "WEBHOOK_HEALTH"


class RecommendedAction(str, Enum):
    """What the health monitor recommends, ordered by severity."""

    NONE = "none"
    MONITOR = "monitor"
    FALLBACK = "fallback"
    MANUAL_INTERVENTION = "manual_intervention"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    RecommendedAction.NONE: 0,
    RecommendedAction.MONITOR: 1,
    RecommendedAction.FALLBACK: 2,
    RecommendedAction.MANUAL_INTERVENTION: 3,
}


class HealthStatus(BaseModel):
    """Result of one health check over the sampling window."""

    is_healthy: bool
    last_successful_event: int | None = None
    failed_event_count: int = 0
    successful_event_count: int = 0
    average_delivery_time: float = 0.0
    recommended_action: RecommendedAction = RecommendedAction.MONITOR
    last_failure_reason: str | None = None
    last_checked: int | None = None

    @property
    def requires_fallback(self) -> bool:
        return self.recommended_action.severity >= RecommendedAction.FALLBACK.severity

    def to_dynamodb_fields(self) -> dict[str, Any]:
        """Flatten into item attributes under the health_ prefix.

        average_delivery_time is stored as whole milliseconds; DynamoDB
        rejects Python floats.
        """
        fields: dict[str, Any] = {
            "health_is_healthy": self.is_healthy,
            "health_failed_event_count": self.failed_event_count,
            "health_successful_event_count": self.successful_event_count,
            "health_average_delivery_time": int(round(self.average_delivery_time)),
            "health_recommended_action": self.recommended_action.value,
        }
        if self.last_successful_event is not None:
            fields["health_last_successful_event"] = self.last_successful_event
        if self.last_failure_reason:
            fields["health_last_failure_reason"] = self.last_failure_reason
        if self.last_checked is not None:
            fields["last_checked"] = self.last_checked
        return fields

    @classmethod
    def from_dynamodb_fields(cls, item: dict) -> "HealthStatus":
        return cls(
            is_healthy=item.get("health_is_healthy", False),
            last_successful_event=item.get("health_last_successful_event"),
            failed_event_count=item.get("health_failed_event_count", 0),
            successful_event_count=item.get("health_successful_event_count", 0),
            average_delivery_time=item.get("health_average_delivery_time", 0),
            recommended_action=item.get(
                "health_recommended_action", RecommendedAction.MONITOR.value
            ),
            last_failure_reason=item.get("health_last_failure_reason"),
            last_checked=item.get("last_checked"),
        )
