"""WebhookEvent model: one sampled webhook delivery from the billing provider.

Used by the health monitor to classify delivery health. These are never
persisted; they are rebuilt from the provider's event listing each check.
"""

from pydantic import BaseModel, Field

RECOGNIZED_EVENT_TYPES = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
)


class WebhookEvent(BaseModel):
    """Delivery outcome for a single provider event."""

    id: str = Field(..., description="Provider event id, e.g. evt_...")
    type: str = Field(..., description="e.g., customer.subscription.created")
    created: int = Field(..., description="Provider timestamp, epoch ms")
    delivered: bool
    delivery_time: float | None = Field(None, description="Delivery latency in ms")
    error: str | None = None

    @property
    def failed(self) -> bool:
        return not self.delivered
