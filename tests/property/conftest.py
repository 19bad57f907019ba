"""Hypothesis strategies for property testing.

Provides reusable composite strategies for generating subscription webhook
histories that match the entitlement reconciler's data contracts.
"""

from dataclasses import dataclass

from hypothesis import strategies as st

from src.lambdas.shared.models.subscription import SubscriptionPatch, SubscriptionStatus

NON_TERMINAL_STATUSES = [
    SubscriptionStatus.INCOMPLETE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.UNPAID,
]


@dataclass(frozen=True)
class DeliveredEvent:
    """One webhook delivery: the patch it produced and its provider timestamp."""

    patch: SubscriptionPatch
    created_ms: int

    @property
    def is_cancel(self) -> bool:
        return (
            self.patch.kind == "terminal"
            or self.patch.status == SubscriptionStatus.CANCELED
        )


@st.composite
def subscription_patch(draw, subscription_id="sub_123", status=None):
    """Generate a full patch for one subscription lineage.

    Args:
        draw: Hypothesis draw function
        subscription_id: Lineage the patch belongs to
        status: Fixed status; drawn from the non-terminal statuses if None
    """
    period_start = draw(st.integers(min_value=1_700_000_000_000, max_value=1_800_000_000_000))
    return SubscriptionPatch(
        kind="full",
        subscription_id=subscription_id,
        customer_id="cus_123",
        status=status or draw(st.sampled_from(NON_TERMINAL_STATUSES)),
        price_id=draw(st.sampled_from(["price_monthly", "price_annual"])),
        current_period_start=period_start,
        current_period_end=period_start + 30 * 24 * 3600 * 1000,
        cancel_at_period_end=draw(st.booleans()),
    )


@st.composite
def cancel_patch(draw, subscription_id="sub_123"):
    """A deletion event (terminal) or an update that reports status=canceled."""
    if draw(st.booleans()):
        return SubscriptionPatch(
            kind="terminal",
            subscription_id=subscription_id,
            status=SubscriptionStatus.CANCELED,
        )
    return draw(subscription_patch(subscription_id, status=SubscriptionStatus.CANCELED))


@st.composite
def event_history(draw, min_size=1, max_size=8, allow_cancel=True, unique_timestamps=False):
    """Generate a set of distinct events.

    Provider timestamps have whole-second resolution, so unless
    unique_timestamps is set several events may share one.

    Returns:
        list[DeliveredEvent] in creation order
    """
    timestamps = draw(
        st.lists(
            st.integers(min_value=1_700_000_000, max_value=1_700_000_010).map(
                lambda seconds: seconds * 1000
            ),
            min_size=min_size,
            max_size=max_size,
            unique=unique_timestamps,
        )
    )
    timestamps.sort()
    events = [DeliveredEvent(draw(subscription_patch()), ts) for ts in timestamps]

    if allow_cancel and draw(st.booleans()):
        index = draw(st.integers(min_value=0, max_value=len(events) - 1))
        events[index] = DeliveredEvent(draw(cancel_patch()), events[index].created_ms)
    return events


@st.composite
def delivery_order(draw, events):
    """Permute events and duplicate some, as at-least-once delivery does."""
    duplicates = draw(st.lists(st.sampled_from(events), max_size=len(events)))
    return draw(st.permutations(events + duplicates))
