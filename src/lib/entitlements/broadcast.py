"""Cross-instance broadcast of subscription changes.

Several cache managers in one process (one per tab/window/session surface)
share a BroadcastHub so that when one of them learns about a change the
others converge without each polling the billing provider.

Messages form a closed, versioned union and are serialized to JSON on
send and validated on receipt; anything that does not validate is logged
and dropped.
"""

import logging
import threading
import uuid
from collections.abc import Callable
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from src.lambdas.shared.models.subscription import SubscriptionRecord

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class _Message(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    version: Literal[1] = SCHEMA_VERSION
    origin_id: str
    user_id: str
    sent_at: float


class SubscriptionUpdatedMessage(_Message):
    """A fresher record is available for user_id."""

    kind: Literal["subscription_updated"] = "subscription_updated"
    record: SubscriptionRecord | None


class CacheInvalidatedMessage(_Message):
    """Cached state for user_id should no longer be served."""

    kind: Literal["cache_invalidated"] = "cache_invalidated"


BroadcastMessage = Annotated[
    SubscriptionUpdatedMessage | CacheInvalidatedMessage,
    Field(discriminator="kind"),
]

_message_adapter: TypeAdapter[BroadcastMessage] = TypeAdapter(BroadcastMessage)

MessageHandler = Callable[[SubscriptionUpdatedMessage | CacheInvalidatedMessage], None]


class BroadcastValidationError(ValueError):
    """Received message is not a known kind/version."""


def parse_broadcast_message(
    raw: str | bytes,
) -> SubscriptionUpdatedMessage | CacheInvalidatedMessage:
    """Validate a serialized message.

    Raises:
        BroadcastValidationError: Unknown kind, unsupported version or bad shape
    """
    try:
        return _message_adapter.validate_json(raw)
    except ValidationError as e:
        raise BroadcastValidationError(
            f"Invalid broadcast message ({e.error_count()} errors)"
        ) from e


class BroadcastHub:
    """In-process bus that fans messages out to every other channel."""

    def __init__(self):
        self._channels: list["BroadcastChannel"] = []
        self._lock = threading.Lock()

    def channel(self, origin_id: str | None = None) -> "BroadcastChannel":
        channel = BroadcastChannel(self, origin_id or uuid.uuid4().hex)
        with self._lock:
            self._channels.append(channel)
        return channel

    def _detach(self, channel: "BroadcastChannel") -> None:
        with self._lock:
            if channel in self._channels:
                self._channels.remove(channel)

    def _publish(self, sender: "BroadcastChannel", payload: str) -> None:
        with self._lock:
            receivers = [c for c in self._channels if c is not sender]
        for receiver in receivers:
            receiver._receive(payload)


class BroadcastChannel:
    """One participant on a hub. Never receives its own messages."""

    def __init__(self, hub: BroadcastHub, origin_id: str):
        self._hub = hub
        self.origin_id = origin_id
        self._handlers: list[MessageHandler] = []
        self._closed = False

    def on_message(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    def post(self, message: SubscriptionUpdatedMessage | CacheInvalidatedMessage) -> None:
        if self._closed:
            return
        self._hub._publish(self, message.model_dump_json())

    def close(self) -> None:
        self._closed = True
        self._handlers.clear()
        self._hub._detach(self)

    def _receive(self, payload: str) -> None:
        if self._closed:
            return
        try:
            message = parse_broadcast_message(payload)
        except BroadcastValidationError:
            logger.warning("broadcast_message_dropped", extra={"origin_id": self.origin_id})
            return
        for handler in list(self._handlers):
            try:
                handler(message)
            except Exception as e:
                logger.error(
                    "broadcast_handler_failed",
                    extra={"origin_id": self.origin_id, "error_type": type(e).__name__},
                )
