# delivery_events.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Type, TypeVar, Union

from delivery_types import MessageStatus, RetryOutcome


LOG = logging.getLogger(__name__)


# ============================================================
# Event dataclasses (what the orchestration core tells UI layers)
# ============================================================

@dataclass(frozen=True)
class StatusEvent:
    text: str


@dataclass(frozen=True)
class ConnectedEvent:
    peer_id: Optional[str]


@dataclass(frozen=True)
class HandshakeCompleteEvent:
    peer_id: Optional[str]


@dataclass(frozen=True)
class DisconnectedEvent:
    peer_id: Optional[str]
    # True when relay delivery is still pending and we keep monitoring
    monitoring: bool


@dataclass(frozen=True)
class MessageStatusEvent:
    message_id: str
    chat_id: str
    status: MessageStatus


@dataclass(frozen=True)
class QueueChangedEvent:
    pending_count: int
    recipients: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class RetrySummaryEvent:
    chat_id: str
    outcome: RetryOutcome
    fallback: bool = False


@dataclass(frozen=True)
class PersistenceWarningEvent:
    operation: str
    message_id: Optional[str]
    error: str


@dataclass(frozen=True)
class ChatMigratedEvent:
    old_chat_id: str
    new_chat_id: str
    moved: int


@dataclass(frozen=True)
class SyncCompletedEvent:
    peer_id: str
    removed: int
    suppressed: int
    remaining: int


DeliveryEvent = Union[
    StatusEvent,
    ConnectedEvent,
    HandshakeCompleteEvent,
    DisconnectedEvent,
    MessageStatusEvent,
    QueueChangedEvent,
    RetrySummaryEvent,
    PersistenceWarningEvent,
    ChatMigratedEvent,
    SyncCompletedEvent,
]

E = TypeVar("E")


# ============================================================
# Event channel
# ============================================================

class Subscription:
    """Handle returned by EventChannel.subscribe(); cancel() is idempotent."""

    def __init__(self, channel: "EventChannel", event_type: type, callback: Callable) -> None:
        self._channel = channel
        self._event_type = event_type
        self._callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._channel._unsubscribe(self._event_type, self._callback)


class EventChannel:
    """
    Typed publish/subscribe channel.

    - Subscribers register per event class (or `object` for everything).
    - Delivery is synchronous, in subscription order, on the publisher's
      loop iteration.
    - A failing subscriber is logged and never breaks the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[type, List[Callable]] = {}

    def subscribe(self, event_type: Type[E], callback: Callable[[E], None]) -> Subscription:
        self._subscribers.setdefault(event_type, []).append(callback)
        return Subscription(self, event_type, callback)

    def _unsubscribe(self, event_type: type, callback: Callable) -> None:
        subs = self._subscribers.get(event_type)
        if not subs:
            return
        try:
            subs.remove(callback)
        except ValueError:
            return
        if not subs:
            del self._subscribers[event_type]

    def publish(self, event: object) -> None:
        targets: List[Callable] = []
        for event_type, subs in self._subscribers.items():
            if isinstance(event, event_type):
                targets.extend(subs)

        for cb in targets:
            try:
                cb(event)
            except Exception:
                LOG.warning("Event subscriber failed for %s", type(event).__name__, exc_info=True)

    def subscriber_count(self) -> int:
        return sum(len(v) for v in self._subscribers.values())

    def emit_status(self, text: str) -> None:
        self.publish(StatusEvent(text=text))
