# delivery_types.py

"""
Shared data types for the delivery orchestration core.

Everything here is plain data: the store, queue, router and coordinator
exchange these records and never hand out their internal state.
"""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional


MESSAGE_ID_VERSION = 2


# ============================================================
# Status enums
# ============================================================

class MessageStatus(str, Enum):
    SENDING = "sending"
    DELIVERED = "delivered"
    FAILED = "failed"
    QUEUED = "queued"


class RoutePath(str, Enum):
    DIRECT = "direct"
    MESH = "mesh"
    QUEUE = "queue"


class DeliveryResult(str, Enum):
    """Terminal result of one fallback-chain run for a single message."""

    DELIVERED = "delivered"
    QUEUED = "queued"
    FAILED = "failed"


# ============================================================
# Records
# ============================================================

@dataclass
class Message:
    message_id: str
    chat_id: str
    content: str
    timestamp: float
    is_from_me: bool
    status: MessageStatus
    # Recipient for our own messages, origin for received ones.
    peer_id: Optional[str] = None

    def with_status(self, status: MessageStatus) -> "Message":
        return replace(self, status=status)


@dataclass
class QueuedEntry:
    message_id: str
    recipient_id: str
    content: str
    enqueued_at: float = field(default_factory=time.time)
    attempt_count: int = 0
    chat_id: str = ""


@dataclass(frozen=True)
class RouteOutcome:
    """Result of one routing attempt.

    `sent_directly` means the message left now, over the direct link or the
    mesh relay; `path` tells which. `queued` means it is in the offline queue.
    """

    sent_directly: bool
    queued: bool
    path: RoutePath
    message_id: str = ""
    error: Optional[str] = None

    @classmethod
    def direct(cls, message_id: str) -> "RouteOutcome":
        return cls(sent_directly=True, queued=False, path=RoutePath.DIRECT, message_id=message_id)

    @classmethod
    def mesh(cls, message_id: str) -> "RouteOutcome":
        return cls(sent_directly=True, queued=False, path=RoutePath.MESH, message_id=message_id)

    @classmethod
    def queued_for_later(cls, message_id: str, error: Optional[str] = None) -> "RouteOutcome":
        return cls(sent_directly=False, queued=True, path=RoutePath.QUEUE, message_id=message_id, error=error)


@dataclass(frozen=True)
class RetryStatus:
    has_failed_messages: bool
    total_failed: int
    error: Optional[str] = None
    failed_messages: List[Message] = field(default_factory=list)

    @property
    def has_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class RetryOutcome:
    succeeded: bool
    total_succeeded: int
    summary_message: str
    total_attempted: int = 0
    total_queued: int = 0

    @property
    def success_rate(self) -> float:
        if self.total_attempted <= 0:
            return 0.0
        return self.total_succeeded / float(self.total_attempted)


@dataclass(frozen=True)
class ConnectionSnapshot:
    """Link state as reported by the transport.

    `ready` means the link is up AND the identity/encryption handshake is
    complete. A snapshot that is ready but not connected is normalised to
    not ready.
    """

    connected: bool = False
    ready: bool = False
    peer_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.ready and not self.connected:
            object.__setattr__(self, "ready", False)

    @property
    def partial(self) -> bool:
        return self.connected and not self.ready


# ============================================================
# Message identity
# ============================================================

def _hash_content(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def derive_message_id(sender_id: str, content: str, disambiguator: int, recipient_id: Optional[str] = None) -> str:
    """
    Deterministic message id: "2.<disambiguator>.<32 hex chars>".

    The same (sender, content, disambiguator, recipient) always yields the
    same id, so a re-sent or re-received message is recognised by the store
    and the queue instead of being stored twice.
    """
    if disambiguator < 0:
        raise ValueError("disambiguator must be >= 0")

    components = [
        f"SENDER:{sender_id}",
        f"RECIPIENT:{recipient_id or 'BROADCAST'}",
        f"CONTENT_HASH:{_hash_content(content)}",
        f"NONCE:{int(disambiguator)}",
        f"VERSION:{MESSAGE_ID_VERSION}",
    ]
    digest = hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()
    return f"{MESSAGE_ID_VERSION}.{int(disambiguator)}.{digest[:32]}"


def short_id(value: str, length: int = 8) -> str:
    if len(value) <= length:
        return value
    return value[:length]


# ============================================================
# Errors
# ============================================================

class DeliveryError(Exception):
    """Base exception for the delivery core."""


class TransportUnavailable(DeliveryError):
    """Link is not ready for sending."""


class SendRejected(DeliveryError):
    """Link is ready but the write failed."""


class RouterUninitialized(DeliveryError):
    """Router was used before it could be wired to a queue."""


class QueuePersistenceFailure(DeliveryError):
    """Durable queue write failed; the in-memory queue is still authoritative."""
