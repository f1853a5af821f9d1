#!/usr/bin/env python3
"""
fake_link.py: in-memory stand-ins for the radio link, mesh relay and scanner.

Used by the tests and by `delivery_daemon simulate`. Every call is
recorded; failures are injected by flipping attributes:

    link = LoopbackTransport()
    link.connect("peer-a")            # connected, handshake pending
    link.handshake("peer-a")          # ready
    link.reject_sends = True          # writes now fail
    link.disconnect()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Set, Tuple

from delivery_types import ConnectionSnapshot
from transports import LinkRole, MeshSendResult


SnapshotCallback = Callable[[ConnectionSnapshot], None]


def _unsubscriber(subs: List[Callable], cb: Callable) -> Callable[[], None]:
    def _unsubscribe() -> None:
        if cb in subs:
            subs.remove(cb)

    return _unsubscribe


# ============================================================
# Direct link
# ============================================================

@dataclass(frozen=True)
class SentFrame:
    primitive: str
    content: str
    message_id: str


class LoopbackTransport:
    def __init__(self, role: LinkRole = LinkRole.INITIATOR, snapshot: Optional[ConnectionSnapshot] = None) -> None:
        self._role = role
        self._snapshot = snapshot or ConnectionSnapshot()
        self._subscribers: List[SnapshotCallback] = []

        self.sent: List[SentFrame] = []
        self.reject_sends = False
        self.raise_on_send: Optional[Exception] = None
        self.send_delay = 0.0
        # Called with (content, message_id) for every accepted write.
        self.on_delivered: Optional[Callable[[str, str], None]] = None

    @property
    def role(self) -> LinkRole:
        return self._role

    @role.setter
    def role(self, value: LinkRole) -> None:
        self._role = value

    async def send_as_initiator(self, content: str, message_id: str) -> bool:
        return await self._send("initiator", content, message_id)

    async def send_as_listener(self, content: str, message_id: str) -> bool:
        return await self._send("listener", content, message_id)

    async def _send(self, primitive: str, content: str, message_id: str) -> bool:
        if self.send_delay > 0:
            await asyncio.sleep(self.send_delay)
        self.sent.append(SentFrame(primitive=primitive, content=content, message_id=message_id))
        if self.raise_on_send is not None:
            raise self.raise_on_send
        if self.reject_sends or not self._snapshot.ready:
            return False
        if self.on_delivered is not None:
            self.on_delivered(content, message_id)
        return True

    def sent_ids(self) -> List[str]:
        return [f.message_id for f in self.sent]

    # --------------------------------------------------------------
    # Snapshot stream
    # --------------------------------------------------------------

    def current_snapshot(self) -> ConnectionSnapshot:
        return self._snapshot

    def subscribe_snapshots(self, callback: SnapshotCallback) -> Callable[[], None]:
        self._subscribers.append(callback)
        return _unsubscriber(self._subscribers, callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def set_snapshot(self, snapshot: ConnectionSnapshot) -> None:
        self._snapshot = snapshot
        for cb in list(self._subscribers):
            cb(snapshot)

    def connect(self, peer_id: Optional[str] = None) -> None:
        self.set_snapshot(ConnectionSnapshot(connected=True, ready=False, peer_id=peer_id))

    def handshake(self, peer_id: Optional[str] = None) -> None:
        peer = peer_id if peer_id is not None else self._snapshot.peer_id
        self.set_snapshot(ConnectionSnapshot(connected=True, ready=True, peer_id=peer))

    def disconnect(self) -> None:
        self.set_snapshot(ConnectionSnapshot(connected=False, ready=False, peer_id=self._snapshot.peer_id))


# ============================================================
# Mesh relay
# ============================================================

class FakeMeshRelay:
    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.raise_on_send: Optional[Exception] = None
        self.calls: List[Tuple[str, str, str]] = []
        self._confirm_subscribers: List[Callable[[str], None]] = []

    async def send_via_mesh(self, content: str, recipient_id: str, message_id: str) -> MeshSendResult:
        self.calls.append((content, recipient_id, message_id))
        if self.raise_on_send is not None:
            raise self.raise_on_send
        if not self.succeed:
            return MeshSendResult(success=False, error="no route to recipient")
        return MeshSendResult(success=True)

    def subscribe_confirmations(self, callback: Callable[[str], None]) -> Callable[[], None]:
        self._confirm_subscribers.append(callback)
        return _unsubscriber(self._confirm_subscribers, callback)

    def confirm(self, message_id: str) -> None:
        for cb in list(self._confirm_subscribers):
            cb(message_id)


# ============================================================
# Scanner
# ============================================================

class RecordingScanControl:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, Optional[str]]] = []

    def keep_monitoring(self, peer_id: Optional[str]) -> None:
        self.calls.append(("monitor", peer_id))

    def start_reconnect_scan(self) -> None:
        self.calls.append(("scan", None))

    @property
    def last(self) -> Optional[Tuple[str, Optional[str]]]:
        return self.calls[-1] if self.calls else None


# ============================================================
# Sync frame pipe
# ============================================================

FrameHandler = Callable[[str, bytes], Awaitable[object]]


class FramePipe:
    """
    One-way frame delivery to another node's handler, scheduled as a task so
    the sender never runs the receiver inline.

        pipe = FramePipe(sender_id="a", handler=lambda sender, data: b.handle_frame(sender, chat, data))
        a.set_send_frame(pipe.send)
    """

    def __init__(self, sender_id: str, handler: FrameHandler) -> None:
        self._sender_id = sender_id
        self._handler = handler
        self._tasks: Set[asyncio.Task] = set()
        self.frames: List[bytes] = []
        self.drop = False

    async def send(self, peer_id: str, data: bytes) -> bool:
        self.frames.append(data)
        if self.drop:
            return True
        task = asyncio.get_running_loop().create_task(self._handler(self._sender_id, data))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True
