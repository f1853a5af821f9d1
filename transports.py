# transports.py

"""
Interfaces of the collaborators the delivery core talks to.

The radio link, the mesh relay and the scanner live outside this package;
anything that satisfies these protocols can be plugged into a
DeliverySession (see fake_link for the in-memory versions).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol

from delivery_types import ConnectionSnapshot, SendRejected, TransportUnavailable


class LinkRole(str, Enum):
    INITIATOR = "initiator"
    LISTENER = "listener"


class Unsubscribe(Protocol):
    def __call__(self) -> None: ...


@dataclass(frozen=True)
class MeshSendResult:
    success: bool
    error: Optional[str] = None


class TransportFacade(Protocol):
    """Point-to-point link to the currently connected peer."""

    @property
    def role(self) -> LinkRole: ...

    async def send_as_initiator(self, content: str, message_id: str) -> bool: ...

    async def send_as_listener(self, content: str, message_id: str) -> bool: ...

    def current_snapshot(self) -> ConnectionSnapshot: ...

    def subscribe_snapshots(self, callback: Callable[[ConnectionSnapshot], None]) -> Unsubscribe: ...


class MeshRelayService(Protocol):
    async def send_via_mesh(self, content: str, recipient_id: str, message_id: str) -> MeshSendResult: ...

    def subscribe_confirmations(self, callback: Callable[[str], None]) -> Unsubscribe: ...


class ScanControl(Protocol):
    def keep_monitoring(self, peer_id: Optional[str]) -> None: ...

    def start_reconnect_scan(self) -> None: ...


async def send_direct(transport: TransportFacade, content: str, message_id: str) -> bool:
    """
    Send over the direct link using the primitive that matches our role.

    Raises TransportUnavailable if the link is not ready and SendRejected if
    the link refused the write.
    """
    if not transport.current_snapshot().ready:
        raise TransportUnavailable("link not ready")

    if transport.role == LinkRole.INITIATOR:
        ok = await transport.send_as_initiator(content, message_id)
    else:
        ok = await transport.send_as_listener(content, message_id)

    if not ok:
        raise SendRejected(f"link rejected {message_id}")
    return True
