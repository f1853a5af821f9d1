# message_router.py

"""
Single decision point for "try to send this message now".

The router sends over the direct link when it is ready and the recipient
is reachable on it, or hands the message to the mesh relay when the link is
ready but the recipient is somewhere else. Anything else (not ready, failed
write, unexpected error) ends with the message in the offline queue. It
never raises to its caller.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from chat_store import MessageStore
from delivery_types import (
    DeliveryError,
    MessageStatus,
    QueuedEntry,
    RouteOutcome,
    RoutePath,
    RouterUninitialized,
    SendRejected,
    TransportUnavailable,
    short_id,
)
from offline_queue import OfflineQueue
from transports import MeshRelayService, TransportFacade, send_direct


LOG = logging.getLogger(__name__)

QueueFactory = Callable[[], OfflineQueue]


async def settle_delivered(store: Optional[MessageStore], queue: Optional[OfflineQueue], message_id: str) -> bool:
    """
    Mark a message delivered and drop it from the offline queue.

    Neither call suspends (both run their SQLite work inline), so no other
    task can observe the message as delivered while still queued.
    Returns True if either side changed.
    """
    removed = False
    if queue is not None:
        removed = await queue.remove(message_id)
    updated = False
    if store is not None:
        updated = await store.update_status(message_id, MessageStatus.DELIVERED)
    return removed or updated


async def mark_dropped_failed(store: Optional[MessageStore], entries: List[QueuedEntry]) -> int:
    """
    Mark messages the queue gave up on (purged or expired) as failed, so a
    retry sweep picks them up again. Returns how many were marked.
    """
    if store is None:
        return 0
    marked = 0
    for entry in entries:
        message = await store.get_by_id(entry.message_id)
        if message is None or message.status == MessageStatus.DELIVERED:
            continue
        await store.update_status(entry.message_id, MessageStatus.FAILED)
        marked += 1
    return marked


class MessageRouter:
    """
    One router per active session.

    - initialize() wires the offline queue through the supplied factory.
      send() calls it lazily; if it fails the entry is parked in memory and
      adopted by the next successful initialize().
    - reset() drops the transport handle and the queue reference so a
      re-initialisation after reconnect starts clean.
    """

    def __init__(
            self,
            queue_factory: QueueFactory,
            transport: Optional[TransportFacade] = None,
            store: Optional[MessageStore] = None,
            recipient_resolver: Optional[Callable[[str], bool]] = None,
            mesh: Optional[MeshRelayService] = None,
    ) -> None:
        self._queue_factory = queue_factory
        self._transport = transport
        self._store = store
        self._resolver = recipient_resolver
        self._mesh = mesh

        self._queue: Optional[OfflineQueue] = None
        self._holding: List[QueuedEntry] = []

        self._sent_direct = 0
        self._sent_mesh = 0
        self._queued = 0
        self._init_failures = 0

    # --------------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self._queue is not None

    @property
    def queue(self) -> Optional[OfflineQueue]:
        return self._queue

    @property
    def transport(self) -> Optional[TransportFacade]:
        return self._transport

    def held_entries(self) -> List[QueuedEntry]:
        return list(self._holding)

    async def initialize(self, transport: Optional[TransportFacade] = None) -> bool:
        if transport is not None:
            self._transport = transport
        if self._queue is not None:
            return True

        try:
            queue = self._queue_factory()
        except Exception as exc:
            self._init_failures += 1
            err = RouterUninitialized(f"queue factory failed: {exc}")
            LOG.warning("Router initialisation failed: %s", err)
            return False

        self._queue = queue
        LOG.info("Router initialised (%s queue)", "durable" if queue.durable else "in-memory")

        held, self._holding = self._holding, []
        for entry in held:
            await queue.enqueue(entry)
        if held:
            LOG.info("Router adopted %d held message(s)", len(held))
        return True

    def reset(self) -> None:
        if self._transport is not None:
            LOG.debug("Router releasing transport handle")
        self._transport = None
        self._queue = None

    # --------------------------------------------------------------
    # Sending
    # --------------------------------------------------------------

    def _resolvable(self, recipient_id: str) -> bool:
        if not recipient_id:
            return False
        if self._resolver is None:
            return True
        try:
            return bool(self._resolver(recipient_id))
        except Exception:
            LOG.warning("Recipient resolver failed for %s", short_id(recipient_id), exc_info=True)
            return False

    async def send(
            self,
            content: str,
            recipient_id: str,
            message_id: str,
            recipient_name: Optional[str] = None,
            chat_id: str = "",
    ) -> RouteOutcome:
        label = recipient_name or short_id(recipient_id or "?")

        if not self.is_initialized:
            await self.initialize()

        if not self.is_initialized:
            entry = QueuedEntry(message_id=message_id, recipient_id=recipient_id, content=content, chat_id=chat_id)
            if all(e.message_id != message_id for e in self._holding):
                self._holding.append(entry)
            self._queued += 1
            return RouteOutcome.queued_for_later(message_id, str(RouterUninitialized("router not initialised")))

        queue = self._queue
        error: Optional[str] = None
        try:
            transport = self._transport
            if transport is None:
                raise TransportUnavailable("no transport attached")
            snapshot = transport.current_snapshot()
            if not snapshot.ready:
                raise TransportUnavailable("link connected but not ready" if snapshot.connected else "not connected")
            if self._resolvable(recipient_id):
                await send_direct(transport, content, message_id)
                self._sent_direct += 1
                LOG.info("Sent %s directly to %s", short_id(message_id), label)
                return RouteOutcome.direct(message_id)

            if self._mesh is None or not recipient_id:
                raise TransportUnavailable(f"recipient {label} not resolvable")
            result = await self._mesh.send_via_mesh(content, recipient_id, message_id)
            if not result.success:
                raise SendRejected(f"mesh relay refused {message_id}: {result.error or 'no reason given'}")
            self._sent_mesh += 1
            LOG.info("Relayed %s to %s via mesh", short_id(message_id), label)
            return RouteOutcome.mesh(message_id)
        except DeliveryError as exc:
            error = str(exc)
            LOG.debug("Immediate send of %s not possible: %s", short_id(message_id), error)
        except Exception as exc:
            error = f"unexpected send error: {exc}"
            LOG.warning("Immediate send of %s failed", short_id(message_id), exc_info=True)

        return await self._enqueue(
            queue,
            QueuedEntry(message_id=message_id, recipient_id=recipient_id, content=content, chat_id=chat_id),
            error,
        )

    async def _enqueue(self, queue: OfflineQueue, entry: QueuedEntry, error: Optional[str]) -> RouteOutcome:
        if queue.is_tombstoned(entry.message_id) and not queue.contains(entry.message_id):
            LOG.info("Not queueing %s, already delivered", short_id(entry.message_id))
            return RouteOutcome(
                sent_directly=False,
                queued=False,
                path=RoutePath.QUEUE,
                message_id=entry.message_id,
                error="already delivered",
            )

        await queue.enqueue(entry)
        self._queued += 1
        return RouteOutcome.queued_for_later(entry.message_id, error)

    async def flush_for(self, peer_id: str) -> int:
        """
        Drain this peer's queued messages over the direct link, oldest first.

        Stops at the first failure so ordering is kept. Returns how many were
        delivered.
        """
        queue = self._queue
        transport = self._transport
        if queue is None or transport is None:
            return 0

        delivered = 0
        for entry in queue.pending(peer_id):
            if not queue.contains(entry.message_id):
                continue
            await queue.record_attempt(entry.message_id)
            try:
                await send_direct(transport, entry.content, entry.message_id)
            except DeliveryError as exc:
                LOG.info("Flush for %s stopped at %s: %s", short_id(peer_id), short_id(entry.message_id), exc)
                break
            await settle_delivered(self._store, queue, entry.message_id)
            delivered += 1

        if delivered:
            LOG.info("Flushed %d queued message(s) to %s", delivered, short_id(peer_id))
        return delivered

    def statistics(self) -> dict:
        return {
            "initialized": self.is_initialized,
            "sent_direct": self._sent_direct,
            "sent_mesh": self._sent_mesh,
            "queued": self._queued,
            "held": len(self._holding),
            "init_failures": self._init_failures,
        }
