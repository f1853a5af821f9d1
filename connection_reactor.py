# connection_reactor.py

"""
Turns link state changes into delivery work.

    not connected -> connected     ConnectedEvent, safety-net sweep later
    connected     -> ready         HandshakeCompleteEvent, settle sweep,
                                   queue sync + flush for the peer
    peer id known/changed          one-time chat bucket migration (an
                                   anonymous connection gets a temp_ chat
                                   that moves to the peer once it is known)
    connected     -> not connected keep monitoring if the peer still has
                                   queued messages, else rescan

All delayed work lives in named TaskSlots; teardown() closes them and drops
the snapshot subscription, after which nothing here acts.
"""

from __future__ import annotations

import logging
import uuid
from typing import Awaitable, Callable, Optional, Set, Tuple

from chat_store import MessageStore
from delivery_events import (
    ChatMigratedEvent,
    ConnectedEvent,
    DisconnectedEvent,
    EventChannel,
    HandshakeCompleteEvent,
)
from delivery_types import ConnectionSnapshot, short_id
from mesh_config import LifecycleConfig
from message_router import MessageRouter, mark_dropped_failed
from offline_queue import OfflineQueue
from queue_sync import QueueSyncManager
from scheduler import TaskSlots
from transports import ScanControl, TransportFacade, Unsubscribe


LOG = logging.getLogger(__name__)

SLOT_SETTLE = "settle-sweep"
SLOT_SAFETY = "safety-sweep"
SLOT_SYNC = "queue-sync"
SLOT_MIGRATE = "migrate"
SLOT_MAINTENANCE = "maintenance"


def default_chat_id(peer_id: str) -> str:
    return f"chat_{peer_id}"


class ConnectionLifecycleReactor:
    def __init__(
            self,
            transport: TransportFacade,
            store: MessageStore,
            sweep: Callable[[str], Awaitable[object]],
            router: Optional[MessageRouter] = None,
            scan: Optional[ScanControl] = None,
            sync: Optional[QueueSyncManager] = None,
            events: Optional[EventChannel] = None,
            config: Optional[LifecycleConfig] = None,
            queue_provider: Optional[Callable[[], Optional[OfflineQueue]]] = None,
            chat_id_for: Callable[[str], str] = default_chat_id,
            temporary_chat_id: Optional[str] = None,
    ) -> None:
        self._transport = transport
        self._store = store
        self._sweep = sweep
        self._router = router
        self._scan = scan
        self._sync = sync
        self._events = events
        self._config = config or LifecycleConfig()
        self._queue_provider = queue_provider or (lambda: router.queue if router is not None else None)
        self._chat_id_for = chat_id_for
        self._temporary_chat_id = temporary_chat_id

        self._slots = TaskSlots("reactor")
        self._unsubscribe: Optional[Unsubscribe] = None
        self._prev = ConnectionSnapshot()
        self._connection_peer: Optional[str] = None
        self._connection_temp_chat: Optional[str] = None
        self._migrated: Set[Tuple[str, str]] = set()
        self._started = False

    # --------------------------------------------------------------
    # Lifecycle
    # --------------------------------------------------------------

    @property
    def alive(self) -> bool:
        return self._slots.alive

    @property
    def slots(self) -> TaskSlots:
        return self._slots

    @property
    def temporary_chat_id(self) -> Optional[str]:
        """Chat bucket for messages exchanged before the peer identified itself."""
        return self._connection_temp_chat or self._temporary_chat_id

    def start(self) -> None:
        if self._started or not self.alive:
            return
        self._started = True
        self._unsubscribe = self._transport.subscribe_snapshots(self.on_snapshot)
        self._schedule_maintenance()

        initial = self._transport.current_snapshot()
        if initial.connected:
            self.on_snapshot(initial)

    def teardown(self) -> None:
        if not self.alive:
            return
        self._slots.close()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        LOG.debug("Connection reactor torn down")

    # --------------------------------------------------------------
    # Transitions
    # --------------------------------------------------------------

    def on_snapshot(self, snapshot: ConnectionSnapshot) -> None:
        if not self.alive:
            return

        prev = self._prev
        self._prev = snapshot

        if snapshot.connected and not prev.connected:
            self._on_connected(snapshot)

        if snapshot.ready and not prev.ready:
            self._on_ready(snapshot)

        if snapshot.connected and snapshot.peer_id and snapshot.peer_id != self._connection_peer:
            self._on_peer_identity(self._connection_peer, snapshot.peer_id)

        if prev.connected and not snapshot.connected:
            self._on_disconnected(prev)

    def _on_connected(self, snapshot: ConnectionSnapshot) -> None:
        LOG.info("Link connected (%s)", short_id(snapshot.peer_id or "unknown peer"))
        self._publish(ConnectedEvent(peer_id=snapshot.peer_id))
        if snapshot.peer_id is None and self._connection_temp_chat is None:
            self._connection_temp_chat = f"temp_{uuid.uuid4().hex[:12]}"
        if self._router is not None:
            self._slots.schedule("router", 0.0, lambda: self._router.initialize(self._transport))
        self._slots.schedule(SLOT_SAFETY, self._config.safety_net_seconds, self._run_sweep)

    def _on_ready(self, snapshot: ConnectionSnapshot) -> None:
        LOG.info("Handshake complete with %s", short_id(snapshot.peer_id or "unknown peer"))
        self._publish(HandshakeCompleteEvent(peer_id=snapshot.peer_id))
        self._slots.schedule(SLOT_SETTLE, self._config.handshake_settle_seconds, self._run_sweep)
        if snapshot.peer_id:
            peer_id = snapshot.peer_id
            self._slots.schedule(SLOT_SYNC, 0.0, lambda: self._sync_and_flush(peer_id))

    def _on_peer_identity(self, old_peer: Optional[str], new_peer: str) -> None:
        self._connection_peer = new_peer
        if old_peer is not None:
            old_chat = self._chat_id_for(old_peer)
        elif self.temporary_chat_id:
            old_chat = self.temporary_chat_id
            self._connection_temp_chat = None
        else:
            return

        new_chat = self._chat_id_for(new_peer)
        if old_chat == new_chat or (old_chat, new_chat) in self._migrated:
            return
        self._migrated.add((old_chat, new_chat))
        self._slots.schedule(SLOT_MIGRATE, 0.0, lambda: self._migrate(old_chat, new_chat, new_peer))

    def _on_disconnected(self, prev: ConnectionSnapshot) -> None:
        for slot in (SLOT_SETTLE, SLOT_SAFETY, SLOT_SYNC, "router"):
            self._slots.cancel(slot)
        self._connection_peer = None

        peer_id = prev.peer_id
        queue = self._queue_provider()
        has_pending = bool(peer_id) and queue is not None and queue.count(peer_id) > 0
        if self._router is not None:
            self._router.reset()

        if has_pending:
            LOG.info("Link to %s dropped with queued messages, keep monitoring", short_id(peer_id or ""))
            if self._scan is not None:
                self._scan.keep_monitoring(peer_id)
        else:
            LOG.info("Link dropped, starting reconnect scan")
            if self._scan is not None:
                self._scan.start_reconnect_scan()

        self._publish(DisconnectedEvent(peer_id=peer_id, monitoring=has_pending))

    # --------------------------------------------------------------
    # Scheduled work
    # --------------------------------------------------------------

    def _current_chat(self) -> Optional[str]:
        peer_id = self._transport.current_snapshot().peer_id or self._connection_peer
        if not peer_id:
            return None
        return self._chat_id_for(peer_id)

    async def _run_sweep(self) -> None:
        chat_id = self._current_chat()
        if chat_id is None or not self.alive:
            return
        await self._sweep(chat_id)

    async def _sync_and_flush(self, peer_id: str) -> None:
        chat_id = self._chat_id_for(peer_id)
        if self._sync is not None:
            result = await self._sync.initiate_sync(peer_id, chat_id)
            if not result.success:
                LOG.debug("Queue sync with %s: %s", short_id(peer_id), result.error)
        if not self.alive or self._router is None:
            return
        if self._transport.current_snapshot().ready:
            await self._router.flush_for(peer_id)

    async def _migrate(self, old_chat: str, new_chat: str, peer_id: str) -> None:
        if not await self._store.get(old_chat):
            LOG.debug("Nothing to migrate from %s", old_chat)
            return
        moved = await self._store.migrate_chat(old_chat, new_chat, peer_id)
        if moved:
            LOG.info("Migrated %d message(s) from %s to %s", moved, old_chat, new_chat)
            self._publish(ChatMigratedEvent(old_chat_id=old_chat, new_chat_id=new_chat, moved=moved))

    def _schedule_maintenance(self) -> None:
        self._slots.schedule(SLOT_MAINTENANCE, self._config.maintenance_interval_seconds, self._maintenance)

    async def _maintenance(self) -> None:
        queue = self._queue_provider()
        if queue is not None:
            expired = await queue.expire_stale()
            await mark_dropped_failed(self._store, expired)
            await queue.cleanup_tombstones()
        if self.alive:
            self._schedule_maintenance()

    async def run_maintenance_now(self) -> None:
        self._slots.cancel(SLOT_MAINTENANCE)
        await self._maintenance()

    def _publish(self, event: object) -> None:
        if self._events is not None:
            self._events.publish(event)
