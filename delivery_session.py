# delivery_session.py

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

from chat_store import MessageStore, new_outgoing_message
from connection_reactor import ConnectionLifecycleReactor, default_chat_id
from crypto_layer import QueueContentCipher
from delivery_chain import DeliveryChain
from delivery_events import EventChannel, MessageStatusEvent
from delivery_types import (
    DeliveryResult,
    Message,
    MessageStatus,
    QueuePersistenceFailure,
    RetryOutcome,
    derive_message_id,
    short_id,
)
from mesh_config import DeliveryConfig
from message_router import MessageRouter, mark_dropped_failed, settle_delivered
from offline_queue import OfflineQueue, SqliteQueueBackend
from queue_sync import QueueSyncManager, QueueSyncResult, SendFrame
from retry_coordinator import ChatRetryHelper, RetryCoordinator
from scheduler import TaskSlots
from transports import MeshRelayService, ScanControl, TransportFacade


LOG = logging.getLogger(__name__)


# ============================================================
# DeliverySession
# ============================================================

class DeliverySession:
    """
    Composition root for one active session.

    - Builds the store, queue, router, fallback chain, retry helper, sync
      manager and lifecycle reactor once, and hands each its collaborators.
    - send_message() / receive_message() / retry_chat() are the only entry
      points a UI needs; none of them raise delivery errors.
    - Progress is reported on `events` (an EventChannel).
    """

    def __init__(
            self,
            config: DeliveryConfig,
            transport: TransportFacade,
            mesh: Optional[MeshRelayService] = None,
            scan: Optional[ScanControl] = None,
            events: Optional[EventChannel] = None,
            send_frame: Optional[SendFrame] = None,
            store: Optional[MessageStore] = None,
            queue: Optional[OfflineQueue] = None,
            chat_id_for: Callable[[str], str] = default_chat_id,
    ) -> None:
        self._config = config
        self._transport = transport
        self._mesh = mesh
        self.events = events or EventChannel()
        self._chat_id_for = chat_id_for

        self._owns_store = store is None
        self.store = store or MessageStore(config.storage.db_path)
        self.store.set_on_status_changed(self._on_status_changed)

        self._owns_queue = queue is None
        self.queue = queue or self._build_queue()

        self.router = MessageRouter(
            queue_factory=lambda: self.queue,
            transport=transport,
            store=self.store,
            recipient_resolver=self._on_direct_link,
            mesh=mesh,
        )
        self.chain = DeliveryChain(
            router=self.router,
            store=self.store,
            transport=transport,
            mesh=mesh,
            retry_config=config.retry,
        )
        self.retry_helper = ChatRetryHelper(
            store=self.store,
            on_message_retry=self._retry_message,
            coordinator_factory=lambda: RetryCoordinator(self.store, config.retry),
            snapshot_provider=transport.current_snapshot,
            events=self.events,
            fallback_delay_seconds=config.retry.fallback_retry_delay_seconds,
        )
        self.sync = QueueSyncManager(
            queue=self.queue,
            store=self.store,
            node_id=config.node_id,
            config=config.sync,
            send_frame=send_frame,
            events=self.events,
        )
        self.reactor = ConnectionLifecycleReactor(
            transport=transport,
            store=self.store,
            sweep=self.retry_chat,
            router=self.router,
            scan=scan,
            sync=self.sync if config.sync.enabled else None,
            events=self.events,
            config=config.lifecycle,
            queue_provider=lambda: self.queue,
            chat_id_for=chat_id_for,
        )

        self._slots = TaskSlots("session")
        self._confirm_unsubscribe: Optional[Callable[[], None]] = None
        self._started = False
        self._last_disambiguator = 0

    def _build_queue(self) -> OfflineQueue:
        cipher = QueueContentCipher(self._config.security)
        try:
            backend = SqliteQueueBackend(self._config.storage.queue_db_path, cipher)
        except QueuePersistenceFailure as exc:
            LOG.warning("Offline queue not durable this session: %s", exc)
            self.events.emit_status(f"Offline queue not durable: {exc}")
            return OfflineQueue(None, self._config.queue, self.events)
        return OfflineQueue(backend, self._config.queue, self.events)

    # ----------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------

    @property
    def alive(self) -> bool:
        return self._slots.alive

    async def start(self) -> None:
        if self._started:
            return
        self._started = True

        restored = await self.queue.load()
        await self.router.initialize(self._transport)
        if self._mesh is not None:
            self._confirm_unsubscribe = self._mesh.subscribe_confirmations(self._on_mesh_confirmation)
        self.reactor.start()

        self.events.emit_status(
            f"Delivery session started for {self._config.node_id} ({restored} queued message(s) restored)"
        )

    async def teardown(self) -> None:
        if not self.alive:
            return
        self.reactor.teardown()
        self.retry_helper.dispose()
        self._slots.close()
        if self._confirm_unsubscribe is not None:
            self._confirm_unsubscribe()
            self._confirm_unsubscribe = None
        self.router.reset()
        self.sync.set_send_frame(None)

        self.events.emit_status("Delivery session stopped.")
        self.store.set_on_status_changed(None)
        if self._owns_queue:
            self.queue.close()
        if self._owns_store:
            self.store.close()

    # ----------------------------------------------------------
    # Sending / receiving
    # ----------------------------------------------------------

    def _on_direct_link(self, recipient_id: str) -> bool:
        # An anonymous link (peer id not yet known) is assumed to be the recipient.
        peer_id = self._transport.current_snapshot().peer_id
        return peer_id is None or peer_id == recipient_id

    def current_chat_id(self) -> Optional[str]:
        """
        Chat for the current link. Until the peer identifies itself this is
        the temporary chat, which moves to the peer's chat afterwards.
        """
        snapshot = self._transport.current_snapshot()
        if snapshot.peer_id:
            return self._chat_id_for(snapshot.peer_id)
        if snapshot.connected:
            return self.reactor.temporary_chat_id
        return None

    def _next_disambiguator(self) -> int:
        value = int(time.time() * 1000)
        if value <= self._last_disambiguator:
            value = self._last_disambiguator + 1
        self._last_disambiguator = value
        return value

    async def send_message(
            self,
            chat_id: str,
            content: str,
            recipient_id: Optional[str],
            recipient_name: Optional[str] = None,
            disambiguator: Optional[int] = None,
    ) -> Optional[Message]:
        """
        Store an outgoing message and run it through the fallback chain.

        Sending the same (content, recipient, disambiguator) again reuses
        the stored message instead of creating a second one.
        """
        content = content.strip()
        if not content:
            return None
        if not self.alive:
            LOG.warning("send_message after teardown ignored")
            return None

        nonce = self._next_disambiguator() if disambiguator is None else int(disambiguator)
        message_id = derive_message_id(self._config.node_id, content, nonce, recipient_id)

        existing = await self.store.get_by_id(message_id)
        if existing is not None and (
                existing.status == MessageStatus.DELIVERED
                or (existing.status == MessageStatus.QUEUED and self._is_queued(message_id))
        ):
            LOG.debug("Message %s already %s", short_id(message_id), existing.status.value)
            return existing

        message = existing or new_outgoing_message(message_id, chat_id, content, recipient_id)
        if existing is None:
            await self.store.save(message)
        else:
            await self.store.update_status(message_id, MessageStatus.SENDING)

        if not message.peer_id:
            # Nothing to route to yet; the retry sweep after the peer identifies picks it up.
            LOG.info("Holding %s until the peer identifies itself", short_id(message_id))
            await self.store.update_status(message_id, MessageStatus.FAILED)
            return await self.store.get_by_id(message_id)

        result = await self.chain.deliver(message, allow_partial_connection=True)
        LOG.info("Send %s to %s -> %s", short_id(message_id), recipient_name or short_id(recipient_id or "?"), result.value)
        return await self.store.get_by_id(message_id)

    def _is_queued(self, message_id: str) -> bool:
        if self.queue.contains(message_id):
            return True
        return any(e.message_id == message_id for e in self.router.held_entries())

    async def purge_queue(self, recipient_id: Optional[str] = None) -> int:
        """Drop queued messages (all, or one recipient's) and mark them failed."""
        dropped = await self.queue.purge(recipient_id)
        await mark_dropped_failed(self.store, dropped)
        return len(dropped)

    async def receive_message(
            self,
            chat_id: str,
            content: str,
            sender_id: str,
            message_id: Optional[str] = None,
            disambiguator: int = 0,
            timestamp: Optional[float] = None,
    ) -> bool:
        """Record an incoming message. Returns False if it was already stored."""
        mid = message_id or derive_message_id(sender_id, content, disambiguator, self._config.node_id)
        message = Message(
            message_id=mid,
            chat_id=chat_id,
            content=content,
            timestamp=time.time() if timestamp is None else float(timestamp),
            is_from_me=False,
            status=MessageStatus.DELIVERED,
            peer_id=sender_id,
        )
        stored = await self.store.add_received(message)
        if not stored:
            LOG.debug("Duplicate message %s from %s ignored", short_id(mid), short_id(sender_id))
        return stored

    async def retry_chat(self, chat_id: str, allow_partial_connection: Optional[bool] = None) -> RetryOutcome:
        if not self.alive:
            return RetryOutcome(succeeded=False, total_succeeded=0, summary_message="Delivery session stopped")
        return await self.retry_helper.retry_chat(chat_id, allow_partial_connection)

    async def _retry_message(self, message: Message, allow_partial: bool) -> DeliveryResult:
        return await self.chain.deliver(message, allow_partial_connection=allow_partial)

    # ----------------------------------------------------------
    # Confirmations / sync
    # ----------------------------------------------------------

    def _on_mesh_confirmation(self, message_id: str) -> None:
        if not self.alive:
            return
        self._slots.schedule(f"confirm:{message_id}", 0.0, lambda: self.confirm_delivery(message_id))

    async def confirm_delivery(self, message_id: str) -> bool:
        changed = await settle_delivered(self.store, self.queue, message_id)
        if changed:
            LOG.info("Delivery of %s confirmed", short_id(message_id))
        return changed

    async def handle_sync_frame(self, peer_id: str, data: bytes) -> Optional[QueueSyncResult]:
        if not self.alive:
            return None
        return await self.sync.handle_frame(peer_id, self._chat_id_for(peer_id), data)

    def _on_status_changed(self, info: Dict[str, Any]) -> None:
        self.events.publish(
            MessageStatusEvent(
                message_id=info["message_id"],
                chat_id=info["chat_id"],
                status=info["status"],
            )
        )

    # ----------------------------------------------------------
    # Diagnostics
    # ----------------------------------------------------------

    def queued_summary(self) -> str:
        n = self.queue.count()
        return f"{n} message{'s' if n != 1 else ''} queued for relay"

    def statistics(self) -> dict:
        return {
            "node_id": self._config.node_id,
            "queue": self.queue.statistics(),
            "router": self.router.statistics(),
            "sync": self.sync.statistics(),
            "store": self.store.get_db_stats(),
        }
