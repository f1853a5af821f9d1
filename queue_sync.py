# queue_sync.py

"""
Queue-sync handshake run when a known peer reconnects.

Both sides exchange a QueueSyncManifest. Each side then drops from its own
queue every id the other side lists as already received (and marks it
delivered), and notes which of the peer's pending ids it already holds so
the peer can skip re-sending them. Reconciliation for one peer holds that
peer's queue lock, so an enqueue for the same peer waits until it is done.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

from chat_protocol import (
    MAX_MANIFEST_IDS,
    SYNC_TYPE_REQUEST,
    SYNC_TYPE_RESPONSE,
    QueueSyncManifest,
    decode_queue_sync,
    encode_queue_sync,
)
from chat_store import MessageStore
from delivery_events import EventChannel, SyncCompletedEvent
from delivery_types import short_id
from mesh_config import SyncConfig
from message_router import settle_delivered
from offline_queue import OfflineQueue


LOG = logging.getLogger(__name__)

SendFrame = Callable[[str, bytes], Awaitable[bool]]


@dataclass(frozen=True)
class QueueSyncResult:
    success: bool
    removed_ids: List[str] = field(default_factory=list)
    suppressed_ids: List[str] = field(default_factory=list)
    remaining: int = 0
    error: Optional[str] = None
    rate_limited: bool = False
    timed_out: bool = False

    @classmethod
    def limited(cls, reason: str) -> "QueueSyncResult":
        return cls(success=False, error=reason, rate_limited=True)

    @classmethod
    def failed(cls, reason: str) -> "QueueSyncResult":
        return cls(success=False, error=reason)

    @classmethod
    def timeout(cls) -> "QueueSyncResult":
        return cls(success=False, error="Sync timed out", timed_out=True)


class QueueSyncManager:
    def __init__(
            self,
            queue: OfflineQueue,
            store: MessageStore,
            node_id: str,
            config: Optional[SyncConfig] = None,
            send_frame: Optional[SendFrame] = None,
            events: Optional[EventChannel] = None,
            clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._queue = queue
        self._store = store
        self._node_id = node_id
        self._config = config or SyncConfig()
        self._send_frame = send_frame
        self._events = events
        self._clock = clock

        self._in_progress: Set[str] = set()
        self._last_sync: Dict[str, float] = {}
        self._history: Deque[float] = deque()
        self._awaiting: Dict[str, asyncio.Future] = {}

        self._successful = 0
        self._failed = 0

    def set_send_frame(self, send_frame: Optional[SendFrame]) -> None:
        self._send_frame = send_frame

    # --------------------------------------------------------------
    # Rate limiting
    # --------------------------------------------------------------

    def _rate_limit_reason(self, peer_id: str) -> Optional[str]:
        if peer_id in self._in_progress:
            return "Sync already in progress"

        now = self._clock()
        last = self._last_sync.get(peer_id)
        if last is not None and (now - last) < float(self._config.min_sync_interval_seconds):
            return "Minimum sync interval not met"

        cutoff = now - 3600.0
        while self._history and self._history[0] < cutoff:
            self._history.popleft()
        if len(self._history) >= int(self._config.max_syncs_per_hour):
            return "Global rate limit exceeded"
        return None

    def _record_attempt(self, peer_id: str) -> None:
        now = self._clock()
        self._last_sync[peer_id] = now
        self._history.append(now)

    # --------------------------------------------------------------
    # Manifest
    # --------------------------------------------------------------

    async def build_manifest(self, peer_id: str, chat_id: str, kind: int = SYNC_TYPE_REQUEST) -> QueueSyncManifest:
        pending = [e.message_id for e in self._queue.pending(peer_id)]
        received = await self._store.received_ids(chat_id, self._config.received_window)
        return QueueSyncManifest(
            node_id=self._node_id,
            pending_ids=pending[:MAX_MANIFEST_IDS],
            received_ids=received[:MAX_MANIFEST_IDS],
            queue_hash=self._queue.queue_hash(),
            kind=kind,
        )

    # --------------------------------------------------------------
    # Initiator side
    # --------------------------------------------------------------

    async def initiate_sync(self, peer_id: str, chat_id: str) -> QueueSyncResult:
        if not self._config.enabled:
            return QueueSyncResult.limited("Sync disabled")

        reason = self._rate_limit_reason(peer_id)
        if reason is not None:
            LOG.debug("Queue sync with %s skipped: %s", short_id(peer_id), reason)
            return QueueSyncResult.limited(reason)

        if self._send_frame is None:
            return QueueSyncResult.failed("Sync transport unavailable")

        self._in_progress.add(peer_id)
        self._record_attempt(peer_id)
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._awaiting[peer_id] = waiter
        try:
            manifest = await self.build_manifest(peer_id, chat_id, SYNC_TYPE_REQUEST)
            LOG.info(
                "Queue sync with %s: %d pending, %d received",
                short_id(peer_id),
                len(manifest.pending_ids),
                len(manifest.received_ids),
            )
            sent = await self._send_frame(peer_id, encode_queue_sync(manifest))
            if not sent:
                self._failed += 1
                return QueueSyncResult.failed("Sync transport unavailable")

            try:
                result = await asyncio.wait_for(waiter, timeout=float(self._config.sync_timeout_seconds))
            except asyncio.TimeoutError:
                self._failed += 1
                LOG.warning("Queue sync with %s timed out", short_id(peer_id))
                return QueueSyncResult.timeout()

            if result.success:
                self._successful += 1
            else:
                self._failed += 1
            return result
        finally:
            self._in_progress.discard(peer_id)
            self._awaiting.pop(peer_id, None)

    # --------------------------------------------------------------
    # Frame handling
    # --------------------------------------------------------------

    async def handle_frame(self, peer_id: str, chat_id: str, data: bytes) -> Optional[QueueSyncResult]:
        manifest = decode_queue_sync(data)
        if manifest is None:
            LOG.debug("Ignoring malformed sync frame from %s", short_id(peer_id))
            return None

        result = await self.reconcile(peer_id, manifest)

        if manifest.kind == SYNC_TYPE_REQUEST:
            if self._send_frame is not None:
                response = await self.build_manifest(peer_id, chat_id, SYNC_TYPE_RESPONSE)
                sent = await self._send_frame(peer_id, encode_queue_sync(response))
                if not sent:
                    LOG.warning("Could not send sync response to %s", short_id(peer_id))
            return result

        waiter = self._awaiting.get(peer_id)
        if waiter is not None and not waiter.done():
            waiter.set_result(result)
        else:
            LOG.debug("Unsolicited sync response from %s", short_id(peer_id))
        return result

    async def reconcile(self, peer_id: str, manifest: QueueSyncManifest) -> QueueSyncResult:
        removed: List[str] = []
        suppressed: List[str] = []

        async with self._queue.peer_lock(peer_id):
            for message_id in manifest.received_ids:
                entry = self._queue.get(message_id)
                if entry is None or entry.recipient_id != peer_id:
                    continue
                if await settle_delivered(self._store, self._queue, message_id):
                    removed.append(message_id)

            for message_id in manifest.pending_ids:
                if await self._store.has_message(message_id):
                    suppressed.append(message_id)

            remaining = self._queue.count(peer_id)

        LOG.info(
            "Queue sync with %s reconciled: %d removed, %d suppressed, %d remaining",
            short_id(peer_id),
            len(removed),
            len(suppressed),
            remaining,
        )
        if self._events is not None:
            self._events.publish(
                SyncCompletedEvent(
                    peer_id=peer_id,
                    removed=len(removed),
                    suppressed=len(suppressed),
                    remaining=remaining,
                )
            )
        return QueueSyncResult(
            success=True,
            removed_ids=removed,
            suppressed_ids=suppressed,
            remaining=remaining,
        )

    def statistics(self) -> dict:
        return {
            "successful": self._successful,
            "failed": self._failed,
            "in_progress": len(self._in_progress),
            "syncs_last_hour": len(self._history),
        }
