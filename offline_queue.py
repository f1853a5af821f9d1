# offline_queue.py

"""
Durable holding area for messages that could not be sent immediately.

The in-memory view is authoritative for the running session and every
mutation is written through to SQLite so the queue survives a restart. A
failed write is reported (log + PersistenceWarningEvent) but never undoes
or blocks the in-memory change.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import sqlite3
import time
from typing import Callable, Dict, List, Optional

from crypto_layer import QueueContentCipher
from delivery_events import EventChannel, PersistenceWarningEvent, QueueChangedEvent
from delivery_types import QueuedEntry, QueuePersistenceFailure, short_id
from mesh_config import QueueConfig, SecurityConfig


LOG = logging.getLogger(__name__)


# ============================================================
# SQLite backend
# ============================================================

class SqliteQueueBackend:
    """
    Queue persistence using SQLite.

    Layout: one row per message id (unique), indexed by recipient, plus a
    tombstone table of ids that were delivered so a later sync or retry
    cannot queue them again. Every sqlite3.Error surfaces as
    QueuePersistenceFailure.
    """

    def __init__(self, db_path: str, cipher: Optional[QueueContentCipher] = None) -> None:
        self._db_path = db_path
        self._cipher = cipher or QueueContentCipher(SecurityConfig())
        try:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._init_schema()
        except sqlite3.Error as exc:
            raise QueuePersistenceFailure(f"cannot open queue db {db_path}: {exc}") from exc

    def _init_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS queued_messages (
                message_id TEXT PRIMARY KEY,
                recipient_id TEXT NOT NULL,
                chat_id TEXT NOT NULL DEFAULT '',
                content TEXT NOT NULL,
                enqueued_at REAL NOT NULL,
                attempt_count INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_queued_recipient ON queued_messages(recipient_id, enqueued_at);"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS queue_tombstones (
                message_id TEXT PRIMARY KEY,
                removed_at REAL NOT NULL
            );
            """
        )
        self._conn.commit()

    def _run(self, what: str, sql: str, params: tuple = ()) -> int:
        try:
            cur = self._conn.execute(sql, params)
            self._conn.commit()
        except sqlite3.Error as exc:
            raise QueuePersistenceFailure(f"{what} failed: {exc}") from exc
        return int(cur.rowcount or 0)

    def load_entries(self) -> List[QueuedEntry]:
        try:
            rows = self._conn.execute(
                """
                SELECT message_id, recipient_id, chat_id, content, enqueued_at, attempt_count
                FROM queued_messages
                ORDER BY enqueued_at ASC, rowid ASC;
                """
            ).fetchall()
        except sqlite3.Error as exc:
            raise QueuePersistenceFailure(f"load failed: {exc}") from exc

        entries: List[QueuedEntry] = []
        for message_id, recipient_id, chat_id, content, enqueued_at, attempts in rows:
            try:
                plain = self._cipher.decrypt_text(str(content), str(message_id).encode("utf-8"))
            except ValueError:
                LOG.warning("Skipping unreadable queue row %s", short_id(str(message_id)))
                continue
            entries.append(
                QueuedEntry(
                    message_id=str(message_id),
                    recipient_id=str(recipient_id),
                    content=plain,
                    enqueued_at=float(enqueued_at),
                    attempt_count=int(attempts or 0),
                    chat_id=str(chat_id or ""),
                )
            )
        return entries

    def load_tombstones(self) -> Dict[str, float]:
        try:
            rows = self._conn.execute("SELECT message_id, removed_at FROM queue_tombstones;").fetchall()
        except sqlite3.Error as exc:
            raise QueuePersistenceFailure(f"load tombstones failed: {exc}") from exc
        return {str(r[0]): float(r[1]) for r in rows}

    def insert(self, entry: QueuedEntry) -> None:
        stored_content = self._cipher.encrypt_text(entry.content, entry.message_id.encode("utf-8"))
        self._run(
            "insert",
            """
            INSERT OR IGNORE INTO queued_messages
                (message_id, recipient_id, chat_id, content, enqueued_at, attempt_count)
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            (
                entry.message_id,
                entry.recipient_id,
                entry.chat_id,
                stored_content,
                float(entry.enqueued_at),
                int(entry.attempt_count),
            ),
        )

    def delete(self, message_id: str, removed_at: float) -> None:
        try:
            self._conn.execute("DELETE FROM queued_messages WHERE message_id = ?;", (message_id,))
            self._conn.execute(
                "INSERT OR REPLACE INTO queue_tombstones (message_id, removed_at) VALUES (?, ?);",
                (message_id, float(removed_at)),
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            raise QueuePersistenceFailure(f"delete failed: {exc}") from exc

    def drop(self, message_id: str) -> None:
        self._run("drop", "DELETE FROM queued_messages WHERE message_id = ?;", (message_id,))

    def update_attempts(self, message_id: str, attempt_count: int) -> None:
        self._run(
            "update attempts",
            "UPDATE queued_messages SET attempt_count = ? WHERE message_id = ?;",
            (int(attempt_count), message_id),
        )

    def delete_tombstones_before(self, cutoff: float) -> int:
        return self._run(
            "tombstone cleanup",
            "DELETE FROM queue_tombstones WHERE removed_at < ?;",
            (float(cutoff),),
        )

    def close(self) -> None:
        self._conn.close()


# ============================================================
# OfflineQueue
# ============================================================

class OfflineQueue:
    """
    FIFO of not-yet-delivered messages, keyed uniquely by message id.

    - enqueue() is idempotent by id and ignores ids already delivered.
    - remove() is the only way an entry leaves on delivery; it leaves a
      tombstone behind. purge() and expire_stale() drop entries that were
      never delivered and leave none.
    - peer_lock(recipient) serialises enqueues for a peer against a running
      queue-sync reconciliation for the same peer.
    """

    def __init__(
            self,
            backend: Optional[SqliteQueueBackend] = None,
            config: Optional[QueueConfig] = None,
            events: Optional[EventChannel] = None,
            clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._config = config or QueueConfig()
        self._events = events
        self._clock = clock

        self._entries: Dict[str, QueuedEntry] = {}
        self._order: Dict[str, int] = {}
        self._next_order = 0
        self._tombstones: Dict[str, float] = {}
        self._peer_locks: Dict[str, asyncio.Lock] = {}

        self._persistence_failures = 0
        self._total_enqueued = 0
        self._total_removed = 0

    @property
    def durable(self) -> bool:
        return self._backend is not None

    # --------------------------------------------------------------
    # Persistence plumbing
    # --------------------------------------------------------------

    def _persist(self, operation: str, message_id: Optional[str], fn: Callable[[], object]) -> bool:
        if self._backend is None:
            return True
        try:
            fn()
        except QueuePersistenceFailure as exc:
            self._persistence_failures += 1
            LOG.warning(
                "Queue persistence %s failed for %s (kept in memory): %s",
                operation,
                short_id(message_id or "-"),
                exc,
            )
            if self._events is not None:
                self._events.publish(
                    PersistenceWarningEvent(operation=operation, message_id=message_id, error=str(exc))
                )
            return False
        return True

    def _emit_changed(self) -> None:
        if self._events is None:
            return
        self._events.publish(
            QueueChangedEvent(pending_count=len(self._entries), recipients=self.recipients())
        )

    async def load(self) -> int:
        """Restore entries and tombstones from the backend. Returns entries loaded."""
        if self._backend is None:
            return 0
        try:
            entries = self._backend.load_entries()
            tombstones = self._backend.load_tombstones()
        except QueuePersistenceFailure as exc:
            self._persistence_failures += 1
            LOG.warning("Queue load failed, starting empty: %s", exc)
            if self._events is not None:
                self._events.publish(PersistenceWarningEvent(operation="load", message_id=None, error=str(exc)))
            return 0

        self._tombstones.update(tombstones)
        loaded = 0
        for entry in entries:
            if entry.message_id in self._entries:
                continue
            self._add_in_memory(entry)
            loaded += 1
        LOG.info("Offline queue restored %d entr%s", loaded, "y" if loaded == 1 else "ies")
        if loaded:
            self._emit_changed()
        return loaded

    def _add_in_memory(self, entry: QueuedEntry) -> None:
        self._entries[entry.message_id] = entry
        self._order[entry.message_id] = self._next_order
        self._next_order += 1

    # --------------------------------------------------------------
    # Public API
    # --------------------------------------------------------------

    def peer_lock(self, recipient_id: str) -> asyncio.Lock:
        lock = self._peer_locks.get(recipient_id)
        if lock is None:
            lock = asyncio.Lock()
            self._peer_locks[recipient_id] = lock
        return lock

    async def enqueue(self, entry: QueuedEntry) -> bool:
        """Append an entry. Returns False if the id is already queued or was delivered."""
        async with self.peer_lock(entry.recipient_id):
            if entry.message_id in self._entries:
                LOG.debug("Enqueue ignored, %s already queued", short_id(entry.message_id))
                return False
            if entry.message_id in self._tombstones:
                LOG.debug("Enqueue ignored, %s already delivered", short_id(entry.message_id))
                return False

            self._add_in_memory(entry)
            self._total_enqueued += 1
            self._persist("enqueue", entry.message_id, lambda: self._backend.insert(entry))

        LOG.info(
            "Queued %s for %s (%d pending)",
            short_id(entry.message_id),
            short_id(entry.recipient_id),
            len(self._entries),
        )
        self._emit_changed()
        return True

    async def remove(self, message_id: str) -> bool:
        """Drop an entry after confirmed delivery. Returns False if it was not queued."""
        entry = self._entries.pop(message_id, None)
        self._order.pop(message_id, None)
        now = self._clock()
        already_tombstoned = message_id in self._tombstones
        self._tombstones[message_id] = now

        if entry is None:
            if not already_tombstoned:
                self._persist("tombstone", message_id, lambda: self._backend.delete(message_id, now))
            return False

        self._total_removed += 1
        self._persist("remove", message_id, lambda: self._backend.delete(message_id, now))
        LOG.debug("Removed %s from queue (%d pending)", short_id(message_id), len(self._entries))
        self._emit_changed()
        return True

    def pending(self, recipient_id: Optional[str] = None) -> List[QueuedEntry]:
        """FIFO by enqueue time (insertion order breaks ties)."""
        entries = [
            e for e in self._entries.values()
            if recipient_id is None or e.recipient_id == recipient_id
        ]
        entries.sort(key=lambda e: (e.enqueued_at, self._order.get(e.message_id, 0)))
        return entries

    def get(self, message_id: str) -> Optional[QueuedEntry]:
        return self._entries.get(message_id)

    def contains(self, message_id: str) -> bool:
        return message_id in self._entries

    def is_tombstoned(self, message_id: str) -> bool:
        return message_id in self._tombstones

    def count(self, recipient_id: Optional[str] = None) -> int:
        if recipient_id is None:
            return len(self._entries)
        return sum(1 for e in self._entries.values() if e.recipient_id == recipient_id)

    def recipients(self) -> List[str]:
        return sorted({e.recipient_id for e in self._entries.values()})

    async def record_attempt(self, message_id: str) -> int:
        entry = self._entries.get(message_id)
        if entry is None:
            return 0
        entry.attempt_count += 1
        attempts = entry.attempt_count
        self._persist("attempt", message_id, lambda: self._backend.update_attempts(message_id, attempts))
        return attempts

    def _drop(self, operation: str, entries: List[QueuedEntry]) -> None:
        # Undelivered ids get no tombstone, so a later send may queue them again.
        for entry in entries:
            self._entries.pop(entry.message_id, None)
            self._order.pop(entry.message_id, None)
            self._persist(operation, entry.message_id, lambda mid=entry.message_id: self._backend.drop(mid))
        if entries:
            self._emit_changed()

    async def purge(self, recipient_id: Optional[str] = None) -> List[QueuedEntry]:
        """Explicitly drop entries (all, or one recipient's) and return them."""
        victims = self.pending(recipient_id)
        self._drop("purge", victims)
        if victims:
            LOG.info("Purged %d queued message(s)", len(victims))
        return victims

    async def expire_stale(self, now: Optional[float] = None) -> List[QueuedEntry]:
        """Drop entries older than max_age_seconds and return them."""
        t = self._clock() if now is None else float(now)
        cutoff = t - float(self._config.max_age_seconds)
        expired = [e for e in self.pending() if e.enqueued_at < cutoff]
        self._drop("expire", expired)
        if expired:
            LOG.info("Expired %d stale queued message(s)", len(expired))
        return expired

    async def cleanup_tombstones(self, now: Optional[float] = None) -> int:
        t = self._clock() if now is None else float(now)
        cutoff = t - float(self._config.deleted_id_ttl_seconds)
        old = [mid for mid, ts in self._tombstones.items() if ts < cutoff]
        for mid in old:
            del self._tombstones[mid]
        if old:
            self._persist("tombstone cleanup", None, lambda: self._backend.delete_tombstones_before(cutoff))
        return len(old)

    def queue_hash(self) -> str:
        active = sorted(self._entries.keys())
        deleted = sorted(self._tombstones.keys())
        return hashlib.sha256(":".join(active + deleted).encode("utf-8")).hexdigest()[:16]

    def statistics(self) -> dict:
        pending = self.pending()
        return {
            "pending": len(pending),
            "recipients": len(self.recipients()),
            "oldest_enqueued_at": pending[0].enqueued_at if pending else None,
            "total_enqueued": self._total_enqueued,
            "total_removed": self._total_removed,
            "tombstones": len(self._tombstones),
            "persistence_failures": self._persistence_failures,
            "durable": self.durable,
        }

    def close(self) -> None:
        if self._backend is not None:
            self._backend.close()
