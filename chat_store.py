# chat_store.py

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any, Callable, Dict, List, Optional

from delivery_types import Message, MessageStatus


LOG = logging.getLogger(__name__)

_COLUMNS = "message_id, chat_id, content, ts, is_from_me, status, peer_id"


def _row_to_message(r: tuple) -> Message:
    return Message(
        message_id=str(r[0]),
        chat_id=str(r[1]),
        content=str(r[2]),
        timestamp=float(r[3]),
        is_from_me=bool(r[4]),
        status=MessageStatus(r[5]),
        peer_id=r[6],
    )


class MessageStore:
    """
    Persistent per-chat message log using SQLite.

    - One DB file per node (configurable via path).
    - Keyed by message_id, so a re-received message is never stored twice.
    - Methods are coroutines for the delivery core, but each one runs its
      SQLite work without suspending: callers can rely on two back-to-back
      store/queue calls not interleaving with another task.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        # Optional local-only hook: called after a message changes status.
        self._on_status_changed: Optional[Callable[[Dict[str, Any]], None]] = None
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()

    def set_on_status_changed(self, cb: Optional[Callable[[Dict[str, Any]], None]]) -> None:
        """Set a callback invoked after save/update_status changes a row's status."""
        self._on_status_changed = cb

    def _init_schema(self) -> None:
        create_sql = """
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            message_id TEXT NOT NULL UNIQUE,
            chat_id TEXT NOT NULL,
            content TEXT NOT NULL,
            ts REAL NOT NULL,
            is_from_me INTEGER NOT NULL,
            status TEXT NOT NULL
        );
        """
        self._conn.execute(create_sql)

        # Schema migration: peer_id arrived after the first release.
        try:
            cols = [r[1] for r in self._conn.execute("PRAGMA table_info(messages);").fetchall()]
        except sqlite3.Error:
            cols = []
        if "peer_id" not in cols:
            self._conn.execute("ALTER TABLE messages ADD COLUMN peer_id TEXT;")

        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id, ts);")
        self._conn.commit()

    def _fire_status_hook(self, message_id: str, chat_id: str, status: MessageStatus) -> None:
        if self._on_status_changed is None:
            return
        try:
            self._on_status_changed(
                {
                    "message_id": message_id,
                    "chat_id": chat_id,
                    "status": status,
                }
            )
        except Exception:
            # Store must remain robust even if a hook misbehaves.
            LOG.warning("Status hook failed for %s", message_id, exc_info=True)

    # --------------------------------------------------------------
    # Core API
    # --------------------------------------------------------------

    async def get(self, chat_id: str) -> List[Message]:
        """Return messages for a chat ordered by timestamp (row id as tiebreaker)."""
        sql = f"""
        SELECT {_COLUMNS}
        FROM messages
        WHERE chat_id = ?
        ORDER BY ts ASC, id ASC;
        """
        rows = self._conn.execute(sql, (chat_id,)).fetchall()
        return [_row_to_message(r) for r in rows]

    async def get_by_id(self, message_id: str) -> Optional[Message]:
        sql = f"SELECT {_COLUMNS} FROM messages WHERE message_id = ? LIMIT 1;"
        row = self._conn.execute(sql, (message_id,)).fetchone()
        if row is None:
            return None
        return _row_to_message(row)

    async def save(self, message: Message) -> None:
        """Insert or replace a message by id (keeps the original row order)."""
        prev = self._conn.execute(
            "SELECT status FROM messages WHERE message_id = ?;", (message.message_id,)
        ).fetchone()

        upsert_sql = """
        INSERT INTO messages (message_id, chat_id, content, ts, is_from_me, status, peer_id)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(message_id) DO UPDATE SET
            chat_id = excluded.chat_id,
            content = excluded.content,
            ts = excluded.ts,
            is_from_me = excluded.is_from_me,
            status = excluded.status,
            peer_id = excluded.peer_id;
        """
        self._conn.execute(
            upsert_sql,
            (
                message.message_id,
                message.chat_id,
                message.content,
                float(message.timestamp),
                1 if message.is_from_me else 0,
                message.status.value,
                message.peer_id,
            ),
        )
        self._conn.commit()

        if prev is None or prev[0] != message.status.value:
            self._fire_status_hook(message.message_id, message.chat_id, message.status)

    async def update_status(self, message_id: str, status: MessageStatus) -> bool:
        """Set a message's status. Returns False if the id is unknown."""
        row = self._conn.execute(
            "SELECT chat_id, status FROM messages WHERE message_id = ?;", (message_id,)
        ).fetchone()
        if row is None:
            return False
        if row[1] == status.value:
            return True

        self._conn.execute(
            "UPDATE messages SET status = ? WHERE message_id = ?;",
            (status.value, message_id),
        )
        self._conn.commit()
        self._fire_status_hook(message_id, str(row[0]), status)
        return True

    async def clear(self, chat_id: str) -> int:
        cur = self._conn.execute("DELETE FROM messages WHERE chat_id = ?;", (chat_id,))
        self._conn.commit()
        return int(cur.rowcount or 0)

    # --------------------------------------------------------------
    # Receipt / migration / sync helpers
    # --------------------------------------------------------------

    async def add_received(self, message: Message) -> bool:
        """
        Insert a received message, ignoring it if the id is already present.

        Returns True only when a new row was stored.
        """
        insert_sql = """
        INSERT OR IGNORE INTO messages
            (message_id, chat_id, content, ts, is_from_me, status, peer_id)
        VALUES (?, ?, ?, ?, ?, ?, ?);
        """
        cur = self._conn.execute(
            insert_sql,
            (
                message.message_id,
                message.chat_id,
                message.content,
                float(message.timestamp),
                1 if message.is_from_me else 0,
                message.status.value,
                message.peer_id,
            ),
        )
        self._conn.commit()
        return cur.rowcount == 1

    async def has_message(self, message_id: str) -> bool:
        cur = self._conn.execute("SELECT 1 FROM messages WHERE message_id = ? LIMIT 1;", (message_id,))
        return cur.fetchone() is not None

    async def migrate_chat(self, old_chat_id: str, new_chat_id: str, peer_id: Optional[str] = None) -> int:
        """
        Move every message from old_chat_id into new_chat_id, then clear the
        old bucket. Rows without a peer id take `peer_id`, if given.

        Returns the number of rows moved (0 if nothing to migrate).
        """
        if old_chat_id == new_chat_id:
            return 0

        try:
            if peer_id:
                self._conn.execute(
                    "UPDATE messages SET peer_id = ? WHERE chat_id = ? AND peer_id IS NULL;",
                    (peer_id, old_chat_id),
                )
            cur = self._conn.execute(
                "UPDATE messages SET chat_id = ? WHERE chat_id = ?;",
                (new_chat_id, old_chat_id),
            )
            moved = int(cur.rowcount or 0)
            self._conn.execute("DELETE FROM messages WHERE chat_id = ?;", (old_chat_id,))
            self._conn.commit()
        except sqlite3.Error:
            self._conn.rollback()
            raise
        return moved

    async def received_ids(self, chat_id: str, limit: int = 200) -> List[str]:
        """Ids of the most recent messages we received (not sent) in a chat."""
        if limit <= 0:
            return []
        sql = """
        SELECT message_id FROM messages
        WHERE chat_id = ? AND is_from_me = 0
        ORDER BY ts DESC, id DESC
        LIMIT ?;
        """
        rows = self._conn.execute(sql, (chat_id, int(limit))).fetchall()
        return [str(r[0]) for r in rows]

    def list_chats(self, limit: int = 50) -> List[str]:
        """
        Return distinct chat identifiers ordered by most recent activity.
        """
        sql = """
        SELECT chat_id, MAX(ts) AS last_ts
        FROM messages
        GROUP BY chat_id
        ORDER BY last_ts DESC
        LIMIT ?;
        """
        rows = self._conn.execute(sql, (int(limit),)).fetchall()
        return [str(r[0]) for r in rows]

    def get_db_stats(self) -> dict:
        """Return basic DB stats for diagnostics (local-only)."""
        try:
            cur = self._conn.execute(
                "SELECT COUNT(*), COUNT(DISTINCT chat_id), MIN(ts), MAX(ts) FROM messages"
            )
            row = cur.fetchone()
            status_rows = self._conn.execute(
                "SELECT status, COUNT(*) FROM messages GROUP BY status"
            ).fetchall()
        except sqlite3.Error:
            row = None
            status_rows = []

        if not row:
            return {"messages_total": 0, "chats": 0, "oldest_ts": None, "newest_ts": None, "by_status": {}}

        total, chats, oldest, newest = row
        return {
            "messages_total": int(total or 0),
            "chats": int(chats or 0),
            "oldest_ts": float(oldest) if oldest is not None else None,
            "newest_ts": float(newest) if newest is not None else None,
            "by_status": {str(s): int(n) for s, n in status_rows},
        }

    def close(self) -> None:
        self._conn.close()


def new_outgoing_message(message_id: str, chat_id: str, content: str, recipient_id: Optional[str]) -> Message:
    return Message(
        message_id=message_id,
        chat_id=chat_id,
        content=content,
        timestamp=time.time(),
        is_from_me=True,
        status=MessageStatus.SENDING,
        peer_id=recipient_id,
    )
