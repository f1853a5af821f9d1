#!/usr/bin/env python3

import sqlite3
import tempfile
import unittest
from dataclasses import replace
from pathlib import Path

from chat_store import MessageStore, new_outgoing_message
from delivery_types import Message, MessageStatus


def _msg(mid: str, chat: str, ts: float, status: MessageStatus = MessageStatus.DELIVERED, mine: bool = True) -> Message:
    return Message(
        message_id=mid,
        chat_id=chat,
        content=f"content of {mid}",
        timestamp=ts,
        is_from_me=mine,
        status=status,
        peer_id="bob" if mine else "alice",
    )


class MessageStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = MessageStore(":memory:")

    async def asyncTearDown(self) -> None:
        self.store.close()

    async def test_get_orders_by_timestamp(self) -> None:
        await self.store.save(_msg("m2", "abc", 20.0))
        await self.store.save(_msg("m1", "abc", 10.0))
        await self.store.save(_msg("x", "other", 5.0))

        got = await self.store.get("abc")
        self.assertEqual([m.message_id for m in got], ["m1", "m2"])
        self.assertEqual(got[0].peer_id, "bob")

    async def test_save_is_upsert_by_id(self) -> None:
        await self.store.save(_msg("m1", "abc", 10.0, MessageStatus.SENDING))
        await self.store.save(_msg("m1", "abc", 10.0, MessageStatus.FAILED))

        got = await self.store.get("abc")
        self.assertEqual(len(got), 1)
        self.assertEqual(got[0].status, MessageStatus.FAILED)

    async def test_update_status_and_hook(self) -> None:
        seen = []
        self.store.set_on_status_changed(seen.append)
        await self.store.save(_msg("m1", "abc", 10.0, MessageStatus.SENDING))

        self.assertTrue(await self.store.update_status("m1", MessageStatus.DELIVERED))
        self.assertTrue(await self.store.update_status("m1", MessageStatus.DELIVERED))
        self.assertFalse(await self.store.update_status("missing", MessageStatus.FAILED))

        statuses = [e["status"] for e in seen]
        self.assertEqual(statuses, [MessageStatus.SENDING, MessageStatus.DELIVERED])
        self.assertEqual((await self.store.get_by_id("m1")).status, MessageStatus.DELIVERED)

    async def test_failing_hook_does_not_break_store(self) -> None:
        def boom(_info: dict) -> None:
            raise RuntimeError("ui gone")

        self.store.set_on_status_changed(boom)
        with self.assertLogs("chat_store", level="WARNING"):
            await self.store.save(_msg("m1", "abc", 10.0))
        self.assertIsNotNone(await self.store.get_by_id("m1"))

    async def test_add_received_is_idempotent(self) -> None:
        incoming = _msg("r1", "abc", 10.0, mine=False)
        self.assertTrue(await self.store.add_received(incoming))
        self.assertFalse(await self.store.add_received(incoming))
        self.assertEqual(len(await self.store.get("abc")), 1)
        self.assertTrue(await self.store.has_message("r1"))

    async def test_clear(self) -> None:
        await self.store.save(_msg("m1", "abc", 1.0))
        await self.store.save(_msg("m2", "abc", 2.0))
        self.assertEqual(await self.store.clear("abc"), 2)
        self.assertEqual(await self.store.get("abc"), [])

    async def test_migrate_chat_moves_and_clears(self) -> None:
        await self.store.save(_msg("m1", "temp", 1.0))
        await self.store.save(_msg("m2", "temp", 2.0))
        await self.store.save(_msg("m0", "real", 0.5))

        moved = await self.store.migrate_chat("temp", "real")

        self.assertEqual(moved, 2)
        self.assertEqual(await self.store.get("temp"), [])
        self.assertEqual([m.message_id for m in await self.store.get("real")], ["m0", "m1", "m2"])
        self.assertEqual(await self.store.migrate_chat("temp", "real"), 0)
        self.assertEqual(await self.store.migrate_chat("real", "real"), 0)

    async def test_migrate_chat_fills_missing_peer(self) -> None:
        await self.store.save(_msg("known", "temp_1", 1.0))
        await self.store.save(replace(_msg("anon", "temp_1", 2.0), peer_id=None))

        self.assertEqual(await self.store.migrate_chat("temp_1", "chat_carol", "carol"), 2)

        peers = {m.message_id: m.peer_id for m in await self.store.get("chat_carol")}
        self.assertEqual(peers, {"known": "bob", "anon": "carol"})

    async def test_received_ids_only_lists_incoming(self) -> None:
        await self.store.save(_msg("mine", "abc", 1.0))
        await self.store.add_received(_msg("r1", "abc", 2.0, mine=False))
        await self.store.add_received(_msg("r2", "abc", 3.0, mine=False))

        self.assertEqual(await self.store.received_ids("abc"), ["r2", "r1"])
        self.assertEqual(await self.store.received_ids("abc", limit=1), ["r2"])
        self.assertEqual(await self.store.received_ids("abc", limit=0), [])

    async def test_stats_and_chat_list(self) -> None:
        await self.store.save(_msg("m1", "a", 1.0, MessageStatus.FAILED))
        await self.store.save(_msg("m2", "b", 5.0, MessageStatus.DELIVERED))

        stats = self.store.get_db_stats()
        self.assertEqual(stats["messages_total"], 2)
        self.assertEqual(stats["chats"], 2)
        self.assertEqual(stats["by_status"], {"failed": 1, "delivered": 1})
        self.assertEqual(self.store.list_chats(), ["b", "a"])

    async def test_new_outgoing_message(self) -> None:
        m = new_outgoing_message("id", "chat", "hi", "bob")
        self.assertTrue(m.is_from_me)
        self.assertEqual(m.status, MessageStatus.SENDING)
        self.assertEqual(m.peer_id, "bob")


class MessageStoreSchemaTests(unittest.TestCase):
    def test_old_schema_gains_peer_column(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            db_path = str(Path(td) / "old.db")
            conn = sqlite3.connect(db_path)
            try:
                conn.execute(
                    """
                    CREATE TABLE messages (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        message_id TEXT NOT NULL UNIQUE,
                        chat_id TEXT NOT NULL,
                        content TEXT NOT NULL,
                        ts REAL NOT NULL,
                        is_from_me INTEGER NOT NULL,
                        status TEXT NOT NULL
                    );
                    """
                )
                conn.execute(
                    "INSERT INTO messages (message_id, chat_id, content, ts, is_from_me, status) "
                    "VALUES ('old', 'abc', 'hi', 1.0, 1, 'failed');"
                )
                conn.commit()
            finally:
                conn.close()

            store = MessageStore(db_path)
            try:
                cols = [r[1] for r in store._conn.execute("PRAGMA table_info(messages);").fetchall()]
                self.assertIn("peer_id", cols)
            finally:
                store.close()


if __name__ == "__main__":
    unittest.main()
