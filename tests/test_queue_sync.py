#!/usr/bin/env python3

import unittest

from chat_protocol import QueueSyncManifest
from chat_store import MessageStore
from delivery_events import EventChannel, SyncCompletedEvent
from delivery_types import Message, MessageStatus, QueuedEntry
from fake_link import FramePipe
from mesh_config import SyncConfig
from offline_queue import OfflineQueue
from queue_sync import QueueSyncManager


def _outgoing(mid: str, chat: str, recipient: str, ts: float) -> Message:
    return Message(mid, chat, f"text {mid}", ts, True, MessageStatus.QUEUED, recipient)


def _incoming(mid: str, chat: str, sender: str, ts: float) -> Message:
    return Message(mid, chat, f"text {mid}", ts, False, MessageStatus.DELIVERED, sender)


class _Node:
    def __init__(self, node_id: str, config: SyncConfig) -> None:
        self.node_id = node_id
        self.store = MessageStore(":memory:")
        self.queue = OfflineQueue()
        self.events = EventChannel()
        self.sync = QueueSyncManager(self.queue, self.store, node_id, config, events=self.events)

    async def queue_for(self, peer: str, mids) -> None:
        for i, mid in enumerate(mids):
            await self.store.save(_outgoing(mid, f"chat_{peer}", peer, float(i)))
            await self.queue.enqueue(
                QueuedEntry(message_id=mid, recipient_id=peer, content=f"text {mid}", enqueued_at=float(i))
            )

    def close(self) -> None:
        self.store.close()


def _wire(a: _Node, b: _Node):
    to_b = FramePipe(a.node_id, lambda sender, data: b.sync.handle_frame(sender, f"chat_{sender}", data))
    to_a = FramePipe(b.node_id, lambda sender, data: a.sync.handle_frame(sender, f"chat_{sender}", data))
    a.sync.set_send_frame(to_b.send)
    b.sync.set_send_frame(to_a.send)
    return to_b, to_a


class QueueSyncTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        config = SyncConfig(min_sync_interval_seconds=30.0, sync_timeout_seconds=1.0)
        self.a = _Node("A", config)
        self.b = _Node("B", config)

    async def asyncTearDown(self) -> None:
        self.a.close()
        self.b.close()

    async def test_confirmed_ids_leave_the_queue(self) -> None:
        ids = [f"2.{i}.m" for i in range(5)]
        await self.a.queue_for("B", ids)
        # B already holds three of A's messages from an earlier, flapped link.
        for i, mid in enumerate(ids[:3]):
            await self.b.store.add_received(_incoming(mid, "chat_A", "A", float(i)))
        b_seen = []
        self.b.events.subscribe(SyncCompletedEvent, b_seen.append)
        _wire(self.a, self.b)

        result = await self.a.sync.initiate_sync("B", "chat_B")

        self.assertTrue(result.success)
        self.assertEqual(sorted(result.removed_ids), sorted(ids[:3]))
        self.assertEqual(result.remaining, 2)
        self.assertEqual([e.message_id for e in self.a.queue.pending("B")], ids[3:])

        a_msgs = await self.a.store.get("chat_B")
        delivered = [m.message_id for m in a_msgs if m.status == MessageStatus.DELIVERED]
        self.assertEqual(sorted(delivered), sorted(ids[:3]))
        self.assertEqual(len(a_msgs), 5)
        self.assertEqual(len(await self.b.store.get("chat_A")), 3)
        # B already holds the first three of the ids A still listed as pending.
        self.assertEqual([e.suppressed for e in b_seen], [3])

    async def test_nothing_confirmed_keeps_everything(self) -> None:
        ids = ["2.1.x", "2.2.y"]
        await self.a.queue_for("B", ids)
        _wire(self.a, self.b)

        result = await self.a.sync.initiate_sync("B", "chat_B")

        self.assertTrue(result.success)
        self.assertEqual(result.removed_ids, [])
        self.assertEqual(self.a.queue.count("B"), 2)

    async def test_completion_event_published(self) -> None:
        seen = []
        self.a.events.subscribe(SyncCompletedEvent, seen.append)
        await self.a.queue_for("B", ["2.1.x"])
        await self.b.store.add_received(_incoming("2.1.x", "chat_A", "A", 0.0))
        _wire(self.a, self.b)

        await self.a.sync.initiate_sync("B", "chat_B")

        self.assertEqual(len(seen), 1)
        self.assertEqual((seen[0].peer_id, seen[0].removed, seen[0].remaining), ("B", 1, 0))

    async def test_min_interval_rate_limit(self) -> None:
        _wire(self.a, self.b)
        first = await self.a.sync.initiate_sync("B", "chat_B")
        second = await self.a.sync.initiate_sync("B", "chat_B")

        self.assertTrue(first.success)
        self.assertFalse(second.success)
        self.assertTrue(second.rate_limited)
        self.assertEqual(second.error, "Minimum sync interval not met")

    async def test_hourly_cap(self) -> None:
        node = _Node("C", SyncConfig(min_sync_interval_seconds=0.0, max_syncs_per_hour=1))

        async def refuse(peer_id: str, data: bytes) -> bool:
            return False

        node.sync.set_send_frame(refuse)
        try:
            first = await node.sync.initiate_sync("P1", "chat_P1")
            second = await node.sync.initiate_sync("P2", "chat_P2")
        finally:
            node.close()

        self.assertEqual(first.error, "Sync transport unavailable")
        self.assertTrue(second.rate_limited)
        self.assertEqual(second.error, "Global rate limit exceeded")

    async def test_unanswered_sync_times_out(self) -> None:
        node = _Node("D", SyncConfig(sync_timeout_seconds=0.05))
        pipe = FramePipe("D", lambda sender, data: self.b.sync.handle_frame(sender, "chat_D", data))
        pipe.drop = True
        node.sync.set_send_frame(pipe.send)
        try:
            result = await node.sync.initiate_sync("B", "chat_B")
        finally:
            node.close()

        self.assertFalse(result.success)
        self.assertTrue(result.timed_out)
        self.assertEqual(len(pipe.frames), 1)

    async def test_reconcile_ignores_other_recipients(self) -> None:
        await self.a.queue_for("C", ["2.1.c"])
        await self.a.queue_for("B", ["2.1.b"])
        manifest_from_b = QueueSyncManifest(node_id="B", received_ids=["2.1.c", "2.1.b"])

        result = await self.a.sync.reconcile("B", manifest_from_b)

        self.assertEqual(result.removed_ids, ["2.1.b"])
        self.assertTrue(self.a.queue.contains("2.1.c"))

    async def test_malformed_frame_ignored(self) -> None:
        self.assertIsNone(await self.a.sync.handle_frame("B", "chat_B", b"\x01\x51{oops"))

    async def test_disabled_sync_does_nothing(self) -> None:
        node = _Node("E", SyncConfig(enabled=False))
        try:
            result = await node.sync.initiate_sync("B", "chat_B")
        finally:
            node.close()
        self.assertFalse(result.success)
        self.assertTrue(result.rate_limited)


if __name__ == "__main__":
    unittest.main()
