#!/usr/bin/env python3

import asyncio
import tempfile
import unittest
from pathlib import Path

from delivery_events import (
    EventChannel,
    MessageStatusEvent,
    PersistenceWarningEvent,
    StatusEvent,
)
from delivery_session import DeliverySession
from delivery_types import ConnectionSnapshot, Message, MessageStatus, QueuePersistenceFailure, derive_message_id
from fake_link import FakeMeshRelay, LoopbackTransport, RecordingScanControl
from mesh_config import DeliveryConfig, LifecycleConfig, QueueConfig, RetryConfig, StorageConfig, SyncConfig
from offline_queue import OfflineQueue


FAST = LifecycleConfig(handshake_settle_seconds=0.02, safety_net_seconds=0.05, maintenance_interval_seconds=30.0)


def _config(db_path: str = ":memory:", queue_db_path: str = ":memory:") -> DeliveryConfig:
    return DeliveryConfig(
        node_id="me",
        storage=StorageConfig(db_path=db_path, queue_db_path=queue_db_path),
        retry=RetryConfig(inter_retry_delay_seconds=0.0, fallback_retry_delay_seconds=0.0),
        lifecycle=FAST,
        sync=SyncConfig(enabled=False),
    )


class _BrokenBackend:
    def load_entries(self):
        return []

    def load_tombstones(self):
        return {}

    def insert(self, entry):
        raise QueuePersistenceFailure("disk full")

    def delete(self, message_id, removed_at):
        raise QueuePersistenceFailure("disk full")

    def drop(self, message_id):
        raise QueuePersistenceFailure("disk full")

    def update_attempts(self, message_id, attempt_count):
        raise QueuePersistenceFailure("disk full")

    def delete_tombstones_before(self, cutoff):
        raise QueuePersistenceFailure("disk full")

    def close(self):
        pass


class DeliverySessionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.link = LoopbackTransport()
        self.mesh = FakeMeshRelay(succeed=False)
        self.scan = RecordingScanControl()
        self.session = DeliverySession(_config(), self.link, mesh=self.mesh, scan=self.scan)
        await self.session.start()

    async def asyncTearDown(self) -> None:
        await self.session.teardown()

    async def test_offline_send_is_queued_once(self) -> None:
        first = await self.session.send_message("chat_bob", "hello", "bob", disambiguator=7)
        again = await self.session.send_message("chat_bob", "hello", "bob", disambiguator=7)

        self.assertEqual(first.status, MessageStatus.QUEUED)
        self.assertEqual(again.message_id, first.message_id)
        self.assertEqual(self.session.queue.count("bob"), 1)
        self.assertEqual(len(await self.session.store.get("chat_bob")), 1)
        self.assertEqual(self.session.queued_summary(), "1 message queued for relay")

    async def test_ready_link_delivers_directly(self) -> None:
        self.link.set_snapshot(ConnectionSnapshot(connected=True, ready=True, peer_id="bob"))

        msg = await self.session.send_message("chat_bob", "hello", "bob")

        self.assertEqual(msg.status, MessageStatus.DELIVERED)
        self.assertEqual(self.link.sent_ids(), [msg.message_id])
        self.assertEqual(self.session.queue.count(), 0)

    async def test_empty_content_is_ignored(self) -> None:
        self.assertIsNone(await self.session.send_message("chat_bob", "   ", "bob"))
        self.assertEqual(await self.session.store.get("chat_bob"), [])

    async def test_reconnect_drains_queue(self) -> None:
        a = await self.session.send_message("chat_bob", "one", "bob", disambiguator=1)
        b = await self.session.send_message("chat_bob", "two", "bob", disambiguator=2)

        self.link.connect("bob")
        self.link.handshake()
        await asyncio.sleep(0.1)

        self.assertEqual(self.link.sent_ids()[:2], [a.message_id, b.message_id])
        self.assertEqual(self.session.queue.count(), 0)
        for mid in (a.message_id, b.message_id):
            self.assertEqual((await self.session.store.get_by_id(mid)).status, MessageStatus.DELIVERED)

    async def test_disconnect_with_queue_keeps_monitoring(self) -> None:
        self.link.connect("bob")
        await self.session.send_message("chat_bob", "hello", "bob")
        self.link.disconnect()
        self.assertEqual(self.scan.last, ("monitor", "bob"))

    async def test_retry_chat_delivers_failed_messages(self) -> None:
        await self.session.store.save(Message("f1", "chat_bob", "hello", 1.0, True, MessageStatus.FAILED, "bob"))
        self.link.set_snapshot(ConnectionSnapshot(connected=True, ready=True, peer_id="bob"))

        outcome = await self.session.retry_chat("chat_bob")

        self.assertTrue(outcome.succeeded)
        self.assertEqual(outcome.summary_message, "Successfully delivered 1 message")
        self.assertEqual((await self.session.store.get_by_id("f1")).status, MessageStatus.DELIVERED)

    async def test_mesh_confirmation_settles_queued_message(self) -> None:
        msg = await self.session.send_message("chat_bob", "hello", "bob")
        self.assertEqual(msg.status, MessageStatus.QUEUED)

        self.mesh.confirm(msg.message_id)
        await asyncio.sleep(0.01)

        self.assertEqual((await self.session.store.get_by_id(msg.message_id)).status, MessageStatus.DELIVERED)
        self.assertFalse(self.session.queue.contains(msg.message_id))

    async def test_receive_is_idempotent(self) -> None:
        self.assertTrue(await self.session.receive_message("chat_bob", "hi", "bob", disambiguator=3))
        self.assertFalse(await self.session.receive_message("chat_bob", "hi", "bob", disambiguator=3))
        self.assertEqual(len(await self.session.store.get("chat_bob")), 1)

    async def test_status_changes_are_published(self) -> None:
        seen = []
        self.session.events.subscribe(MessageStatusEvent, seen.append)

        await self.session.send_message("chat_bob", "hello", "bob")

        self.assertEqual([e.status for e in seen], [MessageStatus.SENDING, MessageStatus.QUEUED])

    async def test_purge_marks_messages_failed_and_resend_queues_again(self) -> None:
        msg = await self.session.send_message("chat_bob", "hello", "bob", disambiguator=5)

        self.assertEqual(await self.session.purge_queue("bob"), 1)
        self.assertFalse(self.session.queue.contains(msg.message_id))
        self.assertEqual((await self.session.store.get_by_id(msg.message_id)).status, MessageStatus.FAILED)

        again = await self.session.send_message("chat_bob", "hello", "bob", disambiguator=5)
        self.assertEqual(again.status, MessageStatus.QUEUED)
        self.assertTrue(self.session.queue.contains(msg.message_id))

    async def test_queued_row_missing_from_queue_is_routed_again(self) -> None:
        mid = derive_message_id("me", "hello", 9, "bob")
        await self.session.store.save(Message(mid, "chat_bob", "hello", 1.0, True, MessageStatus.QUEUED, "bob"))

        again = await self.session.send_message("chat_bob", "hello", "bob", disambiguator=9)

        self.assertEqual(again.status, MessageStatus.QUEUED)
        self.assertTrue(self.session.queue.contains(mid))

    async def test_anonymous_chat_moves_to_peer_once_identified(self) -> None:
        self.link.connect()
        temp_chat = self.session.current_chat_id()
        self.assertTrue(temp_chat.startswith("temp_"))

        held = await self.session.send_message(temp_chat, "hi there", None)
        self.assertEqual(held.status, MessageStatus.FAILED)
        self.assertEqual(self.session.queue.count(), 0)

        self.link.handshake("bob")
        await asyncio.sleep(0.1)

        self.assertEqual(self.session.current_chat_id(), "chat_bob")
        self.assertEqual(await self.session.store.get(temp_chat), [])
        moved = await self.session.store.get_by_id(held.message_id)
        self.assertEqual((moved.chat_id, moved.peer_id, moved.status), ("chat_bob", "bob", MessageStatus.DELIVERED))
        self.assertEqual(self.link.sent_ids(), [held.message_id])

    async def test_nothing_happens_after_teardown(self) -> None:
        await self.session.teardown()

        self.assertIsNone(await self.session.send_message("chat_bob", "late", "bob"))
        outcome = await self.session.retry_chat("chat_bob")
        self.assertFalse(outcome.succeeded)
        self.link.connect("bob")
        self.assertEqual(self.link.subscriber_count, 0)
        self.assertEqual(self.scan.calls, [])


class DeliverySessionStorageTests(unittest.IsolatedAsyncioTestCase):
    async def test_queue_survives_restart(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            config = _config(str(Path(td) / "chat.db"), str(Path(td) / "queue.db"))

            first = DeliverySession(config, LoopbackTransport())
            await first.start()
            msg = await first.send_message("chat_bob", "survive", "bob", disambiguator=1)
            await first.teardown()

            link = LoopbackTransport()
            second = DeliverySession(config, link)
            await second.start()
            try:
                self.assertTrue(second.queue.contains(msg.message_id))
                again = await second.send_message("chat_bob", "survive", "bob", disambiguator=1)
                self.assertEqual(again.status, MessageStatus.QUEUED)
                self.assertEqual(second.queue.count(), 1)

                link.connect("bob")
                link.handshake()
                await asyncio.sleep(0.1)
                self.assertEqual(link.sent_ids(), [msg.message_id])
            finally:
                await second.teardown()

    async def test_expired_message_is_queued_again_by_offline_retry(self) -> None:
        queue = OfflineQueue(config=QueueConfig(max_age_seconds=100.0))
        session = DeliverySession(_config(), LoopbackTransport(), queue=queue)
        await session.start()
        try:
            msg = await session.send_message("chat_bob", "hello", "bob")
            queue.get(msg.message_id).enqueued_at = 1.0

            await session.reactor.run_maintenance_now()
            self.assertFalse(queue.contains(msg.message_id))
            self.assertEqual((await session.store.get_by_id(msg.message_id)).status, MessageStatus.FAILED)

            await session.retry_chat("chat_bob")
            self.assertEqual((await session.store.get_by_id(msg.message_id)).status, MessageStatus.QUEUED)
            self.assertTrue(queue.contains(msg.message_id))
        finally:
            await session.teardown()

    async def test_persistence_failure_is_reported_not_fatal(self) -> None:
        events = EventChannel()
        warnings = []
        events.subscribe(PersistenceWarningEvent, warnings.append)
        queue = OfflineQueue(_BrokenBackend(), events=events)
        session = DeliverySession(_config(), LoopbackTransport(), events=events, queue=queue)
        await session.start()
        try:
            with self.assertLogs("offline_queue", level="WARNING"):
                msg = await session.send_message("chat_bob", "hello", "bob")
            self.assertEqual(msg.status, MessageStatus.QUEUED)
            self.assertTrue(queue.contains(msg.message_id))
            self.assertEqual([w.operation for w in warnings], ["enqueue"])
        finally:
            await session.teardown()

    async def test_unopenable_queue_falls_back_to_memory(self) -> None:
        statuses = []
        events = EventChannel()
        events.subscribe(StatusEvent, lambda ev: statuses.append(ev.text))
        with tempfile.TemporaryDirectory() as td:
            config = _config(queue_db_path=str(Path(td) / "missing" / "queue.db"))
            with self.assertLogs("delivery_session", level="WARNING"):
                session = DeliverySession(config, LoopbackTransport(), events=events)
            try:
                self.assertFalse(session.queue.durable)
                self.assertTrue(any("not durable" in s for s in statuses))
                await session.start()
                msg = await session.send_message("chat_bob", "hello", "bob")
                self.assertEqual(msg.status, MessageStatus.QUEUED)
            finally:
                await session.teardown()


if __name__ == "__main__":
    unittest.main()
