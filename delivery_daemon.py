#!/usr/bin/env python3
"""Headless delivery tool.

Subcommands:
- queue     list messages waiting in the offline queue
- stats     queue and message store counters
- purge     drop queued messages (all, or one recipient's)
- simulate  run a session against the loopback link: send while offline,
            bring the link up, flap it, and print every event
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Optional

from chat_store import MessageStore
from config_loader import load_delivery_config_from_yaml
from crypto_layer import QueueContentCipher
from delivery_events import (
    ChatMigratedEvent,
    ConnectedEvent,
    DisconnectedEvent,
    EventChannel,
    HandshakeCompleteEvent,
    MessageStatusEvent,
    PersistenceWarningEvent,
    QueueChangedEvent,
    RetrySummaryEvent,
    StatusEvent,
    SyncCompletedEvent,
)
from delivery_session import DeliverySession
from delivery_types import QueuePersistenceFailure, short_id
from fake_link import FakeMeshRelay, LoopbackTransport, RecordingScanControl
from mesh_config import DeliveryConfig, LifecycleConfig, StorageConfig
from message_router import mark_dropped_failed
from offline_queue import OfflineQueue, SqliteQueueBackend


LOG = logging.getLogger("delivery_daemon")


def _configure_stdout_logging(verbosity: int) -> None:
    level = logging.INFO
    if verbosity >= 2:
        level = logging.DEBUG
    elif verbosity <= 0:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Message delivery queue tool")
    ap.add_argument(
        "--config",
        default="config.yaml",
        help="Path to config.yaml (default: config.yaml)",
    )
    ap.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=1,
        help="Increase logging verbosity (use -vv for DEBUG)",
    )
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("queue", help="List queued messages")
    sub.add_parser("stats", help="Show queue and store statistics")

    purge = sub.add_parser("purge", help="Drop queued messages")
    purge.add_argument("--recipient", default="", help="Only purge messages for this recipient")

    sim = sub.add_parser("simulate", help="Run a loopback session and print events")
    sim.add_argument("--peer", default="peer-sim", help="Peer id used by the loopback link")
    sim.add_argument("--messages", type=int, default=3, help="Messages to send while offline")
    sim.add_argument(
        "--in-memory",
        action="store_true",
        help="Use in-memory databases instead of the configured files",
    )
    return ap.parse_args(argv)


def _load_config(path: str, allow_missing: bool) -> DeliveryConfig:
    config_path = Path(path).expanduser().resolve()
    if allow_missing and not config_path.exists():
        LOG.info("No config at %s, using defaults", config_path)
        return DeliveryConfig(node_id="sim-node")
    return load_delivery_config_from_yaml(str(config_path))


async def _open_queue(config: DeliveryConfig) -> OfflineQueue:
    backend = SqliteQueueBackend(config.storage.queue_db_path, QueueContentCipher(config.security))
    queue = OfflineQueue(backend, config.queue)
    await queue.load()
    return queue


# ----------------------------------------------------------
# Commands
# ----------------------------------------------------------

async def _cmd_queue(config: DeliveryConfig) -> int:
    queue = await _open_queue(config)
    try:
        entries = queue.pending()
        if not entries:
            print("Offline queue is empty.")
            return 0
        for e in entries:
            ts_str = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(e.enqueued_at))
            print(f"[{ts_str}] {short_id(e.message_id, 16)} -> {e.recipient_id} "
                  f"attempts={e.attempt_count} {e.content!r}")
        print(f"{len(entries)} message(s) queued for {len(queue.recipients())} recipient(s)")
    finally:
        queue.close()
    return 0


async def _cmd_stats(config: DeliveryConfig) -> int:
    queue = await _open_queue(config)
    store = MessageStore(config.storage.db_path)
    try:
        print(json.dumps({"queue": queue.statistics(), "store": store.get_db_stats()}, indent=2, sort_keys=True))
    finally:
        queue.close()
        store.close()
    return 0


async def _cmd_purge(config: DeliveryConfig, recipient: str) -> int:
    queue = await _open_queue(config)
    store = MessageStore(config.storage.db_path)
    try:
        dropped = await queue.purge(recipient or None)
        marked = await mark_dropped_failed(store, dropped)
    finally:
        queue.close()
        store.close()
    target = f" for {recipient}" if recipient else ""
    print(f"Purged {len(dropped)} queued message(s){target}, {marked} marked failed.")
    return 0


def _print_event(ev: object) -> None:
    if isinstance(ev, StatusEvent):
        print(f"[STATUS] {ev.text}")
    elif isinstance(ev, ConnectedEvent):
        print(f"[LINK] connected {ev.peer_id or '?'}")
    elif isinstance(ev, HandshakeCompleteEvent):
        print(f"[LINK] handshake complete {ev.peer_id or '?'}")
    elif isinstance(ev, DisconnectedEvent):
        mode = "monitoring" if ev.monitoring else "rescanning"
        print(f"[LINK] disconnected {ev.peer_id or '?'} ({mode})")
    elif isinstance(ev, MessageStatusEvent):
        print(f"[MSG] {short_id(ev.message_id, 16)} {ev.status.value}")
    elif isinstance(ev, QueueChangedEvent):
        print(f"[QUEUE] {ev.pending_count} pending")
    elif isinstance(ev, RetrySummaryEvent):
        tag = "FALLBACK" if ev.fallback else "RETRY"
        print(f"[{tag}] {ev.chat_id}: {ev.outcome.summary_message}")
    elif isinstance(ev, PersistenceWarningEvent):
        print(f"[WARN] persistence {ev.operation} failed: {ev.error}")
    elif isinstance(ev, ChatMigratedEvent):
        print(f"[MIGRATE] {ev.moved} message(s) {ev.old_chat_id} -> {ev.new_chat_id}")
    elif isinstance(ev, SyncCompletedEvent):
        print(f"[SYNC] {ev.peer_id}: removed={ev.removed} remaining={ev.remaining}")
    else:
        print(f"[EVENT] {ev!r}")


async def _cmd_simulate(config: DeliveryConfig, peer_id: str, count: int, in_memory: bool) -> int:
    if in_memory:
        config = replace(config, storage=StorageConfig(db_path=":memory:", queue_db_path=":memory:"))
    config = replace(
        config,
        lifecycle=LifecycleConfig(handshake_settle_seconds=0.2, safety_net_seconds=0.5, maintenance_interval_seconds=30.0),
    )

    link = LoopbackTransport()
    mesh = FakeMeshRelay(succeed=False)
    scan = RecordingScanControl()
    events = EventChannel()
    events.subscribe(object, _print_event)

    session = DeliverySession(config, link, mesh=mesh, scan=scan, events=events)
    await session.start()
    chat_id = f"chat_{peer_id}"
    try:
        for i in range(max(0, count)):
            await session.send_message(chat_id, f"offline message {i + 1}", peer_id, disambiguator=i + 1)
        print(f"[STATUS] {session.queued_summary()}")

        link.connect(peer_id)
        await asyncio.sleep(0.1)
        link.handshake(peer_id)
        await asyncio.sleep(config.lifecycle.safety_net_seconds + 0.3)
        print(f"[STATUS] {session.queued_summary()}")

        link.disconnect()
        await session.send_message(chat_id, "sent while the link is down", peer_id, disambiguator=count + 1)
        await asyncio.sleep(0.05)
        print(f"[STATUS] {session.queued_summary()}")
        print(f"[SCAN] {scan.calls}")
    finally:
        await session.teardown()
    return 0


async def _run(args: argparse.Namespace) -> int:
    cmd = args.command
    if cmd == "simulate":
        config = _load_config(str(args.config), allow_missing=True)
        return await _cmd_simulate(config, str(args.peer), int(args.messages), bool(args.in_memory))

    config = _load_config(str(args.config), allow_missing=False)
    if cmd == "queue":
        return await _cmd_queue(config)
    if cmd == "stats":
        return await _cmd_stats(config)
    if cmd == "purge":
        return await _cmd_purge(config, str(args.recipient or "").strip())
    return 2


def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_stdout_logging(int(args.verbose))

    try:
        return asyncio.run(_run(args))
    except (OSError, KeyError, ValueError, QueuePersistenceFailure) as exc:
        LOG.error("%s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
