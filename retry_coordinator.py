# retry_coordinator.py

"""
Per-chat retry of failed outgoing messages.

RetryCoordinator walks a chat's failed messages one at a time
(failed -> sending -> delivered/failed), never running two sweeps for the
same chat at once, and reduces the run to a single RetryOutcome.
FallbackRetrier is the degraded path used when the coordinator cannot be
built or blows up: same walk, fixed pause between attempts, count only.
ChatRetryHelper decides between the two and publishes the summary.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Awaitable, Callable, Dict, List, Optional, Set

from chat_store import MessageStore
from delivery_events import EventChannel, RetrySummaryEvent
from delivery_types import (
    ConnectionSnapshot,
    Message,
    MessageStatus,
    RetryOutcome,
    RetryStatus,
    short_id,
)
from mesh_config import RetryConfig
from scheduler import current_task_or_none


LOG = logging.getLogger(__name__)

# (message, allow_partial_connection) -> anything; the store is read back
# afterwards to learn where the message ended up.
MessageRetry = Callable[[Message, bool], Awaitable[object]]


def _plural(n: int) -> str:
    return "message" if n == 1 else "messages"


def _own_failed(messages: List[Message]) -> List[Message]:
    return [m for m in messages if m.is_from_me and m.status == MessageStatus.FAILED]


class RetryCoordinator:
    def __init__(
            self,
            store: MessageStore,
            config: Optional[RetryConfig] = None,
    ) -> None:
        self._store = store
        self._config = config or RetryConfig()
        self._in_flight: Set[str] = set()
        self._sweeps: Dict[str, asyncio.Task] = {}
        self._alive = True

    @property
    def alive(self) -> bool:
        return self._alive

    def in_flight(self, chat_id: str) -> bool:
        return chat_id in self._in_flight

    async def status_for(self, chat_id: str) -> RetryStatus:
        try:
            messages = await self._store.get(chat_id)
        except sqlite3.Error as exc:
            LOG.warning("Could not read messages for %s: %s", chat_id, exc)
            return RetryStatus(has_failed_messages=False, total_failed=0, error=str(exc))

        failed = _own_failed(messages)
        return RetryStatus(
            has_failed_messages=bool(failed),
            total_failed=len(failed),
            failed_messages=failed,
        )

    async def retry_sweep(
            self,
            chat_id: str,
            allow_partial_connection: bool,
            on_message_retry: MessageRetry,
    ) -> RetryOutcome:
        if not self._alive:
            return RetryOutcome(succeeded=False, total_succeeded=0, summary_message="Retry coordinator closed")

        if chat_id in self._in_flight:
            LOG.debug("Retry sweep for %s already running", chat_id)
            return RetryOutcome(
                succeeded=False,
                total_succeeded=0,
                summary_message="Retry already in progress for this chat",
            )

        self._in_flight.add(chat_id)
        task = asyncio.current_task()
        if task is not None:
            self._sweeps[chat_id] = task
        try:
            return await self._sweep(chat_id, allow_partial_connection, on_message_retry)
        finally:
            self._in_flight.discard(chat_id)
            self._sweeps.pop(chat_id, None)

    async def _sweep(self, chat_id: str, allow_partial: bool, on_message_retry: MessageRetry) -> RetryOutcome:
        status = await self.status_for(chat_id)
        if status.has_error:
            return RetryOutcome(
                succeeded=False,
                total_succeeded=0,
                summary_message=f"Retry coordination failed: {status.error}",
            )
        if not status.has_failed_messages:
            return RetryOutcome(succeeded=True, total_succeeded=0, summary_message="No failed messages to retry")

        LOG.info("Retrying %d failed %s in %s", status.total_failed, _plural(status.total_failed), chat_id)

        delivered = 0
        queued = 0
        attempted = 0
        delay = float(self._config.inter_retry_delay_seconds)

        for index, message in enumerate(status.failed_messages):
            if not self._alive:
                break
            if index > 0 and delay > 0:
                await asyncio.sleep(delay)
                if not self._alive:
                    break

            attempted += 1
            final = await self._retry_one(message, allow_partial, on_message_retry)
            if final == MessageStatus.DELIVERED:
                delivered += 1
            elif final == MessageStatus.QUEUED:
                queued += 1

        return self._summarise(attempted, delivered, queued, allow_partial)

    async def _retry_one(self, message: Message, allow_partial: bool, on_message_retry: MessageRetry) -> MessageStatus:
        mid = message.message_id
        await self._store.update_status(mid, MessageStatus.SENDING)
        try:
            await on_message_retry(message.with_status(MessageStatus.SENDING), allow_partial)
        except Exception:
            LOG.warning("Retry of %s raised", short_id(mid), exc_info=True)

        current = await self._store.get_by_id(mid)
        if current is None:
            return MessageStatus.FAILED
        if current.status == MessageStatus.SENDING:
            await self._store.update_status(mid, MessageStatus.FAILED)
            return MessageStatus.FAILED
        return current.status

    @staticmethod
    def _summarise(attempted: int, delivered: int, queued: int, allow_partial: bool) -> RetryOutcome:
        if delivered > 0 and delivered == attempted:
            summary = f"Successfully delivered {delivered} {_plural(delivered)}"
        elif delivered > 0:
            summary = f"Successfully delivered {delivered} of {attempted} {_plural(attempted)}"
            if queued:
                summary += f", {queued} queued for later delivery"
        elif queued > 0:
            summary = f"Queued {queued} {_plural(queued)} for delivery when a connection is available"
        else:
            summary = "All retry attempts failed - messages will retry automatically when connection improves"

        return RetryOutcome(
            succeeded=delivered > 0 or (queued > 0 and allow_partial),
            total_succeeded=delivered,
            summary_message=summary,
            total_attempted=attempted,
            total_queued=queued,
        )

    def close(self) -> None:
        self._alive = False
        current = current_task_or_none()
        for task in list(self._sweeps.values()):
            if task is not current and not task.done():
                task.cancel()
        self._sweeps.clear()


# ============================================================
# Degraded path
# ============================================================

class FallbackRetrier:
    def __init__(self, store: MessageStore, on_message_retry: MessageRetry, delay_seconds: float = 0.5) -> None:
        self._store = store
        self._on_message_retry = on_message_retry
        self._delay = max(0.0, float(delay_seconds))

    async def run(self, chat_id: str) -> RetryOutcome:
        failed = _own_failed(await self._store.get(chat_id))
        if not failed:
            return RetryOutcome(succeeded=True, total_succeeded=0, summary_message="No failed messages to retry")

        delivered = 0
        for index, message in enumerate(failed):
            if index > 0 and self._delay > 0:
                await asyncio.sleep(self._delay)

            mid = message.message_id
            try:
                await self._store.update_status(mid, MessageStatus.SENDING)
                await self._on_message_retry(message.with_status(MessageStatus.SENDING), True)
            except Exception:
                LOG.warning("Fallback retry of %s raised", short_id(mid), exc_info=True)

            current = await self._store.get_by_id(mid)
            if current is not None and current.status == MessageStatus.DELIVERED:
                delivered += 1
            elif current is not None and current.status == MessageStatus.SENDING:
                await self._store.update_status(mid, MessageStatus.FAILED)

        if delivered:
            summary = f"Fallback retry delivered {delivered} {_plural(delivered)}"
        else:
            summary = "Fallback retry failed - messages will retry automatically when connection improves"
        return RetryOutcome(
            succeeded=delivered > 0,
            total_succeeded=delivered,
            summary_message=summary,
            total_attempted=len(failed),
        )


# ============================================================
# Helper
# ============================================================

class ChatRetryHelper:
    """
    Runs a chat's retry through the coordinator, or through the fallback
    retrier when the coordinator is missing or fails.
    """

    def __init__(
            self,
            store: MessageStore,
            on_message_retry: MessageRetry,
            coordinator_factory: Callable[[], Optional[RetryCoordinator]],
            snapshot_provider: Optional[Callable[[], ConnectionSnapshot]] = None,
            events: Optional[EventChannel] = None,
            fallback_delay_seconds: float = 0.5,
    ) -> None:
        self._store = store
        self._on_message_retry = on_message_retry
        self._coordinator_factory = coordinator_factory
        self._snapshot_provider = snapshot_provider
        self._events = events
        self._fallback = FallbackRetrier(store, on_message_retry, fallback_delay_seconds)
        self._coordinator: Optional[RetryCoordinator] = None

    @property
    def coordinator(self) -> Optional[RetryCoordinator]:
        return self._coordinator

    def ensure_coordinator(self) -> Optional[RetryCoordinator]:
        if self._coordinator is not None:
            return self._coordinator
        try:
            self._coordinator = self._coordinator_factory()
        except Exception as exc:
            LOG.warning("Failed to set up retry coordinator: %s", exc)
            self._coordinator = None
        if self._coordinator is None:
            LOG.debug("Retry coordinator unavailable, fallback path will be used")
        return self._coordinator

    def _allow_partial(self) -> bool:
        if self._snapshot_provider is None:
            return True
        return self._snapshot_provider().connected

    async def retry_chat(self, chat_id: str, allow_partial_connection: Optional[bool] = None) -> RetryOutcome:
        allow_partial = self._allow_partial() if allow_partial_connection is None else allow_partial_connection
        coordinator = self.ensure_coordinator()

        if coordinator is not None:
            try:
                outcome = await coordinator.retry_sweep(chat_id, allow_partial, self._on_message_retry)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOG.error("Retry coordination error for %s, falling back: %s", chat_id, exc)
            else:
                self._publish(chat_id, outcome, fallback=False)
                return outcome

        try:
            outcome = await self._fallback.run(chat_id)
        except sqlite3.Error as exc:
            LOG.error("Fallback retry for %s could not read messages: %s", chat_id, exc)
            outcome = RetryOutcome(
                succeeded=False,
                total_succeeded=0,
                summary_message=f"Retry coordination failed: {exc}",
            )
        self._publish(chat_id, outcome, fallback=True)
        return outcome

    def _publish(self, chat_id: str, outcome: RetryOutcome, fallback: bool) -> None:
        if outcome.total_attempted == 0 and outcome.succeeded:
            return
        LOG.info("Retry %s: %s", chat_id, outcome.summary_message)
        if self._events is not None:
            self._events.publish(RetrySummaryEvent(chat_id=chat_id, outcome=outcome, fallback=fallback))

    def dispose(self) -> None:
        if self._coordinator is not None:
            self._coordinator.close()
        self._coordinator = None
