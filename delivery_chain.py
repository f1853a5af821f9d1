# delivery_chain.py

from __future__ import annotations

import logging
from typing import Optional

from chat_store import MessageStore
from delivery_types import (
    ConnectionSnapshot,
    DeliveryError,
    DeliveryResult,
    Message,
    MessageStatus,
    short_id,
)
from mesh_config import PartialConnectionPolicy, RetryConfig
from message_router import MessageRouter, settle_delivered
from transports import MeshRelayService, TransportFacade, send_direct


LOG = logging.getLogger(__name__)


class DeliveryChain:
    """
    Ordered send attempts for one message, stopping at the first success:

    1. Router (direct if the moment is right, otherwise it queues)
    2. Direct link, if the transport reports ready
    3. Mesh relay, if the recipient is known

    A success at any step settles the message as delivered and removes it
    from the queue. Without a success the message ends `failed`, unless the
    router queued it in step 1, in which case it stays `queued`.
    """

    def __init__(
            self,
            router: MessageRouter,
            store: MessageStore,
            transport: Optional[TransportFacade] = None,
            mesh: Optional[MeshRelayService] = None,
            retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self._router = router
        self._store = store
        self._transport = transport
        self._mesh = mesh
        self._config = retry_config or RetryConfig()

    def _snapshot(self) -> ConnectionSnapshot:
        if self._transport is None:
            return ConnectionSnapshot()
        try:
            return self._transport.current_snapshot()
        except Exception:
            LOG.warning("Transport snapshot unavailable", exc_info=True)
            return ConnectionSnapshot()

    async def deliver(self, message: Message, allow_partial_connection: bool = True) -> DeliveryResult:
        mid = message.message_id
        recipient = message.peer_id or ""

        if self._snapshot().partial and not allow_partial_connection:
            LOG.debug("Skipping %s, link not ready and partial sends not allowed", short_id(mid))
            await self._store.update_status(mid, MessageStatus.FAILED)
            return DeliveryResult.FAILED

        # 1. Router
        router_queued = False
        try:
            outcome = await self._router.send(message.content, recipient, mid, chat_id=message.chat_id)
            if outcome.sent_directly:
                await settle_delivered(self._store, self._router.queue, mid)
                return DeliveryResult.DELIVERED
            if outcome.queued:
                router_queued = True
                await self._store.update_status(mid, MessageStatus.QUEUED)
        except Exception:
            LOG.warning("Router step failed for %s", short_id(mid), exc_info=True)

        snapshot = self._snapshot()

        # 2. Direct link
        if self._transport is not None and snapshot.ready:
            try:
                await send_direct(self._transport, message.content, mid)
                await settle_delivered(self._store, self._router.queue, mid)
                LOG.info("Delivered %s over direct link", short_id(mid))
                return DeliveryResult.DELIVERED
            except DeliveryError as exc:
                LOG.debug("Direct step failed for %s: %s", short_id(mid), exc)
            except Exception:
                LOG.warning("Direct step failed for %s", short_id(mid), exc_info=True)

        # 3. Mesh relay
        skip_mesh = snapshot.partial and self._config.partial_connection_policy == PartialConnectionPolicy.QUEUE_ONLY
        if self._mesh is not None and recipient and not skip_mesh:
            try:
                result = await self._mesh.send_via_mesh(message.content, recipient, mid)
                if result.success:
                    await settle_delivered(self._store, self._router.queue, mid)
                    LOG.info("Delivered %s via mesh relay", short_id(mid))
                    return DeliveryResult.DELIVERED
                LOG.debug("Mesh step failed for %s: %s", short_id(mid), result.error)
            except Exception:
                LOG.warning("Mesh step failed for %s", short_id(mid), exc_info=True)

        if router_queued:
            return DeliveryResult.QUEUED

        await self._store.update_status(mid, MessageStatus.FAILED)
        return DeliveryResult.FAILED
