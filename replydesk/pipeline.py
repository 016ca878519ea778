"""
Inbound reply pipeline.

Inbound batches from the session are queued and drained by a single worker,
one batch at a time, entries in delivery order. Each entry becomes one
conversation turn:

    upsert contact -> save inbound -> decide reply -> dispatch -> save outbound

The outbound record is written only after a successful dispatch, so every
stored reply follows the inbound message that triggered it.
"""

import asyncio
import contextlib
import logging
from typing import Optional

from replydesk.errors import NotConnectedError, PersistenceError, TransportError
from replydesk.metrics import record_dispatch, record_inbound, record_reply
from replydesk.reply_policy import ReplyPolicy
from replydesk.schemas import Direction, MessageRecord
from replydesk.session import SessionManager
from replydesk.storage import StorageAdapter
from replydesk.transport import InboundMessage

logger = logging.getLogger(__name__)


class ReplyPipeline:
    def __init__(
        self,
        storage: StorageAdapter,
        policy: ReplyPolicy,
        session: SessionManager,
        queue_size: int = 100,
    ):
        self.storage = storage
        self.policy = policy
        self.session = session
        self._queue: asyncio.Queue[list[InboundMessage]] = asyncio.Queue(maxsize=queue_size)
        self._worker: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self.run(), name="reply-pipeline")

    async def stop(self) -> None:
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None

    def submit(self, batch: list[InboundMessage]) -> None:
        """Queue an inbound batch. Drops the batch when the queue is full."""
        try:
            self._queue.put_nowait(list(batch))
        except asyncio.QueueFull:
            logger.error(f"Inbound queue full, dropping batch of {len(batch)} message(s)")
            for _ in batch:
                record_inbound("dropped")

    async def join(self) -> None:
        """Wait until every queued batch has been processed."""
        await self._queue.join()

    async def run(self) -> None:
        while True:
            batch = await self._queue.get()
            try:
                await self.handle_batch(batch)
            except Exception:
                logger.exception("Unhandled error while processing inbound batch")
            finally:
                self._queue.task_done()

    # -------------------------------------------------------------------------
    # Inbound turns
    # -------------------------------------------------------------------------

    async def handle_batch(self, batch: list[InboundMessage]) -> None:
        for message in batch:
            try:
                await self.handle_message(message)
            except Exception:
                logger.exception("Unhandled error while processing inbound message", extra={"peer": message.sender})

    async def handle_message(self, message: InboundMessage) -> None:
        text = message.text or ""
        if not text:
            logger.debug("Skipping inbound message without text", extra={"peer": message.sender})
            record_inbound("skipped")
            return

        peer = message.sender
        own_address = self.session.self_address
        try:
            await asyncio.to_thread(self.storage.upsert_contact, peer, message.push_name)
            await asyncio.to_thread(
                self.storage.save_message,
                MessageRecord(
                    sender=peer,
                    recipient=own_address,
                    direction=Direction.IN,
                    text=text,
                    meta=message.raw,
                ),
            )
        except PersistenceError as e:
            logger.error(f"Could not persist inbound message, skipping reply: {e}", extra={"peer": peer})
            record_inbound("persist_error")
            return
        record_inbound("processed")
        logger.info("Inbound message stored", extra={"peer": peer, "direction": Direction.IN.value})

        decision = await self.policy.evaluate(text)
        record_reply(decision.source)

        if not self.session.is_connected:
            logger.warning("Transport not connected, reply not sent", extra={"peer": peer})
            record_dispatch("not_connected")
            return
        try:
            await self.session.send(peer, decision.text)
        except TransportError as e:
            logger.error(f"Reply dispatch failed: {e}", extra={"peer": peer})
            record_dispatch("failed")
            return
        record_dispatch("sent")

        try:
            await asyncio.to_thread(
                self.storage.save_message,
                MessageRecord(
                    sender=self.session.self_address,
                    recipient=peer,
                    direction=Direction.OUT,
                    text=decision.text,
                    meta={"source": decision.source},
                ),
            )
        except PersistenceError as e:
            logger.error(f"Reply sent but not persisted: {e}", extra={"peer": peer})
            return
        logger.info("Reply sent", extra={"peer": peer, "direction": Direction.OUT.value, "source": decision.source})

    # -------------------------------------------------------------------------
    # Outbound (external API)
    # -------------------------------------------------------------------------

    async def send(self, peer: str, text: str) -> int:
        """
        Send an operator message and persist it.

        Raises:
            NotConnectedError: the session is not connected (nothing persisted)
            TransportError: dispatch failed (nothing persisted)
            PersistenceError: sent, but the outbound record could not be stored
        """
        try:
            await self.session.send(peer, text)
        except NotConnectedError:
            record_dispatch("not_connected")
            raise
        except TransportError:
            record_dispatch("failed")
            raise
        record_dispatch("sent")
        message_id = await asyncio.to_thread(
            self.storage.save_message,
            MessageRecord(
                sender=self.session.self_address,
                recipient=peer,
                direction=Direction.OUT,
                text=text,
                meta={"source": "api"},
            ),
        )
        logger.info("Operator message sent", extra={"peer": peer, "direction": Direction.OUT.value})
        return message_id
