"""
Delivery acknowledgment tracking.

Every routed message gets one DeliveryRecord per recipient. Records move
forward only:

    pending ──> delivered ──> acknowledged
       │            │
       └────────────┴──> expired   (retry budget exhausted, terminal)

A periodic sweep re-pushes open records whose last attempt is older than
the retry interval and expires the ones that already used up their retries.
Redelivery always re-sends the original stored message.
"""
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from itertools import groupby
from typing import Iterable, Optional

import aiosqlite

from chatrelay.bus.frames import frame, push_to_user
from chatrelay.bus.registry import SessionRegistry
from chatrelay.bus.sequencer import ConversationSequencer
from chatrelay.db import crud
from chatrelay.db.models import DeliveryRecord, Message
from chatrelay.errors import DeliveryExpired

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    redelivered: list[tuple[str, str]] = field(default_factory=list)   # (message_id, recipient)
    retried_offline: list[tuple[str, str]] = field(default_factory=list)
    expired: list[DeliveryExpired] = field(default_factory=list)

    @property
    def scanned(self) -> int:
        return len(self.redelivered) + len(self.retried_offline) + len(self.expired)


class DeliveryTracker:
    def __init__(
        self,
        registry: SessionRegistry,
        sequencer: ConversationSequencer,
        retry_interval: float,
        max_retries: int,
        retention_hours: int = 0,
    ) -> None:
        self.registry = registry
        self.sequencer = sequencer
        self.retry_interval = retry_interval
        self.max_retries = max_retries
        self.retention_hours = retention_hours

    async def create_pending(
        self, db: aiosqlite.Connection, message: Message, recipients: Iterable[str]
    ) -> list[DeliveryRecord]:
        return await crud.delivery_create(db, message, recipients)

    async def mark_delivered(self, db: aiosqlite.Connection, message_id: str, recipient: str) -> bool:
        return await crud.delivery_mark_delivered(db, message_id, recipient)

    async def deliver_in_order(self, db: aiosqlite.Connection, recipient: str, message: Message) -> bool:
        """Push ``message`` to ``recipient`` behind any older pending messages of the same conversation.

        The caller holds the conversation lock. Returns False when the
        recipient is offline or a push fails; whatever was not pushed stays
        pending for the next flush or sweep.
        """
        if not self.registry.is_online(recipient):
            return False
        backlog = await crud.delivery_pending_in(db, message.conversation_id, recipient, before_seq=message.seq)
        for record in backlog:
            older = await crud.message_get(db, record.message_id)
            if older is None:
                logger.error(f"Delivery record points at missing message {record.message_id}")
                continue
            if not await self._push(db, recipient, older):
                return False
        return await self._push(db, recipient, message)

    async def _push(self, db: aiosqlite.Connection, recipient: str, message: Message) -> bool:
        if not await push_to_user(self.registry, recipient, frame("message", message.envelope())):
            return False
        await crud.delivery_mark_delivered(db, message.id, recipient)
        return True

    async def acknowledge(self, db: aiosqlite.Connection, message_id: str, recipient: str) -> bool:
        ok = await crud.delivery_acknowledge(db, message_id, recipient)
        if ok:
            logger.debug(f"Acknowledged: message={message_id} recipient={recipient}")
        else:
            logger.info(f"Ack ignored (no open record): message={message_id} recipient={recipient}")
        return ok

    async def records_for(
        self, db: aiosqlite.Connection, recipient: str, status: Optional[str] = None
    ) -> list[DeliveryRecord]:
        return await crud.delivery_list(db, recipient, status=status)

    async def unread_counts(self, db: aiosqlite.Connection, recipient: str) -> dict[str, int]:
        return await crud.delivery_unread_counts(db, recipient)

    async def sweep(self, db: aiosqlite.Connection, now: Optional[datetime] = None) -> SweepResult:
        """One pass over the open records that are due for a retry."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=self.retry_interval)
        due = await crud.delivery_due(db, cutoff)
        result = SweepResult()
        messages: dict[str, Message] = {}

        for conversation_id, records in groupby(due, key=lambda r: r.conversation_id):
            async with self.sequencer.lock(conversation_id):
                # Recipients whose push failed in this conversation; later seqs wait for them.
                stalled: set[str] = set()
                for snapshot in records:
                    # Another sweep or an ack may have moved the record while we waited for the lock.
                    record = await crud.delivery_get(db, snapshot.message_id, snapshot.recipient)
                    if record is None or record.status not in ("pending", "delivered"):
                        continue
                    if (record.last_attempt_at or record.created_at) > cutoff:
                        continue

                    message = messages.get(record.message_id)
                    if message is None:
                        message = await crud.message_get(db, record.message_id)
                        if message is None:
                            logger.error(f"Delivery record points at missing message {record.message_id}")
                            continue
                        messages[message.id] = message

                    if record.attempts >= self.max_retries:
                        notice = await self._expire(db, record, message, now)
                        if notice is not None:
                            result.expired.append(notice)
                        continue

                    delivered = False
                    if record.recipient not in stalled and self.registry.is_online(record.recipient):
                        delivered = await push_to_user(self.registry, record.recipient,
                                                       frame("message", message.envelope()))
                    if not delivered:
                        stalled.add(record.recipient)
                    await crud.delivery_record_attempt(db, record.message_id, record.recipient, delivered, now)
                    key = (record.message_id, record.recipient)
                    if delivered:
                        result.redelivered.append(key)
                    else:
                        result.retried_offline.append(key)

        if result.scanned:
            logger.info(
                f"Delivery sweep: redelivered={len(result.redelivered)} "
                f"offline={len(result.retried_offline)} expired={len(result.expired)}"
            )
        return result

    async def _expire(
        self, db: aiosqlite.Connection, record: DeliveryRecord, message: Message, now: datetime
    ) -> Optional[DeliveryExpired]:
        if not await crud.delivery_expire(db, record.message_id, record.recipient, now):
            # Acknowledged or expired since the snapshot was taken.
            return None
        notice = DeliveryExpired(record.message_id, record.recipient, record.conversation_id, record.attempts)
        logger.warning(str(notice))
        try:
            await crud.emit_event(db, "delivery.expired", record.conversation_id, notice.details)
        except sqlite3.Error as e:
            logger.error(f"Could not record expiry event for {record.message_id}: {type(e).__name__}: {e}")
        expired_frame = frame("delivery.expired", notice.to_dict())
        await push_to_user(self.registry, message.sender, expired_frame)
        await push_to_user(self.registry, record.recipient, expired_frame)
        return notice

    async def flush_user(self, db: aiosqlite.Connection, user_id: str) -> int:
        """Push a reconnecting user's pending records in seq order. Returns how many went out."""
        sent = 0
        for conversation_id in await crud.delivery_pending_conversations(db, user_id):
            async with self.sequencer.lock(conversation_id):
                # Re-read under the lock: a concurrent route may already have pushed some of these.
                for record in await crud.delivery_pending_in(db, conversation_id, user_id):
                    message = await crud.message_get(db, record.message_id)
                    if message is None:
                        continue
                    if not await self._push(db, user_id, message):
                        logger.info(f"Flush to {user_id} stopped after {sent} messages: push failed")
                        return sent
                    sent += 1
        if sent:
            logger.info(f"Flushed {sent} pending messages to {user_id}")
        return sent

    async def purge(self, db: aiosqlite.Connection, now: Optional[datetime] = None) -> int:
        """Drop acknowledged/expired records past the retention window."""
        if self.retention_hours <= 0:
            return 0
        now = now or datetime.now(timezone.utc)
        return await crud.delivery_purge(db, now - timedelta(hours=self.retention_hours))
