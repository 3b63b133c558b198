"""
Message router: authorize, stamp, persist, then fan out.

Nothing reaches a recipient before the message is stored. Fan-out for a
conversation runs while its sequencer lock is held, so every live recipient
sees that conversation's messages in strictly increasing seq order, with
any older message still pending for that recipient pushed first.
"""
import logging
import sqlite3
from typing import Any

import aiosqlite

from chatrelay.bus.delivery import DeliveryTracker
from chatrelay.bus.frames import frame, push, push_to_user
from chatrelay.bus.gate import AccessGate
from chatrelay.bus.registry import SessionRegistry
from chatrelay.bus.sequencer import ConversationSequencer
from chatrelay.db import crud
from chatrelay.db.database import transaction
from chatrelay.db.models import Message
from chatrelay.errors import PersistenceFailed

logger = logging.getLogger(__name__)


class MessageRouter:
    def __init__(
        self,
        registry: SessionRegistry,
        gate: AccessGate,
        sequencer: ConversationSequencer,
        tracker: DeliveryTracker,
    ) -> None:
        self.registry = registry
        self.gate = gate
        self.sequencer = sequencer
        self.tracker = tracker

    async def route(
        self,
        db: aiosqlite.Connection,
        sender_session_id: str,
        conversation_id: str,
        payload: Any,
    ) -> Message:
        session = self.registry.get(sender_session_id)
        self.registry.touch(sender_session_id)
        claims = await self.gate.claims_for(session)
        await self.gate.authorize(db, claims, conversation_id, for_write=True, create_missing=True)

        async with self.sequencer.lock(conversation_id):
            members = await crud.members_list(db, conversation_id)
            recipients = [m for m in members if m != claims.subject]
            seq = await self.sequencer.next_sequence(db, conversation_id)
            message = await self._persist(db, conversation_id, seq, claims.subject, payload, recipients)

            # Stored with its records from here on: a failed push is left to the sweep.
            live = 0
            try:
                for recipient in recipients:
                    if await self.tracker.deliver_in_order(db, recipient, message):
                        live += 1
            except sqlite3.Error as e:
                logger.error(
                    f"Fan-out of seq={seq} conversation={conversation_id} interrupted, "
                    f"sweep will retry: {type(e).__name__}: {e}"
                )

            # Echo to the sender's other devices; they are not tracked.
            envelope = frame("message", message.envelope())
            for other in self.registry.sessions_for(message.sender):
                if other.id != sender_session_id:
                    await push(other.connection, envelope)

        logger.info(
            f"Routed message seq={seq} conversation={conversation_id} sender={message.sender} "
            f"recipients={len(recipients)} live={live}"
        )
        return message

    async def _persist(
        self,
        db: aiosqlite.Connection,
        conversation_id: str,
        seq: int,
        sender: str,
        payload: Any,
        recipients: list[str],
    ) -> Message:
        """Store the message, its msg.new event and one pending record per recipient, or none of them."""
        try:
            async with transaction(db):
                message = await crud.message_insert(db, conversation_id, seq, sender, payload)
                await crud.emit_event(db, "msg.new", conversation_id, {
                    "message_id": message.id, "conversation_id": conversation_id,
                    "sender": sender, "seq": seq,
                })
                await self.tracker.create_pending(db, message, recipients)
        except sqlite3.Error as e:
            logger.error(f"Persist failed, rolled back: conversation={conversation_id} seq={seq}: "
                         f"{type(e).__name__}: {e}")
            raise PersistenceFailed(
                f"Could not persist message for conversation '{conversation_id}'",
                {"conversation_id": conversation_id, "seq": seq},
            ) from e
        return message

    async def history(
        self,
        db: aiosqlite.Connection,
        session_id: str,
        conversation_id: str,
        after_seq: int = 0,
        limit: int = 100,
    ) -> list[Message]:
        session = self.registry.get(session_id)
        self.registry.touch(session_id)
        claims = await self.gate.claims_for(session)
        await self.gate.authorize(db, claims, conversation_id)
        return await crud.message_list(db, conversation_id, after_seq=after_seq, limit=limit)

    async def search(
        self,
        db: aiosqlite.Connection,
        session_id: str,
        conversation_id: str,
        query: str,
        limit: int = 50,
    ) -> list[Message]:
        session = self.registry.get(session_id)
        self.registry.touch(session_id)
        claims = await self.gate.claims_for(session)
        await self.gate.authorize(db, claims, conversation_id)
        return await crud.message_search(db, conversation_id, query, limit=limit)

    async def unread_counts(self, db: aiosqlite.Connection, session_id: str) -> dict[str, int]:
        """Unacknowledged messages per conversation for the session's user."""
        session = self.registry.get(session_id)
        self.registry.touch(session_id)
        claims = await self.gate.claims_for(session)
        return await self.tracker.unread_counts(db, claims.subject)

    async def broadcast_typing(
        self,
        db: aiosqlite.Connection,
        session_id: str,
        conversation_id: str,
        typing: bool,
    ) -> int:
        """Push a transient typing indicator to the other members. Returns users reached."""
        session = self.registry.get(session_id)
        self.registry.touch(session_id)
        claims = await self.gate.claims_for(session)
        conversation = await self.gate.authorize(db, claims, conversation_id, for_write=True)
        indicator = frame("typing", {
            "conversation_id": conversation_id, "user_id": claims.subject, "typing": typing,
        })
        reached = 0
        for member in conversation.members:
            if member != claims.subject and await push_to_user(self.registry, member, indicator):
                reached += 1
        return reached

    async def announce_presence(self, db: aiosqlite.Connection, user_id: str, status: str) -> int:
        """Tell online co-members that ``user_id`` went online/offline."""
        await crud.emit_event(db, f"user.{status}", None, {"user_id": user_id})
        notice = frame("presence", {"user_id": user_id, "status": status})
        reached = 0
        for other in await crud.co_members(db, user_id):
            if self.registry.is_online(other) and await push_to_user(self.registry, other, notice):
                reached += 1
        return reached
