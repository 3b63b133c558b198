"""
Per-conversation ordering.

Sequence numbers come from an atomic increment on the conversation row, so
two callers can never receive the same number. The per-conversation lock is
the serialization unit the router and the delivery sweep hold while they
stamp, persist and push for one conversation; conversations never share a
lock.
"""
import asyncio
import logging

import aiosqlite

from chatrelay.db import crud

logger = logging.getLogger(__name__)


class ConversationSequencer:
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        return lock

    async def next_sequence(self, db: aiosqlite.Connection, conversation_id: str) -> int:
        seq = await crud.conversation_next_seq(db, conversation_id)
        logger.debug(f"Stamped seq={seq} for conversation={conversation_id}")
        return seq

    def forget(self, conversation_id: str) -> None:
        """Release the lock object of an idle conversation (e.g. once archived)."""
        lock = self._locks.get(conversation_id)
        if lock is not None and not lock.locked():
            del self._locks[conversation_id]
