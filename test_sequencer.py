"""
Unit tests for per-conversation sequence numbers.
"""
import asyncio

import pytest

from chatrelay.bus.sequencer import ConversationSequencer
from chatrelay.db import crud
from chatrelay.errors import ConversationNotFound


@pytest.mark.asyncio
async def test_sequence_starts_at_one_and_increments(db):
    await crud.conversation_create(db, "c1", created_by="alice")
    seqr = ConversationSequencer()

    got = [await seqr.next_sequence(db, "c1") for _ in range(5)]

    assert got == [1, 2, 3, 4, 5]
    assert await crud.conversation_latest_seq(db, "c1") == 5


@pytest.mark.asyncio
async def test_concurrent_callers_never_share_a_number(db):
    await crud.conversation_create(db, "c1", created_by="alice")
    seqr = ConversationSequencer()

    got = await asyncio.gather(*[seqr.next_sequence(db, "c1") for _ in range(40)])

    assert len(set(got)) == 40
    assert sorted(got) == list(range(1, 41))


@pytest.mark.asyncio
async def test_conversations_are_numbered_independently(db):
    await crud.conversation_create(db, "c1", created_by="alice")
    await crud.conversation_create(db, "c2", created_by="alice")
    seqr = ConversationSequencer()

    assert await seqr.next_sequence(db, "c1") == 1
    assert await seqr.next_sequence(db, "c1") == 2
    assert await seqr.next_sequence(db, "c2") == 1


@pytest.mark.asyncio
async def test_unknown_conversation(db):
    with pytest.raises(ConversationNotFound):
        await ConversationSequencer().next_sequence(db, "ghost")


def test_lock_is_per_conversation():
    seqr = ConversationSequencer()
    assert seqr.lock("c1") is seqr.lock("c1")
    assert seqr.lock("c1") is not seqr.lock("c2")


@pytest.mark.asyncio
async def test_forget_keeps_a_held_lock():
    seqr = ConversationSequencer()
    held = seqr.lock("c1")
    async with held:
        seqr.forget("c1")
        assert seqr.lock("c1") is held
    seqr.forget("c1")
    assert seqr.lock("c1") is not held
