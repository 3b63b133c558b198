"""
Message router tests: authorize -> stamp -> persist -> fan-out, run against
an in-memory database with fake sockets.
"""
import asyncio
import sqlite3

import pytest

from chatrelay.db import crud
from chatrelay.errors import Forbidden, PersistenceFailed, Unauthorized
from conftest import FakeConnection


async def _setup(relay, cid="c1", members=("alice", "bob")):
    await crud.conversation_create(relay.db, cid, members=members, created_by=members[0])


@pytest.mark.asyncio
async def test_first_message_to_offline_member(relay):
    await _setup(relay)
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")

    msg = await relay.router.route(relay.db, alice.id, "c1", "hi")

    assert msg.seq == 1
    assert msg.sender == "alice"
    stored = await crud.message_list(relay.db, "c1")
    assert [(m.seq, m.payload) for m in stored] == [(1, "hi")]

    record = await crud.delivery_get(relay.db, msg.id, "bob")
    assert record.status == "pending"
    assert record.attempts == 0
    # no record for the sender
    assert await crud.delivery_get(relay.db, msg.id, "alice") is None


@pytest.mark.asyncio
async def test_online_member_receives_envelope(relay):
    await _setup(relay)
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    bob_conn = FakeConnection("bob")
    await relay.connect(bob_conn, "tok-bob")

    msg = await relay.router.route(relay.db, alice.id, "c1", {"text": "hi", "n": 1})

    [envelope] = bob_conn.of_type("message")
    assert envelope == {
        "message_id": msg.id,
        "conversation_id": "c1",
        "sequence": 1,
        "sender": "alice",
        "payload": {"text": "hi", "n": 1},
        "timestamp": msg.created_at.isoformat(),
    }
    record = await crud.delivery_get(relay.db, msg.id, "bob")
    assert record.status == "delivered"


@pytest.mark.asyncio
async def test_non_member_is_rejected_without_side_effects(relay):
    await _setup(relay)
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    bob_conn = FakeConnection("bob")
    await relay.connect(bob_conn, "tok-bob")
    carol = await relay.connect(FakeConnection("carol"), "tok-carol")
    await relay.router.route(relay.db, alice.id, "c1", "hi")

    with pytest.raises(Forbidden):
        await relay.router.route(relay.db, carol.id, "c1", "let me in")

    conv = await crud.conversation_get(relay.db, "c1")
    assert conv.last_seq == 1
    assert len(await crud.message_list(relay.db, "c1")) == 1
    assert len(bob_conn.of_type("message")) == 1


@pytest.mark.asyncio
async def test_unknown_session_is_unauthorized(relay):
    await _setup(relay)
    with pytest.raises(Unauthorized):
        await relay.router.route(relay.db, "no-such-session", "c1", "hi")


@pytest.mark.asyncio
async def test_persistence_failure_fans_out_nothing(relay):
    await _setup(relay)
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    bob_conn = FakeConnection("bob")
    await relay.connect(bob_conn, "tok-bob")

    # Occupy seq 1 so the router's insert collides with the unique index.
    await relay.db.execute(
        "INSERT INTO messages (id, conversation_id, seq, sender, payload, created_at) "
        "VALUES ('stray', 'c1', 1, 'nobody', 'null', '2026-01-01T00:00:00.000000+00:00')"
    )
    await relay.db.commit()

    with pytest.raises(PersistenceFailed) as exc:
        await relay.router.route(relay.db, alice.id, "c1", "lost")
    assert exc.value.details == {"conversation_id": "c1", "seq": 1}

    assert bob_conn.of_type("message") == []
    assert await crud.delivery_list(relay.db, "bob") == []

    # The failed number is skipped, never reused.
    msg = await relay.router.route(relay.db, alice.id, "c1", "next")
    assert msg.seq == 2
    assert bob_conn.sequences("c1") == [2]


@pytest.mark.asyncio
async def test_concurrent_senders_are_seen_in_order(relay):
    await _setup(relay, members=("alice", "bob", "carol"))
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    bob = await relay.connect(FakeConnection("bob"), "tok-bob")
    carol_conn = FakeConnection("carol")
    await relay.connect(carol_conn, "tok-carol")

    sends = []
    for i in range(20):
        sends.append(relay.router.route(relay.db, alice.id, "c1", f"a{i}"))
        sends.append(relay.router.route(relay.db, bob.id, "c1", f"b{i}"))
    routed = await asyncio.gather(*sends)

    assert sorted(m.seq for m in routed) == list(range(1, 41))
    assert carol_conn.sequences("c1") == list(range(1, 41))
    bob_seen = relay.registry.get(bob.id).connection.sequences("c1")
    assert bob_seen == sorted(bob_seen)
    assert len(bob_seen) == 20
    stored = await crud.message_list(relay.db, "c1", limit=100)
    assert [m.seq for m in stored] == list(range(1, 41))


@pytest.mark.asyncio
async def test_failed_push_leaves_record_pending(relay):
    await _setup(relay)
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    await relay.connect(FakeConnection("bob", fail=True), "tok-bob")

    msg = await relay.router.route(relay.db, alice.id, "c1", "hi")

    record = await crud.delivery_get(relay.db, msg.id, "bob")
    assert record.status == "pending"


@pytest.mark.asyncio
async def test_every_device_of_recipient_gets_the_message(relay):
    await _setup(relay)
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    phone, laptop = FakeConnection("phone"), FakeConnection("laptop")
    await relay.connect(phone, "tok-bob")
    await relay.connect(laptop, "tok-bob")

    await relay.router.route(relay.db, alice.id, "c1", "hi")

    assert phone.sequences("c1") == [1]
    assert laptop.sequences("c1") == [1]


@pytest.mark.asyncio
async def test_sender_other_devices_get_an_echo(relay):
    await _setup(relay)
    desk_conn, phone_conn = FakeConnection("desk"), FakeConnection("phone")
    desk = await relay.connect(desk_conn, "tok-alice")
    await relay.connect(phone_conn, "tok-alice")

    msg = await relay.router.route(relay.db, desk.id, "c1", "hi")

    assert desk_conn.of_type("message") == []
    assert phone_conn.sequences("c1") == [1]
    assert await crud.delivery_get(relay.db, msg.id, "alice") is None


@pytest.mark.asyncio
async def test_unknown_conversation_is_created_for_sender(relay):
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")

    msg = await relay.router.route(relay.db, alice.id, "fresh", "hello?")

    assert msg.seq == 1
    conv = await crud.conversation_get(relay.db, "fresh")
    assert conv.members == ["alice"]


@pytest.mark.asyncio
async def test_archived_conversation_rejects_sends(relay):
    await _setup(relay)
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    await crud.conversation_archive(relay.db, "c1")

    with pytest.raises(Forbidden):
        await relay.router.route(relay.db, alice.id, "c1", "hi")


@pytest.mark.asyncio
async def test_history_pages_by_seq(relay):
    await _setup(relay)
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    carol = await relay.connect(FakeConnection("carol"), "tok-carol")
    for text in ("one", "two", "three"):
        await relay.router.route(relay.db, alice.id, "c1", text)

    page = await relay.router.history(relay.db, alice.id, "c1", after_seq=1, limit=10)
    assert [(m.seq, m.payload) for m in page] == [(2, "two"), (3, "three")]

    page = await relay.router.history(relay.db, alice.id, "c1", limit=1)
    assert [m.seq for m in page] == [1]

    with pytest.raises(Forbidden):
        await relay.router.history(relay.db, carol.id, "c1")


@pytest.mark.asyncio
async def test_typing_reaches_online_members_only(relay):
    await _setup(relay, members=("alice", "bob", "carol"))
    alice_conn = FakeConnection("alice")
    alice = await relay.connect(alice_conn, "tok-alice")
    bob_conn = FakeConnection("bob")
    await relay.connect(bob_conn, "tok-bob")

    reached = await relay.router.broadcast_typing(relay.db, alice.id, "c1", True)

    assert reached == 1
    assert bob_conn.of_type("typing") == [{"conversation_id": "c1", "user_id": "alice", "typing": True}]
    assert alice_conn.of_type("typing") == []


@pytest.mark.asyncio
async def test_presence_is_announced_to_co_members(relay):
    await _setup(relay)
    alice_conn = FakeConnection("alice")
    await relay.connect(alice_conn, "tok-alice")

    bob = await relay.connect(FakeConnection("bob"), "tok-bob")
    second = await relay.connect(FakeConnection("bob-2"), "tok-bob")
    await relay.disconnect(bob.id)
    await relay.disconnect(second.id)

    assert alice_conn.of_type("presence") == [
        {"user_id": "bob", "status": "online"},
        {"user_id": "bob", "status": "offline"},
    ]


async def _events(db, event_type):
    async with db.execute("SELECT * FROM events WHERE event_type = ?", (event_type,)) as cur:
        return await cur.fetchall()


@pytest.mark.asyncio
async def test_failed_delivery_records_roll_back_the_message(relay, monkeypatch):
    await _setup(relay)
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    bob_conn = FakeConnection("bob")
    await relay.connect(bob_conn, "tok-bob")

    async def create_pending(db, message, recipients):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(relay.tracker, "create_pending", create_pending)
    with pytest.raises(PersistenceFailed) as exc:
        await relay.router.route(relay.db, alice.id, "c1", "half written")
    assert exc.value.details == {"conversation_id": "c1", "seq": 1}

    # No message without records: the insert and the event went with them.
    assert await crud.message_list(relay.db, "c1") == []
    assert await _events(relay.db, "msg.new") == []
    assert bob_conn.of_type("message") == []

    monkeypatch.undo()
    msg = await relay.router.route(relay.db, alice.id, "c1", "whole")
    assert msg.seq == 2
    assert (await crud.delivery_get(relay.db, msg.id, "bob")).status == "delivered"


@pytest.mark.asyncio
async def test_failed_event_write_rolls_back_the_message(relay, monkeypatch):
    await _setup(relay)
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    emit_event = crud.emit_event

    async def flaky_emit_event(db, event_type, conversation_id, payload):
        if event_type == "msg.new":
            raise sqlite3.OperationalError("database is locked")
        await emit_event(db, event_type, conversation_id, payload)

    monkeypatch.setattr(crud, "emit_event", flaky_emit_event)
    with pytest.raises(PersistenceFailed):
        await relay.router.route(relay.db, alice.id, "c1", "lost")

    assert await crud.message_list(relay.db, "c1") == []
    assert await crud.delivery_list(relay.db, "bob") == []


@pytest.mark.asyncio
async def test_storage_error_during_fan_out_is_left_to_the_sweep(relay, monkeypatch):
    await _setup(relay)
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    bob_conn = FakeConnection("bob")
    await relay.connect(bob_conn, "tok-bob")

    async def mark_delivered(db, message_id, recipient, now=None):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(crud, "delivery_mark_delivered", mark_delivered)
    msg = await relay.router.route(relay.db, alice.id, "c1", "hi")

    # Stored and sent; the record simply stays open for a retry.
    assert msg.seq == 1
    assert bob_conn.sequences("c1") == [1]
    assert (await crud.delivery_get(relay.db, msg.id, "bob")).status == "pending"


@pytest.mark.asyncio
@pytest.mark.parametrize("reconnect_first", [True, False])
async def test_reconnect_racing_a_send_keeps_seq_order(relay, reconnect_first):
    await _setup(relay)
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    await relay.router.route(relay.db, alice.id, "c1", "one")

    bob_conn = FakeConnection("bob")
    reconnect = relay.connect(bob_conn, "tok-bob")
    send = relay.router.route(relay.db, alice.id, "c1", "two")
    if reconnect_first:
        await asyncio.gather(reconnect, send)
    else:
        await asyncio.gather(send, reconnect)

    assert bob_conn.sequences("c1") == [1, 2]
    records = await relay.tracker.records_for(relay.db, "bob")
    assert [(r.seq, r.status) for r in records] == [(1, "delivered"), (2, "delivered")]


@pytest.mark.asyncio
async def test_send_after_a_failed_push_resends_the_older_message_first(relay):
    await _setup(relay)
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    bob_conn = FakeConnection("bob")
    await relay.connect(bob_conn, "tok-bob")

    bob_conn.fail = True
    await relay.router.route(relay.db, alice.id, "c1", "one")
    bob_conn.fail = False
    await relay.router.route(relay.db, alice.id, "c1", "two")

    assert bob_conn.sequences("c1") == [1, 2]
    assert await relay.tracker.records_for(relay.db, "bob", status="pending") == []


@pytest.mark.asyncio
async def test_search_within_a_conversation(relay):
    await _setup(relay, members=("alice", "bob", "carol"))
    await _setup(relay, cid="c2")
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    for text in ("lunch at noon?", "no, 100% busy", "LUNCH tomorrow then"):
        await relay.router.route(relay.db, alice.id, "c1", {"text": text})
    await relay.router.route(relay.db, alice.id, "c2", {"text": "lunch elsewhere"})

    found = await relay.router.search(relay.db, alice.id, "c1", "lunch")
    assert [m.seq for m in found] == [3, 1]

    # LIKE wildcards in the query are matched literally.
    found = await relay.router.search(relay.db, alice.id, "c1", "100%")
    assert [m.payload["text"] for m in found] == ["no, 100% busy"]
    assert await relay.router.search(relay.db, alice.id, "c1", "_") == []

    assert len(await relay.router.search(relay.db, alice.id, "c1", "lunch", limit=1)) == 1

    outsider = await relay.connect(FakeConnection("carol"), "tok-carol")
    with pytest.raises(Forbidden):
        await relay.router.search(relay.db, outsider.id, "c2", "lunch")


@pytest.mark.asyncio
async def test_unread_counts_follow_acknowledgments(relay):
    await _setup(relay)
    await _setup(relay, cid="c2")
    alice = await relay.connect(FakeConnection("alice"), "tok-alice")
    first = await relay.router.route(relay.db, alice.id, "c1", "one")
    await relay.router.route(relay.db, alice.id, "c1", "two")
    await relay.router.route(relay.db, alice.id, "c2", "three")

    bob = await relay.connect(FakeConnection("bob"), "tok-bob")
    # Delivered but not acknowledged still counts as unread.
    assert await relay.router.unread_counts(relay.db, bob.id) == {"c1": 2, "c2": 1}

    await relay.tracker.acknowledge(relay.db, first.id, "bob")
    assert await relay.router.unread_counts(relay.db, bob.id) == {"c1": 1, "c2": 1}
    assert await relay.router.unread_counts(relay.db, alice.id) == {}
