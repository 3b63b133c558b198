"""
CRUD operations for ChatRelay.
All functions are async and receive the aiosqlite connection from the caller.

Writes go through ``transaction()``: a single call commits on its own, and
several calls wrapped in an outer ``transaction()`` commit or roll back together.
"""
import json
import uuid
import logging
import sqlite3
from datetime import datetime, timezone, timedelta
from typing import Any, Iterable, Optional

import aiosqlite

from chatrelay.db.database import transaction
from chatrelay.db.models import Conversation, Message, DeliveryRecord, Event
from chatrelay.errors import ConversationNotFound, PersistenceFailed

logger = logging.getLogger(__name__)


def _iso(dt: Optional[datetime] = None) -> str:
    dt = dt or datetime.now(timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now() -> str:
    return _iso()


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


async def _write(db: aiosqlite.Connection, sql: str, params: tuple = ()) -> int:
    """Run one write statement in its own transaction and return the affected row count."""
    async with transaction(db):
        async with db.execute(sql, params) as cur:
            return cur.rowcount


# ─────────────────────────────────────────────
# Conversations and membership
# ─────────────────────────────────────────────

async def conversation_create(
    db: aiosqlite.Connection,
    conversation_id: Optional[str] = None,
    title: Optional[str] = None,
    members: Iterable[str] = (),
    created_by: Optional[str] = None,
) -> tuple[Conversation, bool]:
    """Create a conversation, or return the existing one with that id.

    Returns ``(conversation, created)``. Members are only written when the
    row is new; joining an existing conversation goes through member_add.
    """
    cid = conversation_id or str(uuid.uuid4())
    if conversation_id:
        existing = await conversation_get(db, cid)
        if existing is not None:
            return existing, False

    now = _now()
    ordered = list(dict.fromkeys(m for m in ([created_by] if created_by else []) + list(members) if m))

    try:
        async with transaction(db):
            await db.execute(
                "INSERT INTO conversations (id, title, last_seq, archived, created_at, created_by) "
                "VALUES (?, ?, 0, 0, ?, ?)",
                (cid, title, now, created_by),
            )
            await db.executemany(
                "INSERT INTO conversation_members (conversation_id, user_id, joined_at) VALUES (?, ?, ?)",
                [(cid, user_id, now) for user_id in ordered],
            )
            await emit_event(db, "conversation.new", cid, {"conversation_id": cid, "title": title, "members": ordered})
    except sqlite3.IntegrityError:
        # Same id created concurrently; keep the first writer's row.
        existing = await conversation_get(db, cid)
        if existing is None:
            raise
        logger.info(f"Conversation '{cid}' already exists, returning existing row")
        return existing, False

    logger.info(f"Conversation created: {cid} members={ordered}")
    return Conversation(id=cid, title=title, last_seq=0, archived=False, created_at=_parse_dt(now),
                        created_by=created_by, members=ordered), True


async def conversation_get(db: aiosqlite.Connection, conversation_id: str) -> Optional[Conversation]:
    async with db.execute("SELECT * FROM conversations WHERE id = ?", (conversation_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_conversation(row, await members_list(db, conversation_id))


async def conversation_list_for_user(
    db: aiosqlite.Connection,
    user_id: str,
    include_archived: bool = False,
) -> list[Conversation]:
    query = (
        "SELECT c.* FROM conversations c "
        "JOIN conversation_members m ON m.conversation_id = c.id "
        "WHERE m.user_id = ?"
    )
    if not include_archived:
        query += " AND c.archived = 0"
    query += " ORDER BY c.created_at DESC"
    async with db.execute(query, (user_id,)) as cur:
        rows = await cur.fetchall()
    return [_row_to_conversation(r, await members_list(db, r["id"])) for r in rows]


async def conversation_archive(db: aiosqlite.Connection, conversation_id: str) -> bool:
    async with transaction(db):
        async with db.execute(
            "UPDATE conversations SET archived = 1 WHERE id = ? AND archived = 0", (conversation_id,)
        ) as cur:
            updated = cur.rowcount
        if updated:
            await emit_event(db, "conversation.archived", conversation_id, {"conversation_id": conversation_id})
    return updated > 0


async def conversation_next_seq(db: aiosqlite.Connection, conversation_id: str) -> int:
    """Atomically increment and return the conversation's next sequence number.

    The increment is committed on its own, so a number handed out here is
    consumed even if the message insert that follows fails.
    """
    async with transaction(db):
        # Stepped to completion in one call so no write statement is left open across awaits.
        rows = await db.execute_fetchall(
            "UPDATE conversations SET last_seq = last_seq + 1 WHERE id = ? RETURNING last_seq",
            (conversation_id,),
        )
    if not rows:
        raise ConversationNotFound(conversation_id)
    return list(rows)[0]["last_seq"]


async def conversation_latest_seq(db: aiosqlite.Connection, conversation_id: str) -> int:
    """Return the highest persisted seq in the conversation, or 0 if none."""
    async with db.execute(
        "SELECT MAX(seq) AS max_seq FROM messages WHERE conversation_id = ?", (conversation_id,)
    ) as cur:
        row = await cur.fetchone()
    return row["max_seq"] or 0


def _row_to_conversation(row: aiosqlite.Row, members: list[str]) -> Conversation:
    return Conversation(
        id=row["id"],
        title=row["title"],
        last_seq=row["last_seq"],
        archived=bool(row["archived"]),
        created_at=_parse_dt(row["created_at"]),
        created_by=row["created_by"],
        members=members,
    )


async def members_list(db: aiosqlite.Connection, conversation_id: str) -> list[str]:
    async with db.execute(
        "SELECT user_id FROM conversation_members WHERE conversation_id = ? ORDER BY joined_at, rowid",
        (conversation_id,),
    ) as cur:
        rows = await cur.fetchall()
    return [r["user_id"] for r in rows]


async def member_exists(db: aiosqlite.Connection, conversation_id: str, user_id: str) -> bool:
    async with db.execute(
        "SELECT 1 FROM conversation_members WHERE conversation_id = ? AND user_id = ?",
        (conversation_id, user_id),
    ) as cur:
        return await cur.fetchone() is not None


async def member_add(db: aiosqlite.Connection, conversation_id: str, user_id: str) -> bool:
    """Add a member. Returns False if the user already belonged to the conversation."""
    async with transaction(db):
        async with db.execute(
            "INSERT OR IGNORE INTO conversation_members (conversation_id, user_id, joined_at) VALUES (?, ?, ?)",
            (conversation_id, user_id, _now()),
        ) as cur:
            added = cur.rowcount
        if added:
            await emit_event(db, "member.added", conversation_id,
                             {"conversation_id": conversation_id, "user_id": user_id})
    return added > 0


async def member_remove(db: aiosqlite.Connection, conversation_id: str, user_id: str) -> bool:
    async with transaction(db):
        async with db.execute(
            "DELETE FROM conversation_members WHERE conversation_id = ? AND user_id = ?",
            (conversation_id, user_id),
        ) as cur:
            removed = cur.rowcount
        if removed:
            await emit_event(db, "member.removed", conversation_id,
                             {"conversation_id": conversation_id, "user_id": user_id})
    return removed > 0


async def co_members(db: aiosqlite.Connection, user_id: str) -> set[str]:
    """Users sharing at least one non-archived conversation with ``user_id``."""
    async with db.execute(
        "SELECT DISTINCT other.user_id FROM conversation_members me "
        "JOIN conversation_members other ON other.conversation_id = me.conversation_id "
        "JOIN conversations c ON c.id = me.conversation_id "
        "WHERE me.user_id = ? AND other.user_id != ? AND c.archived = 0",
        (user_id, user_id),
    ) as cur:
        rows = await cur.fetchall()
    return {r["user_id"] for r in rows}


# ─────────────────────────────────────────────
# Messages
# ─────────────────────────────────────────────

async def message_insert(
    db: aiosqlite.Connection,
    conversation_id: str,
    seq: int,
    sender: str,
    payload: Any,
) -> Message:
    """Persist an already-stamped message. Raises PersistenceFailed on any storage error.

    Called inside an outer ``transaction()`` the row is only committed with it.
    """
    mid = str(uuid.uuid4())
    now = _now()
    payload_json = json.dumps(payload, ensure_ascii=False)
    try:
        async with transaction(db):
            await db.execute(
                "INSERT INTO messages (id, conversation_id, seq, sender, payload, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (mid, conversation_id, seq, sender, payload_json, now),
            )
    except sqlite3.Error as e:
        logger.error(f"Message insert failed: conversation={conversation_id} seq={seq}: {type(e).__name__}: {e}")
        raise PersistenceFailed(
            f"Could not persist message for conversation '{conversation_id}'",
            {"conversation_id": conversation_id, "seq": seq},
        ) from e
    logger.debug(f"Message written: seq={seq} sender={sender} conversation={conversation_id}")
    return Message(id=mid, conversation_id=conversation_id, seq=seq, sender=sender,
                   payload=payload, created_at=_parse_dt(now))


async def message_get(db: aiosqlite.Connection, message_id: str) -> Optional[Message]:
    async with db.execute("SELECT * FROM messages WHERE id = ?", (message_id,)) as cur:
        row = await cur.fetchone()
    return _row_to_message(row) if row else None


async def message_list(
    db: aiosqlite.Connection,
    conversation_id: str,
    after_seq: int = 0,
    limit: int = 100,
) -> list[Message]:
    async with db.execute(
        "SELECT * FROM messages WHERE conversation_id = ? AND seq > ? ORDER BY seq ASC LIMIT ?",
        (conversation_id, after_seq, limit),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in rows]


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


async def message_search(
    db: aiosqlite.Connection,
    conversation_id: str,
    query: str,
    limit: int = 50,
) -> list[Message]:
    """Case-insensitive substring search over the stored payload JSON, newest first."""
    async with db.execute(
        "SELECT * FROM messages WHERE conversation_id = ? AND payload LIKE ? ESCAPE '\\' "
        "ORDER BY seq DESC LIMIT ?",
        (conversation_id, _like_pattern(query), limit),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in rows]


def _row_to_message(row: aiosqlite.Row) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        seq=row["seq"],
        sender=row["sender"],
        payload=json.loads(row["payload"]),
        created_at=_parse_dt(row["created_at"]),
    )


# ─────────────────────────────────────────────
# Delivery records
# ─────────────────────────────────────────────

async def delivery_create(
    db: aiosqlite.Connection,
    message: Message,
    recipients: Iterable[str],
) -> list[DeliveryRecord]:
    now = _now()
    rows = [(message.id, r, message.conversation_id, message.seq, now, now) for r in dict.fromkeys(recipients)]
    if not rows:
        return []
    async with transaction(db):
        await db.executemany(
            "INSERT OR IGNORE INTO delivery_records "
            "(message_id, recipient, conversation_id, seq, status, attempts, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, 'pending', 0, ?, ?)",
            rows,
        )
    created = _parse_dt(now)
    return [DeliveryRecord(message_id=r[0], recipient=r[1], conversation_id=r[2], seq=r[3], status="pending",
                           attempts=0, created_at=created, updated_at=created, last_attempt_at=None)
            for r in rows]


async def delivery_get(db: aiosqlite.Connection, message_id: str, recipient: str) -> Optional[DeliveryRecord]:
    async with db.execute(
        "SELECT * FROM delivery_records WHERE message_id = ? AND recipient = ?", (message_id, recipient)
    ) as cur:
        row = await cur.fetchone()
    return _row_to_delivery(row) if row else None


async def delivery_mark_delivered(
    db: aiosqlite.Connection,
    message_id: str,
    recipient: str,
    now: Optional[datetime] = None,
) -> bool:
    """pending → delivered. A delivered record only gets its push time refreshed."""
    ts = _iso(now)
    updated = await _write(
        db,
        "UPDATE delivery_records SET status = 'delivered', updated_at = ?, last_attempt_at = ? "
        "WHERE message_id = ? AND recipient = ? AND status IN ('pending', 'delivered')",
        (ts, ts, message_id, recipient),
    )
    return updated > 0


async def delivery_record_attempt(
    db: aiosqlite.Connection,
    message_id: str,
    recipient: str,
    delivered: bool,
    now: Optional[datetime] = None,
) -> bool:
    """Count one retry; a successful push also moves pending → delivered."""
    ts = _iso(now)
    updated = await _write(
        db,
        "UPDATE delivery_records SET attempts = attempts + 1, last_attempt_at = ?, updated_at = ?, "
        "status = CASE WHEN ? THEN 'delivered' ELSE status END "
        "WHERE message_id = ? AND recipient = ? AND status IN ('pending', 'delivered')",
        (ts, ts, 1 if delivered else 0, message_id, recipient),
    )
    return updated > 0


async def delivery_acknowledge(db: aiosqlite.Connection, message_id: str, recipient: str) -> bool:
    updated = await _write(
        db,
        "UPDATE delivery_records SET status = 'acknowledged', updated_at = ? "
        "WHERE message_id = ? AND recipient = ? AND status IN ('pending', 'delivered')",
        (_now(), message_id, recipient),
    )
    if updated > 0:
        return True
    record = await delivery_get(db, message_id, recipient)
    return record is not None and record.status == "acknowledged"


async def delivery_expire(
    db: aiosqlite.Connection,
    message_id: str,
    recipient: str,
    now: Optional[datetime] = None,
) -> bool:
    """Move an open record to expired. Only the first caller gets True."""
    updated = await _write(
        db,
        "UPDATE delivery_records SET status = 'expired', updated_at = ? "
        "WHERE message_id = ? AND recipient = ? AND status IN ('pending', 'delivered')",
        (_iso(now), message_id, recipient),
    )
    return updated > 0


async def delivery_due(db: aiosqlite.Connection, cutoff: datetime, limit: int = 500) -> list[DeliveryRecord]:
    """Open records whose last push (or creation) is at or before ``cutoff``, in seq order."""
    async with db.execute(
        "SELECT * FROM delivery_records "
        "WHERE status IN ('pending', 'delivered') AND COALESCE(last_attempt_at, created_at) <= ? "
        "ORDER BY conversation_id, seq LIMIT ?",
        (_iso(cutoff), limit),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_delivery(r) for r in rows]


async def delivery_list(
    db: aiosqlite.Connection,
    recipient: str,
    status: Optional[str] = None,
    limit: int = 200,
) -> list[DeliveryRecord]:
    if status:
        query = ("SELECT * FROM delivery_records WHERE recipient = ? AND status = ? "
                 "ORDER BY conversation_id, seq LIMIT ?")
        params = (recipient, status, limit)
    else:
        query = "SELECT * FROM delivery_records WHERE recipient = ? ORDER BY conversation_id, seq LIMIT ?"
        params = (recipient, limit)
    async with db.execute(query, params) as cur:
        rows = await cur.fetchall()
    return [_row_to_delivery(r) for r in rows]


async def delivery_pending_in(
    db: aiosqlite.Connection,
    conversation_id: str,
    recipient: str,
    before_seq: Optional[int] = None,
) -> list[DeliveryRecord]:
    """``recipient``'s pending records in one conversation, lowest seq first."""
    query = "SELECT * FROM delivery_records WHERE conversation_id = ? AND recipient = ? AND status = 'pending'"
    params: tuple = (conversation_id, recipient)
    if before_seq is not None:
        query += " AND seq < ?"
        params += (before_seq,)
    async with db.execute(query + " ORDER BY seq", params) as cur:
        rows = await cur.fetchall()
    return [_row_to_delivery(r) for r in rows]


async def delivery_pending_conversations(db: aiosqlite.Connection, recipient: str) -> list[str]:
    async with db.execute(
        "SELECT DISTINCT conversation_id FROM delivery_records "
        "WHERE recipient = ? AND status = 'pending' ORDER BY conversation_id",
        (recipient,),
    ) as cur:
        rows = await cur.fetchall()
    return [r["conversation_id"] for r in rows]


async def delivery_unread_counts(db: aiosqlite.Connection, recipient: str) -> dict[str, int]:
    """Unacknowledged messages per conversation (pending or delivered records)."""
    async with db.execute(
        "SELECT conversation_id, COUNT(*) AS unread FROM delivery_records "
        "WHERE recipient = ? AND status IN ('pending', 'delivered') "
        "GROUP BY conversation_id ORDER BY conversation_id",
        (recipient,),
    ) as cur:
        rows = await cur.fetchall()
    return {r["conversation_id"]: r["unread"] for r in rows}


async def delivery_purge(db: aiosqlite.Connection, cutoff: datetime) -> int:
    """Delete closed (acknowledged/expired) records last touched before ``cutoff``."""
    deleted = await _write(
        db,
        "DELETE FROM delivery_records WHERE status IN ('acknowledged', 'expired') AND updated_at < ?",
        (_iso(cutoff),),
    )
    if deleted > 0:
        logger.debug(f"Purged {deleted} closed delivery records.")
    return deleted


def _row_to_delivery(row: aiosqlite.Row) -> DeliveryRecord:
    return DeliveryRecord(
        message_id=row["message_id"],
        recipient=row["recipient"],
        conversation_id=row["conversation_id"],
        seq=row["seq"],
        status=row["status"],
        attempts=row["attempts"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        last_attempt_at=_parse_dt(row["last_attempt_at"]) if row["last_attempt_at"] else None,
    )


# ─────────────────────────────────────────────
# Event fan-out (for SSE)
# ─────────────────────────────────────────────

async def emit_event(db: aiosqlite.Connection, event_type: str, conversation_id: Optional[str], payload: dict) -> None:
    await _write(
        db,
        "INSERT INTO events (event_type, conversation_id, payload, created_at) VALUES (?, ?, ?, ?)",
        (event_type, conversation_id, json.dumps(payload), _now()),
    )


async def events_since(db: aiosqlite.Connection, after_id: int = 0, limit: int = 50) -> list[Event]:
    """Fetch events newer than `after_id` for the SSE pump to deliver."""
    async with db.execute(
        "SELECT * FROM events WHERE id > ? ORDER BY id ASC LIMIT ?",
        (after_id, limit),
    ) as cur:
        rows = await cur.fetchall()
    return [Event(
        id=row["id"],
        event_type=row["event_type"],
        conversation_id=row["conversation_id"],
        payload=row["payload"],
        created_at=_parse_dt(row["created_at"]),
    ) for row in rows]


async def events_delete_old(db: aiosqlite.Connection, max_age_seconds: int = 600) -> None:
    """Prune events older than max_age_seconds to keep the table small."""
    cutoff = _iso(datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds))
    deleted = await _write(db, "DELETE FROM events WHERE created_at < ?", (cutoff,))
    if deleted > 0:
        logger.debug(f"Pruned {deleted} old events.")
