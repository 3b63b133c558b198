"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.

The relay treats the database as a document store: inserts either succeed or
raise, and message queries come back ordered by sequence number.
"""
import aiosqlite
import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from contextvars import ContextVar
from pathlib import Path

from chatrelay.config import DB_PATH

logger = logging.getLogger(__name__)

# Module-level connection pool (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()

# One writer at a time per connection, so a multi-statement write is never
# committed or rolled back halfway by another coroutine.
_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()
_tx_owner: ContextVar[aiosqlite.Connection | None] = ContextVar("chatrelay_tx_owner", default=None)


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                _db = await connect(DB_PATH)
                logger.info(f"Database initialized at {DB_PATH}")
    return _db


async def connect(path: str) -> aiosqlite.Connection:
    """Open a connection with row access by name and the schema in place."""
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    # WAL mode: allows concurrent reads while writing
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await init_schema(db)
    return db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Conversation: owns the per-conversation sequence counter.
        -- Never deleted, only archived.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS conversations (
            id          TEXT PRIMARY KEY,
            title       TEXT,
            last_seq    INTEGER NOT NULL DEFAULT 0,
            archived    INTEGER NOT NULL DEFAULT 0,
            created_at  TEXT NOT NULL,
            created_by  TEXT
        );

        CREATE TABLE IF NOT EXISTS conversation_members (
            conversation_id TEXT NOT NULL REFERENCES conversations(id),
            user_id         TEXT NOT NULL,
            joined_at       TEXT NOT NULL,
            PRIMARY KEY (conversation_id, user_id)
        );

        CREATE INDEX IF NOT EXISTS idx_members_user
            ON conversation_members(user_id);

        -- ----------------------------------------------------------------
        -- Message: immutable once written.
        -- (conversation_id, seq) is unique; seq never repeats.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS messages (
            id              TEXT PRIMARY KEY,
            conversation_id TEXT NOT NULL REFERENCES conversations(id),
            seq             INTEGER NOT NULL,
            sender          TEXT NOT NULL,
            payload         TEXT NOT NULL,
            created_at      TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS idx_messages_conversation_seq
            ON messages(conversation_id, seq);

        -- ----------------------------------------------------------------
        -- Delivery records: one row per (message, recipient).
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS delivery_records (
            message_id      TEXT NOT NULL REFERENCES messages(id),
            recipient       TEXT NOT NULL,
            conversation_id TEXT NOT NULL,
            seq             INTEGER NOT NULL,
            status          TEXT NOT NULL DEFAULT 'pending'
                            CHECK (status IN ('pending', 'delivered', 'acknowledged', 'expired')),
            attempts        INTEGER NOT NULL DEFAULT 0,
            created_at      TEXT NOT NULL,
            updated_at      TEXT NOT NULL,
            last_attempt_at TEXT,
            PRIMARY KEY (message_id, recipient)
        );

        CREATE INDEX IF NOT EXISTS idx_delivery_status
            ON delivery_records(status, recipient);

        -- ----------------------------------------------------------------
        -- Events: observable fan-out table streamed by /events.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS events (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            event_type      TEXT NOT NULL,
            conversation_id TEXT,
            payload         TEXT NOT NULL,
            created_at      TEXT NOT NULL
        );
    """)
    await db.commit()
    logger.info("Schema initialized.")


@asynccontextmanager
async def transaction(db: aiosqlite.Connection):
    """Commit the writes made in the block, or roll all of them back.

    Nested use inside the same task joins the outer transaction.
    """
    if _tx_owner.get() is db:
        yield db
        return
    lock = _write_locks.get(db)
    if lock is None:
        lock = _write_locks.setdefault(db, asyncio.Lock())
    async with lock:
        token = _tx_owner.set(db)
        try:
            yield db
            await db.commit()
        except BaseException:
            await db.rollback()
            raise
        finally:
            _tx_owner.reset(token)
