"""
Shared fixtures for the relay tests.

Every test gets its own in-memory database and a Relay wired to a static
token map, so nothing needs a running server.
"""
import aiosqlite
import pytest
import pytest_asyncio

from chatrelay.bus.identity import Claims, StaticTokenVerifier
from chatrelay.bus.relay import Relay
from chatrelay.db.database import init_schema

TOKENS = {
    "tok-alice": {"subject": "alice", "roles": ["user"]},
    "tok-bob": {"subject": "bob", "roles": ["user"]},
    "tok-carol": {"subject": "carol", "roles": ["user"]},
    "tok-root": {"subject": "root", "roles": ["chat-admin"]},
}

RETRY_INTERVAL = 30
MAX_RETRIES = 3


class FakeConnection:
    """Stands in for a WebSocket: records every frame pushed to it."""

    def __init__(self, name: str = "conn", fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.sent: list[dict] = []
        self.closed_with = None

    async def send_json(self, data: dict) -> None:
        if self.fail or self.closed_with is not None:
            raise RuntimeError(f"{self.name}: socket closed")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def of_type(self, type_: str) -> list[dict]:
        return [f["data"] for f in self.sent if f["type"] == type_]

    def sequences(self, conversation_id: str) -> list[int]:
        return [m["sequence"] for m in self.of_type("message") if m["conversation_id"] == conversation_id]


def claims(subject: str, *roles: str) -> Claims:
    return Claims(subject=subject, roles=frozenset(roles))


@pytest_asyncio.fixture
async def db():
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await init_schema(conn)
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def relay(db):
    r = Relay(
        db,
        StaticTokenVerifier(TOKENS),
        heartbeat_timeout=60,
        auth_timeout=1,
        claims_cache_mode="session-ttl",
        admin_role="chat-admin",
        retry_interval=RETRY_INTERVAL,
        max_retries=MAX_RETRIES,
        retention_hours=24,
    )
    yield r
    await r.stop()


@pytest.fixture
def make_conn():
    return FakeConnection
