"""
Session registry: which authenticated users are connected, and on which sockets.

A user may hold several sessions at once (one per device). The registry only
knows about connection handles; it never sends on them.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from chatrelay.bus.identity import Claims
from chatrelay.errors import Unauthorized

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    id: str
    user_id: str
    claims: Claims
    connection: Any          # anything with an async send_json(dict)
    token: Optional[str]
    connected_at: datetime
    last_seen: datetime = field(default_factory=_utcnow)


class SessionRegistry:
    def __init__(self, heartbeat_timeout: float) -> None:
        self.heartbeat_timeout = heartbeat_timeout
        self._sessions: dict[str, Session] = {}
        self._by_user: dict[str, dict[str, Session]] = {}
        self._lock = asyncio.Lock()

    async def register(self, claims: Optional[Claims], connection: Any, token: Optional[str] = None) -> str:
        """Add a session for an authenticated user and return its id."""
        if claims is None or not claims.subject:
            raise Unauthorized("Connection is not authenticated")
        now = _utcnow()
        session = Session(
            id=str(uuid.uuid4()),
            user_id=claims.subject,
            claims=claims,
            connection=connection,
            token=token,
            connected_at=now,
            last_seen=now,
        )
        async with self._lock:
            self._sessions[session.id] = session
            self._by_user.setdefault(session.user_id, {})[session.id] = session
            count = len(self._by_user[session.user_id])
        logger.info(f"Session registered: {session.id[:8]} user={session.user_id} (sessions={count})")
        return session.id

    async def unregister(self, session_id: str) -> Optional[Session]:
        """Drop a session. Unknown or already-removed ids are a no-op returning None."""
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return None
            user_sessions = self._by_user.get(session.user_id)
            if user_sessions is not None:
                user_sessions.pop(session_id, None)
                if not user_sessions:
                    del self._by_user[session.user_id]
        logger.info(f"Session unregistered: {session_id[:8]} user={session.user_id}")
        return session

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise Unauthorized("Unknown or closed session")
        return session

    def touch(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_seen = _utcnow()

    def active_connections(self, user_id: str) -> list[Any]:
        """Distinct live connection handles of ``user_id`` in registration order."""
        connections: list[Any] = []
        for session in list(self._by_user.get(user_id, {}).values()):
            if not any(c is session.connection for c in connections):
                connections.append(session.connection)
        return connections

    def sessions_for(self, user_id: str) -> list[Session]:
        return list(self._by_user.get(user_id, {}).values())

    def is_online(self, user_id: str) -> bool:
        return bool(self._by_user.get(user_id))

    def online_users(self) -> set[str]:
        return set(self._by_user)

    def stale_sessions(self, now: Optional[datetime] = None) -> list[Session]:
        """Sessions that have not been seen within the heartbeat timeout."""
        cutoff = (now or _utcnow()) - timedelta(seconds=self.heartbeat_timeout)
        return [s for s in list(self._sessions.values()) if s.last_seen < cutoff]

    def __len__(self) -> int:
        return len(self._sessions)
