"""
Relay: wires the bus components to one database connection.

Owns the handshake (verify token, register session, announce presence,
flush pending deliveries), disconnect handling, and the background sweeps.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import aiosqlite

from chatrelay.bus.delivery import DeliveryTracker
from chatrelay.bus.dispatch import dispatch_frame
from chatrelay.bus.gate import AccessGate
from chatrelay.bus.identity import Claims, TokenVerifier, verify_with_timeout
from chatrelay.bus.registry import Session, SessionRegistry
from chatrelay.bus.router import MessageRouter
from chatrelay.bus.sequencer import ConversationSequencer
from chatrelay.config import (
    ADMIN_ROLE,
    AUTH_TIMEOUT,
    CLAIMS_CACHE_MODE,
    DELIVERY_MAX_RETRIES,
    DELIVERY_RETENTION_HOURS,
    DELIVERY_RETRY_INTERVAL,
    DELIVERY_SWEEP_INTERVAL,
    EVENT_MAX_AGE,
    SESSION_HEARTBEAT_TIMEOUT,
    SESSION_SWEEP_INTERVAL,
)
from chatrelay.db import crud

logger = logging.getLogger(__name__)


class Relay:
    def __init__(
        self,
        db: aiosqlite.Connection,
        verifier: TokenVerifier,
        heartbeat_timeout: float = SESSION_HEARTBEAT_TIMEOUT,
        auth_timeout: float = AUTH_TIMEOUT,
        claims_cache_mode: str = CLAIMS_CACHE_MODE,
        admin_role: str = ADMIN_ROLE,
        retry_interval: float = DELIVERY_RETRY_INTERVAL,
        max_retries: int = DELIVERY_MAX_RETRIES,
        retention_hours: int = DELIVERY_RETENTION_HOURS,
    ) -> None:
        self.db = db
        self.auth_timeout = auth_timeout
        self.registry = SessionRegistry(heartbeat_timeout)
        self.sequencer = ConversationSequencer()
        self.gate = AccessGate(verifier, claims_cache_mode, admin_role, auth_timeout)
        self.tracker = DeliveryTracker(self.registry, self.sequencer, retry_interval, max_retries, retention_hours)
        self.router = MessageRouter(self.registry, self.gate, self.sequencer, self.tracker)
        self._tasks: list[asyncio.Task] = []

    async def authenticate(self, token: Optional[str]) -> Claims:
        return await verify_with_timeout(self.gate.verifier, token, self.auth_timeout)

    async def connect(self, connection: Any, token: Optional[str], claims: Optional[Claims] = None) -> Session:
        """Handshake: verify (unless already done), register, announce, then flush anything pending."""
        if claims is None:
            claims = await self.authenticate(token)
        first = not self.registry.is_online(claims.subject)
        session_id = await self.registry.register(claims, connection, token)
        try:
            if first:
                await self.router.announce_presence(self.db, claims.subject, "online")
            await self.tracker.flush_user(self.db, claims.subject)
        except BaseException:
            await self.registry.unregister(session_id)
            logger.warning(f"Handshake of {claims.subject} failed after register; session {session_id[:8]} dropped")
            raise
        return self.registry.get(session_id)

    async def disconnect(self, session_id: str) -> Optional[Session]:
        session = await self.registry.unregister(session_id)
        if session is not None and not self.registry.is_online(session.user_id):
            await self.router.announce_presence(self.db, session.user_id, "offline")
        return session

    async def handle_frame(self, session_id: str, raw: Any) -> dict[str, Any]:
        return await dispatch_frame(self, session_id, raw)

    async def sweep_sessions(self, now: Optional[datetime] = None) -> list[Session]:
        """Drop sessions that missed the heartbeat window and close their sockets."""
        dropped = []
        for stale in self.registry.stale_sessions(now):
            if await self.disconnect(stale.id) is None:
                continue
            dropped.append(stale)
            logger.info(f"Session {stale.id[:8]} of {stale.user_id} timed out")
            close = getattr(stale.connection, "close", None)
            if close is not None:
                try:
                    await close(code=1001)
                except Exception as e:
                    # Already closed by the peer.
                    logger.debug(f"Close of timed-out session {stale.id[:8]} failed: {type(e).__name__}: {e}")
        return dropped

    async def _delivery_pass(self) -> None:
        await self.tracker.sweep(self.db)
        await self.tracker.purge(self.db)

    async def _session_pass(self) -> None:
        await self.sweep_sessions()
        await crud.events_delete_old(self.db, EVENT_MAX_AGE)

    async def _periodic(self, name: str, interval: float, fn: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await fn()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"{name} sweep failed; retrying in {interval}s")

    def start(
        self,
        delivery_interval: float = DELIVERY_SWEEP_INTERVAL,
        session_interval: float = SESSION_SWEEP_INTERVAL,
    ) -> None:
        self._tasks = [
            asyncio.create_task(self._periodic("delivery", delivery_interval, self._delivery_pass)),
            asyncio.create_task(self._periodic("session", session_interval, self._session_pass)),
        ]
        logger.info(f"Sweeps started (delivery every {delivery_interval}s, sessions every {session_interval}s)")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        await self.gate.verifier.aclose()
