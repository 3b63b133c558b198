"""
Presence/access gate: decides whether a user may act on a conversation.

Membership lives in the database and every check reads it, so a member
added or removed is visible to the very next authorize call.
"""
import logging
from typing import Iterable, Optional

import aiosqlite

from chatrelay.bus.identity import Claims, TokenVerifier, verify_with_timeout
from chatrelay.bus.registry import Session
from chatrelay.db import crud
from chatrelay.db.models import Conversation
from chatrelay.errors import ConversationNotFound, Forbidden, Unauthorized

logger = logging.getLogger(__name__)


class AccessGate:
    def __init__(
        self,
        verifier: TokenVerifier,
        claims_cache_mode: str = "session-ttl",
        admin_role: str = "chat-admin",
        auth_timeout: float = 5.0,
    ) -> None:
        self.verifier = verifier
        self.claims_cache_mode = claims_cache_mode
        self.admin_role = admin_role
        self.auth_timeout = auth_timeout

    async def claims_for(self, session: Session) -> Claims:
        """Claims to authorize with: the handshake claims, or freshly verified ones."""
        if self.claims_cache_mode != "none":
            return session.claims
        claims = await verify_with_timeout(self.verifier, session.token, self.auth_timeout)
        if claims.subject != session.user_id:
            raise Unauthorized("Token subject changed during the session")
        return claims

    async def authorize(
        self,
        db: aiosqlite.Connection,
        claims: Claims,
        conversation_id: str,
        for_write: bool = False,
        create_missing: bool = False,
    ) -> Conversation:
        """Return the conversation if ``claims`` may use it, else raise Forbidden.

        With ``create_missing`` an unknown conversation is created with the
        caller as its only member.
        """
        conversation = await crud.conversation_get(db, conversation_id)
        if conversation is None:
            if not create_missing:
                raise ConversationNotFound(conversation_id)
            conversation, _ = await crud.conversation_create(
                db, conversation_id, created_by=claims.subject,
            )
        if claims.subject not in conversation.members:
            logger.info(f"Denied: user={claims.subject} is not a member of conversation={conversation_id}")
            raise Forbidden(
                f"User '{claims.subject}' is not a member of conversation '{conversation_id}'",
                {"conversation_id": conversation_id},
            )
        if for_write and conversation.archived:
            raise Forbidden(
                f"Conversation '{conversation_id}' is archived",
                {"conversation_id": conversation_id},
            )
        return conversation

    async def _authorize_manage(self, db: aiosqlite.Connection, claims: Claims, conversation_id: str) -> Conversation:
        conversation = await crud.conversation_get(db, conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        if claims.subject not in conversation.members and not claims.has_role(self.admin_role):
            raise Forbidden(
                f"User '{claims.subject}' may not manage conversation '{conversation_id}'",
                {"conversation_id": conversation_id},
            )
        return conversation

    async def create_conversation(
        self,
        db: aiosqlite.Connection,
        claims: Claims,
        conversation_id: Optional[str] = None,
        members: Iterable[str] = (),
        title: Optional[str] = None,
    ) -> Conversation:
        conversation, created = await crud.conversation_create(
            db, conversation_id, title=title, members=members, created_by=claims.subject,
        )
        if not created and claims.subject not in conversation.members:
            raise Forbidden(
                f"Conversation '{conversation.id}' already exists",
                {"conversation_id": conversation.id},
            )
        return conversation

    async def add_member(self, db: aiosqlite.Connection, claims: Claims, conversation_id: str, user_id: str) -> bool:
        conversation = await self._authorize_manage(db, claims, conversation_id)
        if conversation.archived:
            raise Forbidden(f"Conversation '{conversation_id}' is archived", {"conversation_id": conversation_id})
        added = await crud.member_add(db, conversation_id, user_id)
        if added:
            logger.info(f"Member added: {user_id} -> {conversation_id} by {claims.subject}")
        return added

    async def remove_member(self, db: aiosqlite.Connection, claims: Claims, conversation_id: str, user_id: str) -> bool:
        await self._authorize_manage(db, claims, conversation_id)
        removed = await crud.member_remove(db, conversation_id, user_id)
        if removed:
            logger.info(f"Member removed: {user_id} <- {conversation_id} by {claims.subject}")
        return removed

    async def archive(self, db: aiosqlite.Connection, claims: Claims, conversation_id: str) -> bool:
        await self._authorize_manage(db, claims, conversation_id)
        return await crud.conversation_archive(db, conversation_id)
