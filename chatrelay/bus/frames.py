"""WebSocket frame models and the push helper."""
import logging
from typing import Any, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class WsInbound(BaseModel):
    """Client → Server."""

    type: str  # message.send | ack | typing | history | search | unread | ping
    request_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


class WsOutbound(BaseModel):
    """Server → Client."""

    type: str  # message | message.sent | ack.ok | history | search.results | unread | typing | presence | delivery.expired | error | pong
    request_id: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


class SendMessage(BaseModel):
    conversation_id: str
    payload: Any


class Ack(BaseModel):
    message_id: str


class Typing(BaseModel):
    conversation_id: str
    typing: bool = True


class HistoryQuery(BaseModel):
    conversation_id: str
    after_seq: int = 0
    limit: int = Field(default=100, ge=1, le=500)


class SearchQuery(BaseModel):
    conversation_id: str
    query: str = Field(min_length=1)
    limit: int = Field(default=50, ge=1, le=200)


def frame(type_: str, data: Optional[dict[str, Any]] = None, request_id: Optional[str] = None) -> dict[str, Any]:
    return WsOutbound(type=type_, request_id=request_id, data=data or {}).model_dump(exclude_none=True)


async def push(connection: Any, message: dict[str, Any]) -> bool:
    """Send one frame. A failed send is logged and reported, never raised."""
    try:
        await connection.send_json(message)
        return True
    except Exception as e:
        # Closed sockets raise a variety of transport errors; the caller falls back to retry.
        logger.warning(f"Push failed ({message.get('type')}): {type(e).__name__}: {e}")
        return False


async def push_to_user(registry: Any, user_id: str, message: dict[str, Any]) -> bool:
    """Push to every live connection of ``user_id``. True if at least one send succeeded."""
    delivered = False
    for connection in registry.active_connections(user_id):
        if await push(connection, message):
            delivered = True
    return delivered
