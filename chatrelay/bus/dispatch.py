"""
Inbound WebSocket frame dispatch.

Every handler returns exactly one reply frame for the originating socket.
Relay errors become ``error`` frames carrying the error code and the
client's ``request_id``; they never close the connection.
"""
import logging
from typing import Any

from pydantic import ValidationError

from chatrelay.bus.frames import Ack, HistoryQuery, SearchQuery, SendMessage, Typing, WsInbound, frame
from chatrelay.errors import InvalidFrame, RelayError

logger = logging.getLogger(__name__)


async def handle_message_send(relay, session_id: str, inbound: WsInbound) -> dict[str, Any]:
    body = SendMessage.model_validate(inbound.data)
    message = await relay.router.route(relay.db, session_id, body.conversation_id, body.payload)
    return frame("message.sent", {
        "message_id": message.id,
        "conversation_id": message.conversation_id,
        "sequence": message.seq,
        "timestamp": message.created_at.isoformat(),
    }, inbound.request_id)


async def handle_ack(relay, session_id: str, inbound: WsInbound) -> dict[str, Any]:
    body = Ack.model_validate(inbound.data)
    session = relay.registry.get(session_id)
    relay.registry.touch(session_id)
    ok = await relay.tracker.acknowledge(relay.db, body.message_id, session.user_id)
    return frame("ack.ok", {"message_id": body.message_id, "acknowledged": ok}, inbound.request_id)


async def handle_typing(relay, session_id: str, inbound: WsInbound) -> dict[str, Any]:
    body = Typing.model_validate(inbound.data)
    reached = await relay.router.broadcast_typing(relay.db, session_id, body.conversation_id, body.typing)
    return frame("typing.ok", {"conversation_id": body.conversation_id, "reached": reached}, inbound.request_id)


async def handle_history(relay, session_id: str, inbound: WsInbound) -> dict[str, Any]:
    body = HistoryQuery.model_validate(inbound.data)
    messages = await relay.router.history(
        relay.db, session_id, body.conversation_id, after_seq=body.after_seq, limit=body.limit,
    )
    return frame("history", {
        "conversation_id": body.conversation_id,
        "messages": [m.envelope() for m in messages],
    }, inbound.request_id)


async def handle_search(relay, session_id: str, inbound: WsInbound) -> dict[str, Any]:
    body = SearchQuery.model_validate(inbound.data)
    messages = await relay.router.search(relay.db, session_id, body.conversation_id, body.query, limit=body.limit)
    return frame("search.results", {
        "conversation_id": body.conversation_id,
        "query": body.query,
        "messages": [m.envelope() for m in messages],
    }, inbound.request_id)


async def handle_unread(relay, session_id: str, inbound: WsInbound) -> dict[str, Any]:
    counts = await relay.router.unread_counts(relay.db, session_id)
    return frame("unread", {"counts": counts, "total": sum(counts.values())}, inbound.request_id)


async def handle_ping(relay, session_id: str, inbound: WsInbound) -> dict[str, Any]:
    relay.registry.get(session_id)
    relay.registry.touch(session_id)
    return frame("pong", request_id=inbound.request_id)


FRAMES_DISPATCH = {
    "message.send": handle_message_send,
    "ack": handle_ack,
    "typing": handle_typing,
    "history": handle_history,
    "search": handle_search,
    "unread": handle_unread,
    "ping": handle_ping,
}


async def dispatch_frame(relay, session_id: str, raw: Any) -> dict[str, Any]:
    try:
        inbound = WsInbound.model_validate(raw)
    except ValidationError as e:
        return frame("error", InvalidFrame(f"Malformed frame: {e.error_count()} error(s)").to_dict())

    handler = FRAMES_DISPATCH.get(inbound.type)
    if handler is None:
        return frame("error", InvalidFrame(f"Unknown frame type '{inbound.type}'").to_dict(), inbound.request_id)

    try:
        return await handler(relay, session_id, inbound)
    except ValidationError as e:
        fields = [".".join(str(part) for part in err["loc"]) for err in e.errors()]
        err = InvalidFrame(f"Invalid '{inbound.type}' data", {"fields": fields})
        return frame("error", err.to_dict(), inbound.request_id)
    except RelayError as e:
        logger.info(f"[{inbound.type}] rejected for session {session_id[:8]}: {e.code}: {e.message}")
        return frame("error", e.to_dict(), inbound.request_id)
