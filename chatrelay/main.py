"""
ChatRelay main entry point.

Starts a FastAPI HTTP server that:
  1. Accepts authenticated WebSocket sessions at /ws (push + ack channel)
  2. Provides a small REST API for conversations, history and acknowledgments
  3. Streams the events table at /events (SSE) for operators
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from chatrelay.bus.identity import Claims, bearer_token, build_verifier
from chatrelay.bus.relay import Relay
from chatrelay.config import AUTH_TIMEOUT, HOST, PORT, RELAY_VERSION, get_config_dict, save_config_dict
from chatrelay.db import crud
from chatrelay.db.database import close_db, get_db
from chatrelay.db.models import Conversation, DeliveryRecord
from chatrelay.errors import AuthTimeout, Forbidden, RelayError, Unauthorized

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("chatrelay")

# WebSocket close codes for failed handshakes
WS_CLOSE_UNAUTHORIZED = 4401
WS_CLOSE_AUTH_TIMEOUT = 4408


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: initialize DB and the relay
    db = await get_db()
    relay = Relay(db, build_verifier(), auth_timeout=AUTH_TIMEOUT)
    relay.start()
    app.state.relay = relay
    logger.info(f"ChatRelay running at http://{HOST}:{PORT}")
    yield
    # Shutdown: stop sweeps, close DB
    await relay.stop()
    await close_db()


app = FastAPI(
    title="ChatRelay",
    description="Real-time message relay with ordered, acknowledged delivery.",
    version=RELAY_VERSION,
    lifespan=lifespan,
)


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


def get_relay(request: Request) -> Relay:
    return request.app.state.relay


async def current_user(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Claims:
    return await get_relay(request).authenticate(bearer_token(authorization))


# ─────────────────────────────────────────────
# WebSocket session
# ─────────────────────────────────────────────

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    relay: Relay = websocket.app.state.relay
    token = websocket.query_params.get("token") or bearer_token(websocket.headers.get("authorization"))

    # Verify before accepting so a bad token never gets a session.
    try:
        claims = await relay.authenticate(token)
    except AuthTimeout as e:
        logger.warning(f"WebSocket handshake timed out: {e}")
        await websocket.close(code=WS_CLOSE_AUTH_TIMEOUT, reason=e.code)
        return
    except Unauthorized as e:
        logger.info(f"WebSocket handshake rejected: {e}")
        await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason=e.code)
        return

    await websocket.accept()
    await websocket.send_json({"type": "session.ready", "data": {"user_id": claims.subject}})
    session = None
    try:
        session = await relay.connect(websocket, token, claims)
        while True:
            raw = await websocket.receive_text()
            try:
                data: Any = json.loads(raw)
            except ValueError:
                data = None
            reply = await relay.handle_frame(session.id, data)
            await websocket.send_json(reply)
    except WebSocketDisconnect:
        logger.debug(f"WebSocket closed by client: user {claims.subject}")
    finally:
        if session is not None:
            await relay.disconnect(session.id)


# ─────────────────────────────────────────────
# Public SSE broadcast of the events table
# ─────────────────────────────────────────────

@app.get("/events")
async def global_sse_stream(request: Request):
    """
    SSE stream of relay events (messages, membership, presence, expiries).
    Polls the `events` table and fans out new rows as SSE messages.
    """
    async def event_generator():
        db = await get_db()
        last_id = 0
        while True:
            if await request.is_disconnected():
                break
            events = await crud.events_since(db, after_id=last_id)
            for ev in events:
                last_id = ev.id
                data = json.dumps({"type": ev.event_type, "payload": json.loads(ev.payload)})
                yield f"id: {ev.id}\nevent: {ev.event_type}\ndata: {data}\n\n"
            await asyncio.sleep(0.5)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


# ─────────────────────────────────────────────
# REST API
# ─────────────────────────────────────────────

class ConversationCreate(BaseModel):
    id: Optional[str] = None
    title: Optional[str] = None
    members: list[str] = Field(default_factory=list)


class MemberAdd(BaseModel):
    user_id: str


class AckBody(BaseModel):
    message_id: str


class SettingsUpdate(BaseModel):
    settings: dict[str, Any]


def _conversation_dict(c: Conversation) -> dict[str, Any]:
    return {"id": c.id, "title": c.title, "members": c.members, "last_seq": c.last_seq,
            "archived": c.archived, "created_at": c.created_at.isoformat(), "created_by": c.created_by}


def _record_dict(r: DeliveryRecord) -> dict[str, Any]:
    return {"message_id": r.message_id, "recipient": r.recipient, "conversation_id": r.conversation_id,
            "sequence": r.seq, "status": r.status, "attempts": r.attempts,
            "created_at": r.created_at.isoformat(), "updated_at": r.updated_at.isoformat()}


@app.post("/api/conversations", status_code=201)
async def api_create_conversation(body: ConversationCreate, request: Request, user: Claims = Depends(current_user)):
    relay = get_relay(request)
    c = await relay.gate.create_conversation(relay.db, user, body.id, body.members, body.title)
    return _conversation_dict(c)


@app.get("/api/conversations")
async def api_conversations(request: Request, include_archived: bool = False, user: Claims = Depends(current_user)):
    relay = get_relay(request)
    conversations = await crud.conversation_list_for_user(relay.db, user.subject, include_archived=include_archived)
    return [_conversation_dict(c) for c in conversations]


@app.get("/api/conversations/{conversation_id}")
async def api_conversation(conversation_id: str, request: Request, user: Claims = Depends(current_user)):
    relay = get_relay(request)
    c = await relay.gate.authorize(relay.db, user, conversation_id)
    return _conversation_dict(c)


@app.post("/api/conversations/{conversation_id}/members")
async def api_add_member(conversation_id: str, body: MemberAdd, request: Request,
                         user: Claims = Depends(current_user)):
    relay = get_relay(request)
    added = await relay.gate.add_member(relay.db, user, conversation_id, body.user_id)
    return {"ok": True, "added": added}


@app.delete("/api/conversations/{conversation_id}/members/{user_id}")
async def api_remove_member(conversation_id: str, user_id: str, request: Request,
                            user: Claims = Depends(current_user)):
    relay = get_relay(request)
    removed = await relay.gate.remove_member(relay.db, user, conversation_id, user_id)
    return {"ok": True, "removed": removed}


@app.post("/api/conversations/{conversation_id}/archive")
async def api_archive(conversation_id: str, request: Request, user: Claims = Depends(current_user)):
    relay = get_relay(request)
    archived = await relay.gate.archive(relay.db, user, conversation_id)
    relay.sequencer.forget(conversation_id)
    return {"ok": True, "archived": archived}


@app.get("/api/conversations/{conversation_id}/messages")
async def api_messages(conversation_id: str, request: Request,
                       after_seq: int = Query(0, ge=0), limit: int = Query(100, ge=1, le=500),
                       user: Claims = Depends(current_user)):
    relay = get_relay(request)
    await relay.gate.authorize(relay.db, user, conversation_id)
    msgs = await crud.message_list(relay.db, conversation_id, after_seq=after_seq, limit=limit)
    return [m.envelope() for m in msgs]


@app.get("/api/conversations/{conversation_id}/search")
async def api_search(conversation_id: str, request: Request, q: str = Query(..., min_length=1),
                     limit: int = Query(50, ge=1, le=200), user: Claims = Depends(current_user)):
    relay = get_relay(request)
    await relay.gate.authorize(relay.db, user, conversation_id)
    msgs = await crud.message_search(relay.db, conversation_id, q, limit=limit)
    return [m.envelope() for m in msgs]


@app.get("/api/unread")
async def api_unread(request: Request, user: Claims = Depends(current_user)):
    relay = get_relay(request)
    counts = await relay.tracker.unread_counts(relay.db, user.subject)
    return {"counts": counts, "total": sum(counts.values())}


@app.post("/api/deliveries/ack")
async def api_ack(body: AckBody, request: Request, user: Claims = Depends(current_user)):
    relay = get_relay(request)
    ok = await relay.tracker.acknowledge(relay.db, body.message_id, user.subject)
    return {"ok": ok}


@app.get("/api/deliveries")
async def api_deliveries(request: Request, status: Optional[str] = None, user: Claims = Depends(current_user)):
    relay = get_relay(request)
    records = await relay.tracker.records_for(relay.db, user.subject, status=status)
    return [_record_dict(r) for r in records]


def _require_admin(request: Request, user: Claims) -> None:
    admin_role = get_relay(request).gate.admin_role
    if not user.has_role(admin_role):
        raise Forbidden(f"Role '{admin_role}' required")


@app.get("/api/settings")
async def api_get_settings(request: Request, user: Claims = Depends(current_user)):
    _require_admin(request, user)
    return get_config_dict()


@app.put("/api/settings")
async def api_update_settings(body: SettingsUpdate, request: Request, user: Claims = Depends(current_user)):
    """Persist settings to data/config.json. They take effect on the next start."""
    _require_admin(request, user)
    save_config_dict(body.settings)
    return {"ok": True, "restart_required": True}


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health(request: Request):
    relay = get_relay(request)
    return {"status": "ok", "service": "ChatRelay", "sessions": len(relay.registry)}


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("chatrelay.main:app", host=HOST, port=PORT, reload=True)
