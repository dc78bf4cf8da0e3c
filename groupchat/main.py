"""
AgentGroupChat main entry point.

Starts a FastAPI HTTP server that:
  1. Opens, lists, closes and restores group chats
  2. Accepts user messages and exposes each chat's log, participant status and controls
  3. Streams appended messages per chat over SSE at /api/chats/{id}/events
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from groupchat.adapters.base import AgentAdapter
from groupchat.adapters.tmux import TmuxAdapter
from groupchat.config import (
    DB_PATH, GROUPCHAT_VERSION, HOST, PORT, PROMPT_CONFIG_PATH, TRANSCRIPT_DIR, get_config_dict, save_config_dict,
)
from groupchat.coordinator import GroupChatCoordinator
from groupchat.db.history import HistoryStore
from groupchat.manager import ChatNotFoundError, GroupChatManager, RestoreError
from groupchat.models import MessageEvent
from groupchat.prompt_config import PromptConfig

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("groupchat")

# kind -> factory(participant spec dict) -> adapter
ADAPTER_FACTORIES: dict[str, Callable[[dict], AgentAdapter]] = {
    "tmux": TmuxAdapter.from_spec,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: open history + prompt config
    store = await HistoryStore.open(DB_PATH, TRANSCRIPT_DIR)
    prompt_config = PromptConfig.load(PROMPT_CONFIG_PATH)
    app.state.manager = GroupChatManager(store, prompt_config)
    logger.info(f"AgentGroupChat running at http://{HOST}:{PORT}")
    yield
    # Shutdown: close every open chat, then the store
    await app.state.manager.shutdown()
    await store.close()


app = FastAPI(
    title="AgentGroupChat",
    description="Turn-based group chat between CLI agents and a human user.",
    version=GROUPCHAT_VERSION,
    lifespan=lifespan,
)


def _manager(request: Request) -> GroupChatManager:
    return request.app.state.manager


@app.exception_handler(ChatNotFoundError)
async def _chat_not_found(request: Request, exc: ChatNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(RestoreError)
async def _restore_failed(request: Request, exc: RestoreError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ─────────────────────────────────────────────
# Request bodies
# ─────────────────────────────────────────────

class ParticipantSpec(BaseModel):
    kind: str = "tmux"
    name: str
    id: str | None = None
    target: str | None = None
    color: str | None = None


class ChatCreate(BaseModel):
    title: str
    participants: list[ParticipantSpec]


class ChatRestore(BaseModel):
    participants: list[ParticipantSpec]


class MessageCreate(BaseModel):
    content: str


class PromptConfigUpdate(BaseModel):
    prompt_template: str | None = None
    pass_keyword: str | None = None


class SettingsUpdate(BaseModel):
    POLL_INTERVAL: float | None = None
    IDLE_STABILITY_THRESHOLD: float | None = None
    RETRY_BASE_INTERVAL: float | None = None
    RETRY_MAX_INTERVAL: float | None = None
    MAX_AUTO_RESPONSES: int | None = None
    CAPTURE_TIMEOUT: float | None = None
    DEBUG_LOG_ENABLED: bool | None = None


def build_adapters(specs: list[ParticipantSpec]) -> list[AgentAdapter]:
    adapters = []
    for spec in specs:
        factory = ADAPTER_FACTORIES.get(spec.kind)
        if factory is None:
            raise HTTPException(status_code=400, detail=f"Unknown participant kind: {spec.kind}")
        try:
            adapters.append(factory(spec.model_dump()))
        except (KeyError, ValueError) as e:
            raise HTTPException(status_code=400, detail=f"Invalid participant '{spec.name}': {e}")
    return adapters


def _chat_dict(coordinator: GroupChatCoordinator) -> dict:
    session = coordinator.session
    return {
        "id": session.id,
        "title": session.title,
        "created_at": session.created_at.isoformat(),
        "last_activity_at": session.last_activity_at.isoformat(),
        "sequence": session.sequence,
        "is_stalled": coordinator.is_stalled,
        "is_conversation_active": coordinator.is_conversation_active,
        "participants": [
            {"id": a.participant_id, "name": a.name, "kind": a.kind, "color": a.color}
            for a in coordinator.adapters.values()
        ],
    }


# ─────────────────────────────────────────────
# Chats
# ─────────────────────────────────────────────

@app.post("/api/chats", status_code=201)
async def api_create_chat(body: ChatCreate, request: Request):
    adapters = build_adapters(body.participants)
    coordinator = await _manager(request).create_group_chat(body.title, adapters)
    return _chat_dict(coordinator)


@app.get("/api/chats")
async def api_chats(request: Request):
    return [_chat_dict(c) for c in _manager(request).active_chats()]


@app.delete("/api/chats/{chat_id}")
async def api_close_chat(chat_id: str, request: Request):
    await _manager(request).close_group_chat(chat_id)
    return {"ok": True}


@app.get("/api/chats/closed")
async def api_closed_chats(request: Request):
    summaries = await _manager(request).list_closed()
    return [{"id": s.id, "title": s.title, "participants": s.participants,
             "participant_ids": s.participant_ids, "message_count": s.message_count,
             "created_at": s.created_at.isoformat(), "updated_at": s.updated_at.isoformat()} for s in summaries]


@app.post("/api/chats/closed/{chat_id}/restore", status_code=201)
async def api_restore_chat(chat_id: str, body: ChatRestore, request: Request):
    adapters = build_adapters(body.participants)
    coordinator = await _manager(request).restore_closed(chat_id, adapters)
    return _chat_dict(coordinator)


@app.delete("/api/chats/closed/{chat_id}")
async def api_delete_closed(chat_id: str, request: Request):
    await _manager(request).delete_closed(chat_id)
    return {"ok": True}


# ─────────────────────────────────────────────
# Messages and controls
# ─────────────────────────────────────────────

@app.post("/api/chats/{chat_id}/messages", status_code=201)
async def api_post_message(chat_id: str, body: MessageCreate, request: Request):
    coordinator = _manager(request).coordinator(chat_id)
    seq = await coordinator.send_user_message(body.content)
    return {"seq": seq, **coordinator.session.messages[seq - 1].to_dict()}


@app.get("/api/chats/{chat_id}/messages")
async def api_messages(chat_id: str, request: Request, after_seq: int = 0):
    session = _manager(request).coordinator(chat_id).session
    messages = session.messages_after(after_seq)
    first = session.sequence - len(messages) + 1
    return [{"seq": first + i, **m.to_dict()} for i, m in enumerate(messages)]


@app.get("/api/chats/{chat_id}/status")
async def api_status(chat_id: str, request: Request):
    coordinator = _manager(request).coordinator(chat_id)
    return {
        **_chat_dict(coordinator),
        "statuses": [s.to_dict() for s in coordinator.statuses()],
    }


@app.post("/api/chats/{chat_id}/stop")
async def api_stop(chat_id: str, request: Request):
    _manager(request).coordinator(chat_id).stop_all()
    return {"ok": True}


@app.post("/api/chats/{chat_id}/reset")
async def api_reset(chat_id: str, request: Request):
    _manager(request).coordinator(chat_id).reset_all()
    return {"ok": True}


@app.get("/api/chats/{chat_id}/events")
async def api_chat_events(chat_id: str, request: Request, after_seq: Optional[int] = None):
    """
    SSE stream of one chat's log. Replays messages after `after_seq` (when given),
    then pushes every append as it happens.
    """
    coordinator = _manager(request).coordinator(chat_id)
    session = coordinator.session
    queue: asyncio.Queue[MessageEvent] = asyncio.Queue()
    backlog = []
    if after_seq is not None:
        messages = session.messages_after(after_seq)
        first = session.sequence - len(messages) + 1
        backlog = [MessageEvent(message=m, sequence=first + i) for i, m in enumerate(messages)]
    unsubscribe = session.subscribe(queue.put_nowait)

    async def event_generator():
        try:
            for event in backlog:
                yield _sse(event)
            while not coordinator.is_shut_down:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                yield _sse(event)
        finally:
            unsubscribe()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def _sse(event: MessageEvent) -> str:
    data = json.dumps({"seq": event.sequence, **event.message.to_dict()}, ensure_ascii=False)
    return f"id: {event.sequence}\nevent: message\ndata: {data}\n\n"


# ─────────────────────────────────────────────
# Prompt configuration
# ─────────────────────────────────────────────

@app.get("/api/prompt-config")
async def api_prompt_config(request: Request):
    return _manager(request).prompt_config.to_dict()


@app.put("/api/prompt-config")
async def api_update_prompt_config(body: PromptConfigUpdate, request: Request):
    prompt_config = _manager(request).prompt_config
    if body.prompt_template is not None:
        prompt_config.prompt_template = body.prompt_template
    if body.pass_keyword is not None:
        if not body.pass_keyword.strip():
            raise HTTPException(status_code=400, detail="pass_keyword must not be empty")
        prompt_config.pass_keyword = body.pass_keyword.strip()
    prompt_config.save(PROMPT_CONFIG_PATH)
    return prompt_config.to_dict()


@app.post("/api/prompt-config/reset")
async def api_reset_prompt_config(request: Request):
    prompt_config = _manager(request).prompt_config
    prompt_config.reset_to_defaults(PROMPT_CONFIG_PATH)
    return prompt_config.to_dict()


# ─────────────────────────────────────────────
# Server settings (persisted to data/config.json, applied on restart)
# ─────────────────────────────────────────────

@app.get("/api/settings")
async def api_get_settings():
    return get_config_dict()


@app.put("/api/settings")
async def api_update_settings(body: SettingsUpdate):
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="no settings given")
    if changes.get("MAX_AUTO_RESPONSES", 0) < 0:
        raise HTTPException(status_code=400, detail="MAX_AUTO_RESPONSES must be >= 0")
    save_config_dict(changes)
    return {"ok": True, "saved": changes, "restart_required": True}


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health(request: Request):
    return {"status": "ok", "service": "AgentGroupChat", "version": GROUPCHAT_VERSION,
            "open_chats": len(_manager(request).active_chats())}


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("groupchat.main:app", host=HOST, port=PORT, reload=True)
