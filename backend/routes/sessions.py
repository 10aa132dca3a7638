"""Story session endpoints, nested under /api/sessions/{chat_id}."""

import asyncio

from fastapi import APIRouter, HTTPException, Request

from backend.sessions import Session, SessionRegistry
from storyline.arbiter import ArbiterPayload
from storyline.errors import StoryDefinitionError
from storyline.story import load_story

from .models import ActivateBody, ChatContextBody, EvaluateBody, MessageBody, OpenSession, RoleBody, StatusBody

router = APIRouter()


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


def _session(request: Request, chat_id: str) -> Session:
    session = _registry(request).get(chat_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    return session


def _evaluation(future: "asyncio.Future[ArbiterPayload] | None") -> dict | None:
    if future is None:
        return None
    if not future.done():
        return {"status": "queued"}
    if future.cancelled():
        return {"status": "dropped"}
    payload = future.result()
    return {
        "status": "done",
        "outcome": payload.outcome,
        "next_transition_id": payload.next_transition_id,
        "reason": payload.verdict.reason if payload.verdict else None,
        "error": payload.error,
    }


@router.get("/sessions")
async def list_sessions(request: Request):
    """List chat ids with a running session."""
    return _registry(request).chat_ids()


@router.put("/sessions/{chat_id}")
async def open_session(request: Request, chat_id: str, body: OpenSession):
    """Load a story for a chat and resume its stored progress."""
    try:
        story = load_story(body.story)
    except StoryDefinitionError as e:
        raise HTTPException(422, str(e)) from e
    session = _registry(request).open(chat_id, story)
    source = session.orchestrator.handle_chat_changed(chat_id, body.group_selected, force=True)
    return {"source": source, **session.to_dict()}


@router.get("/sessions/{chat_id}")
async def get_session(request: Request, chat_id: str):
    """Current checkpoint, counters, statuses and recent events."""
    return _session(request, chat_id).to_dict()


@router.delete("/sessions/{chat_id}")
async def close_session(request: Request, chat_id: str, purge: bool = False):
    """Stop a session. With purge=true its stored progress is deleted too."""
    registry = _registry(request)
    if not registry.close(chat_id):
        raise HTTPException(404, "Session not found")
    if purge:
        registry.store.delete(chat_id)
    return {"ok": True}


@router.post("/sessions/{chat_id}/context")
async def chat_context(request: Request, chat_id: str, body: ChatContextBody):
    """Signal that the host (re)entered this chat; rehydrates from storage."""
    session = _session(request, chat_id)
    source = session.orchestrator.handle_chat_changed(chat_id, body.group_selected, force=body.force)
    return {"source": source, **session.to_dict()}


@router.post("/sessions/{chat_id}/messages")
async def post_message(request: Request, chat_id: str, body: MessageBody):
    """Record a chat message; user messages count as turns and may queue an evaluation."""
    session = _session(request, chat_id)
    orch = session.orchestrator
    orch.record_message(body.speaker, body.text, is_user=body.is_user)
    future = orch.handle_user_text(body.text) if body.is_user else None
    if body.wait:
        await orch.wait_idle()
    return {"evaluation": _evaluation(future), **session.to_dict()}


@router.post("/sessions/{chat_id}/role")
async def set_role(request: Request, chat_id: str, body: RoleBody):
    """Announce the next speaker so its author's note and preset are applied."""
    session = _session(request, chat_id)
    orch = session.orchestrator
    if body.new_generation:
        orch.new_generation()
    role = orch.set_active_role(body.name)
    await orch.wait_idle()
    return {"role": role, **session.to_dict()}


@router.post("/sessions/{chat_id}/activate")
async def activate(request: Request, chat_id: str, body: ActivateBody):
    """Jump to a checkpoint by index, by relative offset, or back to the start."""
    session = _session(request, chat_id)
    orch = session.orchestrator
    if body.reset:
        orch.reset_story()
    elif body.index is not None:
        orch.activate_index(body.index)
    elif body.delta is not None:
        orch.activate_relative(body.delta)
    else:
        raise HTTPException(400, "Provide index, delta or reset")
    await orch.wait_idle()
    return session.to_dict()


@router.post("/sessions/{chat_id}/status")
async def set_status(request: Request, chat_id: str, body: StatusBody):
    """Override one checkpoint's status."""
    session = _session(request, chat_id)
    try:
        session.orchestrator.update_checkpoint_status(body.index, body.status)
    except ValueError as e:
        raise HTTPException(400, str(e)) from e
    return session.to_dict()


@router.post("/sessions/{chat_id}/evaluate")
async def evaluate(request: Request, chat_id: str, body: EvaluateBody | None = None):
    """Ask the arbiter about the current checkpoint right now."""
    session = _session(request, chat_id)
    orch = session.orchestrator
    future = orch.evaluate_now()
    if body is None or body.wait:
        await orch.wait_idle()
    return {"evaluation": _evaluation(future), **session.to_dict()}
