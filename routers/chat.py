import uuid

from fastapi import APIRouter, HTTPException

import chat
from db import SessionDep
from models import utcnow
from schemas import ChatMessage, ChatRequest, ChatResponse, ChatSessionCreate

router = APIRouter(tags=["chat"])


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@router.post("/", response_model=ChatResponse)
def send_message(chat_in: ChatRequest, session: SessionDep):
    if not chat_in.message.strip():
        raise HTTPException(status_code=400, detail="Message is required")

    try:
        content = chat.answer(session, chat_in.message)
    except chat.ChatUnavailable as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))

    return ChatResponse(
        message=ChatMessage(id=_new_id("msg"), content=content, timestamp=utcnow()),
        session_id=chat_in.session_id or _new_id("session"),
    )


@router.get("/items-context")
def get_items_context(session: SessionDep):
    return {"success": True, "items": chat.items_context(session)}


# Chat sessions are not persisted yet
@router.post("/sessions")
def create_chat_session(session_in: ChatSessionCreate):
    now = utcnow()
    return {
        "id": _new_id("session"),
        "userId": session_in.user_id,
        "messages": [],
        "createdAt": now,
        "updatedAt": now,
    }


@router.get("/sessions")
def list_chat_sessions():
    return []


@router.get("/sessions/{session_id}")
def get_chat_session(session_id: str):
    raise HTTPException(status_code=404, detail="Session not found")
