"""
Reflection Flow & Coaching Chat API

Step changes for a day's session (select a topic, go back, open history),
the per-day coaching chat, and a stateless coach endpoint for clients
that keep their own transcript.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel

from app.routes.board import board_error, get_session, queue_saves
from app.services.board import BoardError
from app.services.coach import ask_coach, get_coach_client
from app.services.session import FlowError, ReflectionSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


class SelectTopicRequest(BaseModel):
    itemId: str


class SendMessageRequest(BaseModel):
    text: str


class CoachRequest(BaseModel):
    message: str
    selectedTopic: Optional[str] = None
    messageCount: int = 0


def _flow_state(session: ReflectionSession) -> dict:
    return {
        "step": session.step,
        "selectedItem": session.selected_item,
        "chatMessages": list(session.chat.messages) if session.chat else [],
    }


# -----------------------------
# Flow
# -----------------------------

@router.post("/api/sessions/{record_date}/select")
async def go_to_select(session: ReflectionSession = Depends(get_session)):
    """Leave the board for topic selection; needs at least one written note."""
    try:
        session.go_to_select()
    except FlowError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "step": session.step,
        "items": [note.to_dict() for note in session.board.filled_notes()],
    }


@router.post("/api/sessions/{record_date}/topic")
async def select_topic(
    data: SelectTopicRequest,
    background_tasks: BackgroundTasks,
    session: ReflectionSession = Depends(get_session),
):
    """Pick the note to discuss; the chat opens with a question about it."""
    try:
        session.select_topic(data.itemId)
    except FlowError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BoardError as e:
        raise board_error(e)
    queue_saves(session, background_tasks)
    return _flow_state(session)


@router.post("/api/sessions/{record_date}/back")
async def go_back(session: ReflectionSession = Depends(get_session)):
    session.back()
    return _flow_state(session)


@router.post("/api/sessions/{record_date}/history")
async def open_history(session: ReflectionSession = Depends(get_session)):
    session.open_history()
    return _flow_state(session)


# -----------------------------
# Chat
# -----------------------------

@router.get("/api/chat/{record_date}")
async def get_chat(session: ReflectionSession = Depends(get_session)):
    chat = session.chat
    return {
        "topic": chat.topic if chat else None,
        "chatMessages": list(chat.messages) if chat else [],
        "isResponding": chat.is_responding if chat else False,
        "status": chat.status if chat else None,
    }


@router.post("/api/chat/{record_date}/messages")
async def send_message(
    record_date: str,
    data: SendMessageRequest,
    background_tasks: BackgroundTasks,
    session: ReflectionSession = Depends(get_session),
):
    """
    Send a chat message and wait for the coach's question.

    Blank messages and sends while a reply is outstanding are dropped
    (accepted: false) rather than queued.
    """
    # A stale reply still lands in this chat if the user navigated away meanwhile
    chat = session.chat
    try:
        reply = await session.send_message(data.text)
    except FlowError as e:
        raise HTTPException(status_code=400, detail=str(e))
    queue_saves(session, background_tasks)

    if reply is None:
        return {"accepted": False, "chatMessages": list(chat.messages)}

    last = chat.last_reply
    if last.fallback:
        logger.info("Fallback question for %s (%s)", record_date, last.reason)
    return {
        "accepted": True,
        "message": reply,
        "fallback": last.fallback,
        "reason": last.reason,
        "chatMessages": list(chat.messages),
    }


@router.post("/api/chat")
async def coach(data: CoachRequest):
    """Stateless: one coaching question for a message, topic and turn count."""
    reply = await ask_coach(
        data.selectedTopic or "",
        [{"sender": "user", "text": data.message}],
        data.messageCount,
        get_coach_client(),
    )
    response = {"message": reply.text}
    if reply.fallback:
        response["fallback"] = True
        response["error"] = reply.reason
    return response
