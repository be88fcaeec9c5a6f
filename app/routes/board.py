"""
Board API

Notes, connections and pointer/keyboard input for a day's board. Every
change queues an autosave of the day's record.
"""

from typing import Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.board import BoardError, MeasuredLayout, NoteNotFoundError
from app.services.board_input import DRAGGING, EVENT_TYPES, IDLE, InputEvent
from app.services.session import ReflectionSession, SessionRegistry, autosave, get_sessions

router = APIRouter(prefix="/api/board", tags=["board"])


class AddNoteRequest(BaseModel):
    type: str = "good"
    text: str = ""


class UpdateNoteRequest(BaseModel):
    text: str


class MoveNoteRequest(BaseModel):
    x: float
    y: float


class ResizeRequest(BaseModel):
    width: float
    height: float


class ConnectionRequest(BaseModel):
    from_id: str = Field(alias="from")
    fromPoint: str
    to: str
    toPoint: str
    label: Optional[str] = None


class InputEventRequest(BaseModel):
    type: str
    x: Optional[float] = None
    y: Optional[float] = None
    itemId: Optional[str] = None
    point: Optional[str] = None
    key: Optional[str] = None
    ctrlKey: bool = False
    metaKey: bool = False
    # Set when the key went to a text field rather than the board
    editing: bool = False


class LayoutRequest(BaseModel):
    heights: Dict[str, float] = {}
    anchors: Dict[str, Dict[str, Dict[str, float]]] = {}


def get_session(
    record_date: str,
    db: Session = Depends(get_db),
    sessions: SessionRegistry = Depends(get_sessions),
) -> ReflectionSession:
    try:
        return sessions.get(db, record_date)
    except ValueError:
        raise HTTPException(status_code=400, detail="Date must be YYYY-MM-DD")


def queue_saves(session: ReflectionSession, background_tasks: BackgroundTasks):
    """Hand pending saves to the background; nobody waits on them."""
    for delay in session.take_pending_saves():
        background_tasks.add_task(autosave, session, delay)
    if session.saving:
        background_tasks.add_task(session.wait_for_saves)


def board_error(e: BoardError) -> HTTPException:
    if isinstance(e, NoteNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


@router.get("/{record_date}")
async def get_board(session: ReflectionSession = Depends(get_session)):
    return session.to_dict()


@router.post("/{record_date}/notes")
async def add_note(
    data: AddNoteRequest,
    background_tasks: BackgroundTasks,
    session: ReflectionSession = Depends(get_session),
):
    try:
        note = session.board.add_note(data.type, data.text)
    except BoardError as e:
        raise board_error(e)
    session.request_save()
    queue_saves(session, background_tasks)
    return note.to_dict()


@router.patch("/{record_date}/notes/{note_id}")
async def update_note(
    note_id: str,
    data: UpdateNoteRequest,
    background_tasks: BackgroundTasks,
    session: ReflectionSession = Depends(get_session),
):
    try:
        note = session.board.update_note(note_id, data.text)
    except BoardError as e:
        raise board_error(e)
    session.request_save()
    queue_saves(session, background_tasks)
    return note.to_dict()


@router.delete("/{record_date}/notes/{note_id}")
async def delete_note(
    note_id: str,
    background_tasks: BackgroundTasks,
    session: ReflectionSession = Depends(get_session),
):
    """Delete a note together with every connection touching it."""
    try:
        dropped = session.delete_note(note_id)
    except BoardError as e:
        raise board_error(e)
    session.request_save()
    queue_saves(session, background_tasks)
    return {"deleted": note_id, "droppedConnections": [c.id for c in dropped]}


@router.post("/{record_date}/notes/{note_id}/move")
async def move_note(
    note_id: str,
    data: MoveNoteRequest,
    background_tasks: BackgroundTasks,
    session: ReflectionSession = Depends(get_session),
):
    try:
        note = session.board.move_note(note_id, data.x, data.y)
    except BoardError as e:
        raise board_error(e)
    session.request_save()
    queue_saves(session, background_tasks)
    return note.to_dict()


@router.post("/{record_date}/notes/{note_id}/copy")
async def copy_note(
    note_id: str,
    background_tasks: BackgroundTasks,
    session: ReflectionSession = Depends(get_session),
):
    try:
        note = session.board.copy_note(note_id)
    except BoardError as e:
        raise board_error(e)
    session.request_save()
    queue_saves(session, background_tasks)
    return note.to_dict()


@router.post("/{record_date}/resize")
async def resize_board(data: ResizeRequest, session: ReflectionSession = Depends(get_session)):
    try:
        session.board.resize(data.width, data.height)
    except BoardError as e:
        raise board_error(e)
    return {"width": session.board.width, "height": session.board.height}


@router.post("/{record_date}/connections")
async def add_connection(
    data: ConnectionRequest,
    background_tasks: BackgroundTasks,
    session: ReflectionSession = Depends(get_session),
):
    try:
        conn = session.board.add_connection(
            data.from_id, data.fromPoint, data.to, data.toPoint, data.label
        )
    except BoardError as e:
        raise board_error(e)
    session.request_save()
    queue_saves(session, background_tasks)
    return conn.to_dict()


@router.delete("/{record_date}/connections/{connection_id}")
async def delete_connection(
    connection_id: str,
    background_tasks: BackgroundTasks,
    session: ReflectionSession = Depends(get_session),
):
    if not session.board.delete_connection(connection_id):
        raise HTTPException(status_code=404, detail="Connection not found")
    session.request_save()
    queue_saves(session, background_tasks)
    return {"deleted": connection_id}


@router.post("/{record_date}/input")
async def board_input(
    data: InputEventRequest,
    background_tasks: BackgroundTasks,
    session: ReflectionSession = Depends(get_session),
):
    """Feed one pointer/keyboard event to the board's input controller."""
    if data.type not in EVENT_TYPES:
        raise HTTPException(status_code=400, detail=f"Unknown event type: {data.type}")

    event = InputEvent(
        type=data.type,
        x=data.x,
        y=data.y,
        note_id=data.itemId,
        anchor=data.point,
        key=data.key,
        ctrl=data.ctrlKey,
        meta=data.metaKey,
        editing=data.editing,
    )
    was_dragging = session.controller.mode == DRAGGING
    changed = session.controller.dispatch(event)

    # Live drag moves save once the drag ends
    if session.controller.mode == IDLE and (changed or was_dragging):
        session.request_save()
    queue_saves(session, background_tasks)

    return {
        "changed": changed,
        "input": session.controller.state(),
        "board": session.board.to_dict(),
        "routes": session.board.routes(),
    }


@router.post("/{record_date}/layout")
async def report_layout(data: LayoutRequest, session: ReflectionSession = Depends(get_session)):
    """Take rendered note measurements from the client and re-route connections."""
    session.board.layout = MeasuredLayout(heights=data.heights, anchors=data.anchors)
    return {"routes": session.board.routes()}
