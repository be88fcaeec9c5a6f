"""
Reflection Session Service

One calendar day's working state: the board, the chosen topic and the
coaching chat, moving through the steps

    input -> select -> chat
    history is reachable from anywhere

Session state in memory is authoritative for the active day. Board
changes queue a save that routes hand to FastAPI BackgroundTasks.
Transcript changes start their autosave() task right away, so a user's
message is stored while the coach is still thinking. Nobody waits on
either kind. Overlapping saves are fine since the store upserts by date
and the last write wins.
"""

import asyncio
import logging
import os
from collections import OrderedDict
from datetime import date
from typing import Callable, List, Optional, Set

import app.database as database
from app.services.board import Board, Connection, Note, NoteNotFoundError
from app.services.board_input import InputController
from app.services.coach import CoachClient, CoachingChat, get_coach_client, send_transcript_enabled
from app.services.records import get_record, parse_record_date, upsert_record

logger = logging.getLogger(__name__)

STEPS = ("input", "select", "chat", "history")

BOARD_SAVE_DELAY = 0.1

MAX_SESSIONS = int(os.getenv("MAX_SESSIONS", "31"))


class FlowError(ValueError):
    """The requested step change isn't allowed from the current state."""


class ReflectionSession:
    """Board, topic and chat for one date."""

    def __init__(
        self,
        record_date: date,
        board: Optional[Board] = None,
        coach_factory: Callable[[], Optional[CoachClient]] = get_coach_client,
    ):
        self.record_date = record_date
        self.board = board or Board()
        self.controller = InputController(self.board, delete_note=self.delete_note)
        self.step = "input"
        self.selected_item: Optional[dict] = None
        self.chat: Optional[CoachingChat] = None
        self._coach_factory = coach_factory
        self._pending_saves: List[float] = []
        self._save_tasks: Set[asyncio.Task] = set()

    # -- persistence hooks ----------------------------------------

    def request_save(self, delay: float = BOARD_SAVE_DELAY):
        self._pending_saves.append(delay)

    def take_pending_saves(self) -> List[float]:
        pending, self._pending_saves = self._pending_saves, []
        return pending

    def save_soon(self, delay: float = BOARD_SAVE_DELAY):
        """
        Start an autosave now when running inside an event loop.

        Transcript changes use this so the user's message is stored while
        the coach is still being asked. Outside a loop the save is queued
        like any other.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.request_save(delay)
            return
        task = loop.create_task(autosave(self, delay))
        self._save_tasks.add(task)
        task.add_done_callback(self._save_tasks.discard)

    @property
    def saving(self) -> bool:
        return bool(self._save_tasks)

    async def wait_for_saves(self):
        while self._save_tasks:
            await asyncio.gather(*list(self._save_tasks))

    def snapshot(self) -> dict:
        """Arguments for records.upsert_record()."""
        return {
            "record_date": self.record_date,
            "items": [note.to_dict() for note in self.board.notes],
            "selected_item": self.selected_item,
            "chat_messages": list(self.chat.messages) if self.chat else [],
            "connections": [conn.to_dict() for conn in self.board.connections],
        }

    # -- board ----------------------------------------------------

    def delete_note(self, note_id: str) -> List[Connection]:
        """Delete a note with its connections; drops the topic if it was this note."""
        dropped = self.board.delete_note(note_id)
        if self.selected_item and self.selected_item.get("id") == note_id:
            self.selected_item = None
            self.chat = None
            if self.step == "chat":
                self.step = "select"
        return dropped

    # -- flow -----------------------------------------------------

    def go_to_select(self):
        if not self.board.filled_notes():
            raise FlowError("Write at least one note before choosing a topic")
        self.controller.cancel_connection()
        self.controller.end_drag()
        self.step = "select"

    def select_topic(self, note_id: str) -> dict:
        """Pick a note to talk about and open the chat with its opening question."""
        note: Optional[Note] = self.board.get_note(note_id)
        if note is None:
            raise NoteNotFoundError(f"Note not found: {note_id}")
        if not note.is_filled:
            raise FlowError("Choose a note that has some text")

        self.selected_item = note.to_dict()
        self.chat = CoachingChat(
            note.text,
            client=self._coach_factory(),
            on_change=self.save_soon,
            send_transcript=send_transcript_enabled(),
        )
        opening = self.chat.initialize()
        self.step = "chat"
        logger.info("Topic selected for %s: note %s", self.record_date, note_id)
        return opening

    async def send_message(self, text: str) -> Optional[dict]:
        if self.chat is None:
            raise FlowError("Select a topic before chatting")
        return await self.chat.send_message(text)

    def back(self):
        """Step back; leaving the chat forgets the topic and transcript."""
        if self.step == "chat":
            self.chat = None
            self.selected_item = None
            self.step = "select"
        elif self.step in ("select", "history"):
            self.step = "input"

    def open_history(self):
        self.controller.cancel_connection()
        self.controller.end_drag()
        self.step = "history"

    def to_dict(self) -> dict:
        return {
            "date": self.record_date.isoformat(),
            "step": self.step,
            "board": self.board.to_dict(),
            "routes": self.board.routes(),
            "input": self.controller.state(),
            "selectedItem": self.selected_item,
            "chatMessages": list(self.chat.messages) if self.chat else [],
            "isResponding": self.chat.is_responding if self.chat else False,
            "status": self.chat.status if self.chat else None,
        }

    @classmethod
    def from_record(cls, record, **kwargs) -> "ReflectionSession":
        """Resume a day from its stored record."""
        board = Board.from_record(record.items, record.connections)
        session = cls(record.record_date, board=board, **kwargs)
        if record.selected_item and record.chat_messages:
            session.selected_item = record.selected_item
            session.chat = CoachingChat(
                record.selected_item.get("text") or "",
                client=session._coach_factory(),
                on_change=session.save_soon,
                messages=record.chat_messages,
                send_transcript=send_transcript_enabled(),
            )
            session.step = "chat"
        return session


class SessionRegistry:
    """
    In-memory sessions by date, created or resumed on first use.

    Holds at most max_sessions days; the least recently used idle day is
    dropped first and comes back from the store on its next request.
    """

    def __init__(self, max_sessions: int = MAX_SESSIONS):
        self.max_sessions = max_sessions
        self._sessions: "OrderedDict[date, ReflectionSession]" = OrderedDict()

    def __len__(self):
        return len(self._sessions)

    def get(self, db, record_date) -> ReflectionSession:
        day = parse_record_date(record_date)
        session = self._sessions.get(day)
        if session is not None:
            self._sessions.move_to_end(day)
            return session

        record = get_record(db, day)
        if record:
            session = ReflectionSession.from_record(record)
        else:
            session = ReflectionSession(day)
        self._sessions[day] = session
        self._evict()
        return session

    def _evict(self):
        # Oldest first; the day just asked for and days still busy with the
        # coach or a save are kept
        for day in list(self._sessions)[:-1]:
            if len(self._sessions) <= self.max_sessions:
                return
            session = self._sessions[day]
            if session.saving or (session.chat and session.chat.is_responding):
                continue
            self.discard(day)
            logger.debug("Evicted session for %s", day)

    def discard(self, record_date):
        session = self._sessions.pop(parse_record_date(record_date), None)
        if session:
            session.controller.close()

    def clear(self):
        for day in list(self._sessions):
            self.discard(day)


sessions = SessionRegistry()


def get_sessions() -> SessionRegistry:
    """Dependency for routes."""
    return sessions


async def autosave(session: ReflectionSession, delay: float = 0.0):
    """Persist the session after a short settle delay. Never raises."""
    if delay:
        await asyncio.sleep(delay)

    db = database.SessionLocal()
    try:
        upsert_record(db, **session.snapshot())
    except Exception as e:
        db.rollback()
        logger.error("Autosave failed for %s: %s", session.record_date, e)
    finally:
        db.close()
