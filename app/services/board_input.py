"""
Board Input Controller

Turns pointer and keyboard events from the board client into board
operations. Input is single-focus: the controller is either idle,
dragging one note, or authoring one connection.

Handlers that only make sense inside a mode (pointer tracking while
dragging, pointer preview and Escape while connecting) are subscribed on
the InputSurface when the mode is entered and unsubscribed when it ends.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from app.services.board import (
    ANCHORS,
    GRAB_OFFSET_X,
    GRAB_OFFSET_Y,
    Board,
    Connection,
    Note,
    Point,
)

logger = logging.getLogger(__name__)

IDLE = "idle"
DRAGGING = "dragging"
CONNECTING = "connecting"

EVENT_TYPES = (
    "pointer_down",
    "pointer_move",
    "pointer_up",
    "pointer_leave",
    "anchor_down",
    "anchor_up",
    "key_down",
)

DELETE_KEYS = ("Delete", "Backspace")


@dataclass
class InputEvent:
    type: str
    x: Optional[float] = None
    y: Optional[float] = None
    note_id: Optional[str] = None
    anchor: Optional[str] = None
    key: Optional[str] = None
    ctrl: bool = False
    meta: bool = False
    editing: bool = False

    @property
    def point(self) -> Optional[Point]:
        if self.x is None or self.y is None:
            return None
        return Point(self.x, self.y)

    @property
    def modifier(self) -> bool:
        return self.ctrl or self.meta


class InputSurface:
    """Event hub for one board. subscribe() returns the matching unsubscribe."""

    def __init__(self):
        self._handlers: Dict[str, List[Callable[[InputEvent], None]]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Callable[[InputEvent], None]) -> Callable[[], None]:
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        self._handlers[event_type].append(handler)

        def unsubscribe():
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def dispatch(self, event: InputEvent) -> int:
        """Deliver an event; returns how many handlers saw it."""
        # Handlers may unsubscribe themselves while running
        handlers = list(self._handlers.get(event.type, []))
        for handler in handlers:
            handler(event)
        return len(handlers)

    def handler_count(self, event_type: Optional[str] = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(h) for h in self._handlers.values())


class InputController:
    """Drag, connect and shortcut handling for a single board."""

    def __init__(
        self,
        board: Board,
        surface: Optional[InputSurface] = None,
        delete_note: Optional[Callable[[str], None]] = None,
    ):
        self.board = board
        self.surface = surface or InputSurface()
        self._delete_note = delete_note or board.delete_note

        self.mode = IDLE
        self.dragging: Optional[str] = None
        self.connecting_from: Optional[dict] = None
        self.preview: Optional[Point] = None
        self.focused: Optional[str] = None
        self.clipboard: Optional[Note] = None
        self.revision = 0

        self._mode_subscriptions: List[Callable[[], None]] = []
        self._base_subscriptions = [
            self.surface.subscribe("pointer_down", self._on_pointer_down),
            self.surface.subscribe("anchor_down", self._on_anchor_down),
            self.surface.subscribe("anchor_up", self._on_anchor_up),
            self.surface.subscribe("key_down", self._on_shortcut),
        ]

    # -- mode bookkeeping -----------------------------------------

    def _enter_mode(self, mode: str, subscriptions: Dict[str, Callable[[InputEvent], None]]):
        self._exit_mode()
        self.mode = mode
        for event_type, handler in subscriptions.items():
            self._mode_subscriptions.append(self.surface.subscribe(event_type, handler))

    def _exit_mode(self):
        while self._mode_subscriptions:
            self._mode_subscriptions.pop()()
        self.mode = IDLE

    def _changed(self):
        self.revision += 1

    def close(self):
        """Drop every subscription this controller holds."""
        self._exit_mode()
        while self._base_subscriptions:
            self._base_subscriptions.pop()()
        self.dragging = None
        self.connecting_from = None
        self.preview = None

    # -- dragging -------------------------------------------------

    def start_drag(self, note_id: str) -> bool:
        if self.mode != IDLE or self.board.get_note(note_id) is None:
            return False
        self.dragging = note_id
        self._enter_mode(DRAGGING, {
            "pointer_move": self._on_drag_move,
            "pointer_up": self._on_drag_end,
            "pointer_leave": self._on_drag_end,
        })
        return True

    def drag_to(self, x: float, y: float):
        """Reposition the dragged note so the pointer keeps its grab offset."""
        if self.mode != DRAGGING or self.dragging is None:
            return
        self.board.move_note(self.dragging, x - GRAB_OFFSET_X, y - GRAB_OFFSET_Y)
        self._changed()

    def end_drag(self):
        if self.mode != DRAGGING:
            return
        self.dragging = None
        self._exit_mode()

    def _on_drag_move(self, event: InputEvent):
        if event.point is not None:
            self.drag_to(event.x, event.y)

    def _on_drag_end(self, event: InputEvent):
        self.end_drag()

    # -- connecting -----------------------------------------------

    def start_connection(self, note_id: str, anchor: str) -> bool:
        if self.mode != IDLE or anchor not in ANCHORS:
            return False
        if self.board.get_note(note_id) is None:
            return False
        self.connecting_from = {"itemId": note_id, "point": anchor}
        self.preview = self.board.anchor_position(note_id, anchor)
        self._enter_mode(CONNECTING, {
            "pointer_move": self._on_preview_move,
            "key_down": self._on_connect_key,
        })
        return True

    def complete_connection(self, target_id: str, target_anchor: str) -> Optional[Connection]:
        """
        Commit a connection to a different note.

        Targets on the origin note (any anchor) are ignored and connecting
        mode stays active so another note can still be picked.
        """
        if self.mode != CONNECTING or self.connecting_from is None:
            return None
        if target_id == self.connecting_from["itemId"]:
            return None
        if self.board.get_note(target_id) is None or target_anchor not in ANCHORS:
            return None

        conn = self.board.add_connection(
            self.connecting_from["itemId"],
            self.connecting_from["point"],
            target_id,
            target_anchor,
        )
        logger.info("Connected %s -> %s", conn.from_id, conn.to_id)
        self._clear_connecting()
        self._changed()
        return conn

    def cancel_connection(self):
        if self.mode != CONNECTING:
            return
        self._clear_connecting()

    def _clear_connecting(self):
        self.connecting_from = None
        self.preview = None
        self._exit_mode()

    def _on_preview_move(self, event: InputEvent):
        if event.point is not None:
            self.preview = event.point

    def _on_connect_key(self, event: InputEvent):
        if event.key == "Escape":
            self.cancel_connection()

    # -- always-on handlers ---------------------------------------

    def _on_pointer_down(self, event: InputEvent):
        if not event.note_id:
            return
        if self.board.get_note(event.note_id) is None:
            return
        if self.mode == IDLE:
            self.focused = event.note_id
            self.start_drag(event.note_id)

    def _on_anchor_down(self, event: InputEvent):
        if not event.note_id or not event.anchor:
            return
        if self.mode == CONNECTING:
            self.complete_connection(event.note_id, event.anchor)
        elif self.mode == IDLE:
            self.start_connection(event.note_id, event.anchor)

    def _on_anchor_up(self, event: InputEvent):
        # Releasing over another note's anchor finishes a drag-style gesture
        if self.mode == CONNECTING and event.note_id and event.anchor:
            self.complete_connection(event.note_id, event.anchor)

    def _on_shortcut(self, event: InputEvent):
        # Keys typed into a note's text field belong to the text
        if self.mode != IDLE or event.editing:
            return

        key = (event.key or "").lower()
        if event.modifier and key == "v":
            if self.clipboard is not None:
                copy = self.board.paste_note(self.clipboard)
                self.focused = copy.id
                self._changed()
            return

        if self.focused is None:
            return
        note = self.board.get_note(self.focused)
        if note is None:
            self.focused = None
            return

        if event.key in DELETE_KEYS:
            self._delete_note(self.focused)
            self.focused = None
            self._changed()
        elif event.modifier and key == "c":
            self.clipboard = replace(note)

    # -- client view ----------------------------------------------

    def dispatch(self, event: InputEvent) -> bool:
        """Feed one event through the surface. True when the board changed."""
        before = self.revision
        self.surface.dispatch(event)
        return self.revision != before

    def state(self) -> dict:
        return {
            "mode": self.mode,
            "dragging": self.dragging,
            "connectingFrom": self.connecting_from,
            "preview": self.preview.to_dict() if self.preview else None,
            "focused": self.focused,
        }
