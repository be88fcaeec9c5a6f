"""
Board Geometry Service

Keeps the notes and connections of one reflection board and does the
geometry for them:
- Anchor coordinates (top/right/bottom/left edge midpoints)
- Orthogonal ("Miro style") connection routing
- Clamped note moves inside the visible board
- Cascading note deletes (a note never leaves dangling connections)

Rendered note height depends on how much text wraps, so anchor lookups
go through a LayoutOracle when one is available and fall back to the
stored position plus fixed width / default height otherwise.
"""

import random
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

# Layout constants (board-local pixels)
NOTE_WIDTH = 224
NOTE_HEIGHT = 112
GRAB_OFFSET_X = 96
GRAB_OFFSET_Y = 56
PASTE_OFFSET = 20
BOARD_WIDTH = 1200
BOARD_HEIGHT = 800

# New notes land somewhere in this area
SPAWN_X = (50, 750)
SPAWN_Y = (50, 550)

ANCHORS = ("top", "right", "bottom", "left")
CATEGORIES = ("good", "growth", "insight")


class BoardError(ValueError):
    """Raised for board operations that would break an invariant."""


class NoteNotFoundError(BoardError):
    pass


_id_lock = threading.Lock()
_last_id = 0


def new_id() -> str:
    """Millisecond timestamp id, strictly increasing within the process."""
    global _last_id
    with _id_lock:
        candidate = int(time.time() * 1000)
        if candidate <= _last_id:
            candidate = _last_id + 1
        _last_id = candidate
    return str(candidate)


@dataclass
class Point:
    x: float
    y: float

    def offset(self, dx: float, dy: float) -> "Point":
        return Point(self.x + dx, self.y + dy)

    def constrain(self, max_x: float, max_y: float) -> "Point":
        """Clamp into [0, max_x] x [0, max_y]."""
        return Point(max(0, min(self.x, max_x)), max(0, min(self.y, max_y)))

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y}


@dataclass
class Note:
    id: str
    text: str
    category: str
    x: float
    y: float

    @property
    def position(self) -> Point:
        return Point(self.x, self.y)

    @property
    def is_filled(self) -> bool:
        return bool(self.text and self.text.strip())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "type": self.category,
            "x": self.x,
            "y": self.y,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Note":
        return cls(
            id=str(data["id"]),
            text=data.get("text") or "",
            category=data.get("type") or data.get("category") or "good",
            x=data.get("x", 0),
            y=data.get("y", 0),
        )


@dataclass
class Connection:
    id: str
    from_id: str
    from_point: str
    to_id: str
    to_point: str
    label: Optional[str] = None

    def touches(self, note_id: str) -> bool:
        return self.from_id == note_id or self.to_id == note_id

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "from": self.from_id,
            "fromPoint": self.from_point,
            "to": self.to_id,
            "toPoint": self.to_point,
        }
        if self.label is not None:
            data["label"] = self.label
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Connection":
        return cls(
            id=str(data["id"]),
            from_id=str(data["from"]),
            from_point=data["fromPoint"],
            to_id=str(data["to"]),
            to_point=data["toPoint"],
            label=data.get("label"),
        )


@dataclass
class PathRoute:
    """Right-angled polyline from a connection's start anchor to its end anchor."""
    points: List[Point] = field(default_factory=list)
    horizontal_first: bool = False

    @property
    def start(self) -> Point:
        return self.points[0]

    @property
    def end(self) -> Point:
        return self.points[-1]

    def to_svg(self) -> str:
        """SVG path data, e.g. 'M 0 0 L 5 0 L 5 4 L 10 4'."""
        first, rest = self.points[0], self.points[1:]
        parts = [f"M {_fmt(first.x)} {_fmt(first.y)}"]
        parts.extend(f"L {_fmt(p.x)} {_fmt(p.y)}" for p in rest)
        return " ".join(parts)


def _fmt(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


# ============================================================
# LAYOUT ORACLES
# ============================================================

class LayoutOracle:
    """Reports rendered geometry for notes. The base class knows nothing."""

    def note_height(self, note_id: str) -> Optional[float]:
        return None

    def anchor_position(self, note_id: str, anchor: str) -> Optional[Point]:
        return None


class MeasuredLayout(LayoutOracle):
    """
    Oracle fed with measurements reported by a rendering client.

    Args:
        heights: note id -> rendered height
        anchors: note id -> {anchor: {"x", "y"}} measured anchor centres
    """

    def __init__(
        self,
        heights: Optional[Dict[str, float]] = None,
        anchors: Optional[Dict[str, Dict[str, dict]]] = None,
    ):
        self.heights = dict(heights or {})
        self.anchors = dict(anchors or {})

    def note_height(self, note_id: str) -> Optional[float]:
        height = self.heights.get(note_id)
        if height is None or height <= 0:
            return None
        return height

    def anchor_position(self, note_id: str, anchor: str) -> Optional[Point]:
        measured = self.anchors.get(note_id, {}).get(anchor)
        if not measured:
            return None
        return Point(measured["x"], measured["y"])


# ============================================================
# PURE GEOMETRY
# ============================================================

def computed_anchor(
    note: Note,
    anchor: str,
    height: float = NOTE_HEIGHT,
    width: float = NOTE_WIDTH,
) -> Point:
    """Anchor coordinate from stored position and box size alone."""
    center_x = note.x + width / 2
    center_y = note.y + height / 2

    if anchor == "top":
        return Point(center_x, note.y)
    if anchor == "right":
        return Point(note.x + width, center_y)
    if anchor == "bottom":
        return Point(center_x, note.y + height)
    if anchor == "left":
        return Point(note.x, center_y)
    raise BoardError(f"Unknown anchor: {anchor}")


def route_path(start: Point, end: Point) -> PathRoute:
    """
    Orthogonal route between two points.

    Horizontal displacement strictly larger than vertical bends through a
    vertical midline at mid-x; anything else (ties included) bends through
    a horizontal midline at mid-y.
    """
    dx = end.x - start.x
    dy = end.y - start.y

    if abs(dx) > abs(dy):
        mid_x = start.x + dx / 2
        points = [start, Point(mid_x, start.y), Point(mid_x, end.y), end]
        return PathRoute(points=points, horizontal_first=True)

    mid_y = start.y + dy / 2
    points = [start, Point(start.x, mid_y), Point(end.x, mid_y), end]
    return PathRoute(points=points, horizontal_first=False)


# ============================================================
# BOARD
# ============================================================

class Board:
    """Notes, connections and the visible board rectangle."""

    def __init__(
        self,
        notes: Optional[List[Note]] = None,
        connections: Optional[List[Connection]] = None,
        width: float = BOARD_WIDTH,
        height: float = BOARD_HEIGHT,
        layout: Optional[LayoutOracle] = None,
        rng: Optional[random.Random] = None,
    ):
        self.notes: List[Note] = list(notes or [])
        self.connections: List[Connection] = list(connections or [])
        self.width = width
        self.height = height
        self.layout = layout or LayoutOracle()
        self._rng = rng or random.Random()

    # -- lookups ------------------------------------------------

    def get_note(self, note_id: str) -> Optional[Note]:
        for note in self.notes:
            if note.id == note_id:
                return note
        return None

    def require_note(self, note_id: str) -> Note:
        note = self.get_note(note_id)
        if note is None:
            raise NoteNotFoundError(f"Note not found: {note_id}")
        return note

    def filled_notes(self) -> List[Note]:
        return [note for note in self.notes if note.is_filled]

    def note_height(self, note_id: str) -> float:
        return self.layout.note_height(note_id) or NOTE_HEIGHT

    # -- notes ----------------------------------------------------

    def add_note(self, category: str, text: str = "") -> Note:
        if category not in CATEGORIES:
            raise BoardError(f"Unknown category: {category}")
        note = Note(
            id=new_id(),
            text=text,
            category=category,
            x=SPAWN_X[0] + self._rng.random() * (SPAWN_X[1] - SPAWN_X[0]),
            y=SPAWN_Y[0] + self._rng.random() * (SPAWN_Y[1] - SPAWN_Y[0]),
        )
        self.notes.append(note)
        return note

    def update_note(self, note_id: str, text: str) -> Note:
        note = self.require_note(note_id)
        note.text = text
        return note

    def copy_note(self, note_id: str) -> Note:
        return self.paste_note(self.require_note(note_id))

    def paste_note(self, source: Note) -> Note:
        """Add a copy of source offset down and right, kept inside the board."""
        note = Note(
            id=new_id(),
            text=source.text,
            category=source.category,
            x=source.x,
            y=source.y,
        )
        self.notes.append(note)
        return self.move_note(note.id, source.x + PASTE_OFFSET, source.y + PASTE_OFFSET)

    def move_note(self, note_id: str, x: float, y: float) -> Note:
        """Move a note, keeping its whole box inside the board."""
        note = self.require_note(note_id)
        max_x = self.width - NOTE_WIDTH
        max_y = self.height - self.note_height(note_id)
        clamped = Point(x, y).constrain(max_x, max_y)
        note.x, note.y = clamped.x, clamped.y
        return note

    def delete_note(self, note_id: str) -> List[Connection]:
        """Remove a note and every connection touching it. Returns the dropped connections."""
        note = self.require_note(note_id)
        dropped = [conn for conn in self.connections if conn.touches(note_id)]
        self.notes = [n for n in self.notes if n.id != note.id]
        self.connections = [conn for conn in self.connections if not conn.touches(note_id)]
        return dropped

    def resize(self, width: float, height: float):
        if width <= 0 or height <= 0:
            raise BoardError("Board size must be positive")
        self.width = width
        self.height = height

    # -- connections ----------------------------------------------

    def add_connection(
        self,
        from_id: str,
        from_point: str,
        to_id: str,
        to_point: str,
        label: Optional[str] = None,
    ) -> Connection:
        if from_point not in ANCHORS or to_point not in ANCHORS:
            raise BoardError("Anchor must be one of: " + ", ".join(ANCHORS))
        if from_id == to_id:
            raise BoardError("A note cannot connect to itself")
        self.require_note(from_id)
        self.require_note(to_id)

        conn = Connection(
            id=new_id(),
            from_id=from_id,
            from_point=from_point,
            to_id=to_id,
            to_point=to_point,
            label=label,
        )
        self.connections.append(conn)
        return conn

    def delete_connection(self, connection_id: str) -> bool:
        before = len(self.connections)
        self.connections = [c for c in self.connections if c.id != connection_id]
        return len(self.connections) < before

    # -- geometry -------------------------------------------------

    def anchor_position(self, note_id: str, anchor: str) -> Point:
        """Measured anchor if the layout oracle has one, computed otherwise."""
        note = self.get_note(note_id)
        if note is None:
            return Point(0, 0)

        measured = self.layout.anchor_position(note_id, anchor)
        if measured is not None:
            return measured

        return computed_anchor(note, anchor, height=self.note_height(note_id))

    def connection_path(self, conn: Connection) -> PathRoute:
        start = self.anchor_position(conn.from_id, conn.from_point)
        end = self.anchor_position(conn.to_id, conn.to_point)
        return route_path(start, end)

    def routes(self) -> List[dict]:
        """Every connection with its routed path, ready for an SVG layer."""
        result = []
        for conn in self.connections:
            path = self.connection_path(conn)
            result.append({
                "id": conn.id,
                "path": path.to_svg(),
                "points": [p.to_dict() for p in path.points],
                "label": conn.label,
            })
        return result

    # -- serialization --------------------------------------------

    def to_dict(self) -> dict:
        return {
            "width": self.width,
            "height": self.height,
            "items": [note.to_dict() for note in self.notes],
            "connections": [conn.to_dict() for conn in self.connections],
        }

    @classmethod
    def from_record(
        cls,
        items: Optional[List[dict]],
        connections: Optional[List[dict]] = None,
        **kwargs,
    ) -> "Board":
        notes = [Note.from_dict(item) for item in (items or [])]
        note_ids = {note.id for note in notes}
        conns = [
            Connection.from_dict(data) for data in (connections or [])
            if str(data.get("from")) in note_ids and str(data.get("to")) in note_ids
        ]
        return cls(notes=notes, connections=conns, **kwargs)
