from app.services.board import (
    Board,
    BoardError,
    Connection,
    LayoutOracle,
    MeasuredLayout,
    Note,
    Point,
    computed_anchor,
    route_path,
)
from app.services.board_input import InputController, InputEvent, InputSurface
from app.services.coach import (
    CoachClient,
    CoachingChat,
    ask_coach,
    get_coach_client,
    get_stage,
)
from app.services.records import (
    delete_record,
    get_record,
    list_records,
    search_records,
    upsert_record,
)

__all__ = [
    'Board',
    'BoardError',
    'Connection',
    'LayoutOracle',
    'MeasuredLayout',
    'Note',
    'Point',
    'computed_anchor',
    'route_path',
    'InputController',
    'InputEvent',
    'InputSurface',
    'CoachClient',
    'CoachingChat',
    'ask_coach',
    'get_coach_client',
    'get_stage',
    'delete_record',
    'get_record',
    'list_records',
    'search_records',
    'upsert_record',
]
