from app.routes.reflections import router as reflections_router
from app.routes.board import router as board_router
from app.routes.chat import router as chat_router
from app.routes.history import router as history_router

__all__ = [
    'reflections_router',
    'board_router',
    'chat_router',
    'history_router',
]
