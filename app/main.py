import logging
from fastapi import FastAPI
from fastapi.responses import RedirectResponse
from dotenv import load_dotenv

load_dotenv()

from app.routes import (
    reflections_router,
    board_router,
    chat_router,
    history_router,
)
from app.database import init_db, DATABASE_URL
from app.template_config import today_local

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Daily Reflection",
    description="Reflection board with a coaching chat",
    version="1.0.0"
)

# Include routers
app.include_router(reflections_router)
app.include_router(board_router)
app.include_router(chat_router)
app.include_router(history_router)


@app.on_event("startup")
def on_startup():
    """Create tables on startup. If initialization fails the app stops
    with a clear error message.
    """
    try:
        init_db()
    except Exception as e:
        # Re-raise as RuntimeError so the server fails loudly
        raise RuntimeError(
            f"Database initialization failed for DATABASE_URL={DATABASE_URL}: {e}"
        ) from e


@app.get("/")
async def index():
    """Today's board."""
    return RedirectResponse(url=f"/api/board/{today_local().isoformat()}", status_code=303)


@app.get("/api/today")
async def today():
    return {"date": today_local().isoformat()}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True)
