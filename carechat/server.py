import sys
if sys.platform == "win32":
    import asyncio
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

import logging
import os
from pathlib import Path

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from .chat_engine import ChatEngine
from .session_store import JsonSessionStore
from .volunteer_stats import VolunteerStats
from .ws_handler import websocket_chat as _websocket_chat

logger = logging.getLogger(__name__)

app = FastAPI(title="CareChat")

# --- CORS Configuration ---

def _get_cors_origins() -> list[str]:
    """Get CORS origins from environment variable or use default."""
    cors_origins_str = os.environ.get("CARECHAT_CORS_ORIGINS", "http://localhost:8000")
    origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    return origins if origins else ["http://localhost:8000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Engine Configuration ---

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.environ.get("CARECHAT_DATA_DIR", str(BASE_DIR / "data")))
SESSIONS_DIR = str(DATA_DIR / "sessions")
QUEUE_POLICY = os.environ.get("CARECHAT_QUEUE_POLICY", "fifo")
QUEUE_TIMEOUT_SECONDS = int(os.environ.get("CARECHAT_QUEUE_TIMEOUT", "0"))

_store = JsonSessionStore(sessions_dir=SESSIONS_DIR)
_volunteer_stats = VolunteerStats(DATA_DIR / "volunteer_stats.json")
engine = ChatEngine(
    _store,
    stats=_volunteer_stats,
    queue_policy=QUEUE_POLICY,
    wait_timeout=QUEUE_TIMEOUT_SECONDS,
)


@app.on_event("startup")
async def startup_event():
    engine.start()
    logger.info("Chat engine started (queue policy=%s, wait timeout=%ss)",
                QUEUE_POLICY, QUEUE_TIMEOUT_SECONDS)


@app.on_event("shutdown")
async def shutdown_event():
    await engine.stop()


# --- API Routes ---

@app.get("/api/health")
async def health_check():
    return {"status": "ok"}


@app.get("/api/chat/history")
async def api_chat_history(student_id: str):
    sessions = await _store.list_for_student(student_id)
    return {
        "count": len(sessions),
        "sessions": [s.model_dump(mode="json") for s in sessions],
    }


@app.get("/api/chat/sessions/{session_id}")
async def api_get_session(session_id: str):
    session = await _store.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.model_dump(mode="json")


@app.get("/api/chat/volunteer/{volunteer_id}/sessions")
async def api_volunteer_sessions(volunteer_id: str):
    sessions = await _store.list_for_volunteer(volunteer_id)
    return {
        "count": len(sessions),
        "sessions": [s.model_dump(mode="json") for s in sessions],
    }


@app.get("/api/volunteers/online")
async def api_volunteers_online():
    return {"count": engine.online_count}


@app.get("/api/volunteers/{volunteer_id}/stats")
async def api_volunteer_stats(volunteer_id: str):
    stats = await _volunteer_stats.get(volunteer_id)
    if stats is None:
        raise HTTPException(status_code=404, detail="No stats for this volunteer")
    return stats


@app.get("/api/queue")
async def api_queue():
    return engine.queue_snapshot()


# --- WebSocket ---

@app.websocket("/ws/chat")
async def websocket_chat(websocket: WebSocket):
    await _websocket_chat(websocket, engine=engine)
