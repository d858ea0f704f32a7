"""Shared fixtures for the CareChat test suite."""

import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

# Ensure the project root is on sys.path so 'carechat' package resolves
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# carechat.server creates its data dir at import time; keep it out of the repo
os.environ.setdefault("CARECHAT_DATA_DIR", tempfile.mkdtemp(prefix="carechat-test-"))

from carechat.chat_engine import ChatEngine  # noqa: E402
from carechat.session_store import JsonSessionStore  # noqa: E402
from carechat.volunteer_stats import VolunteerStats  # noqa: E402


T0 = datetime(2026, 3, 2, 14, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock: starts at T0 and only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FakeConnection:
    """Stand-in for a WebSocketSession: records every payload sent to it."""

    def __init__(self, name: str = "conn", *, alive: bool = True):
        self.name = name
        self.alive = alive
        self.sent: list[dict] = []

    async def safe_send(self, data: dict) -> bool:
        if not self.alive:
            return False
        self.sent.append(data)
        return True

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent if m.get("type") == msg_type]

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def __repr__(self):
        return f"FakeConnection({self.name!r})"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return JsonSessionStore(sessions_dir=str(tmp_path / "sessions"))


@pytest.fixture
def volunteer_stats(tmp_path):
    return VolunteerStats(tmp_path / "volunteer_stats.json")


@pytest.fixture
def engine(store, clock, volunteer_stats):
    return ChatEngine(store, stats=volunteer_stats, clock=clock)


@pytest.fixture
def app(store, volunteer_stats, engine):
    """The FastAPI app with its store, stats and engine swapped for tmp_path copies."""
    with patch("carechat.server._store", store), \
         patch("carechat.server._volunteer_stats", volunteer_stats), \
         patch("carechat.server.engine", engine):
        from carechat.server import app as fastapi_app
        yield fastapi_app


@pytest.fixture
async def client(app):
    """Async HTTP client for testing REST endpoints."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
