"""Tests for carechat.server -- REST API endpoints.

These tests use httpx.AsyncClient with ASGITransport to call the FastAPI app
directly (no real server needed). The store, stats and engine are swapped for
tmp_path-backed copies via the `app` fixture in conftest.
"""

from unittest.mock import patch

import pytest

from carechat.chat_session import ChatSession, RiskLevel
from carechat.server import _get_cors_origins
from tests.conftest import T0, FakeConnection


# ---------------------------------------------------------------------------
# Health check endpoint
# ---------------------------------------------------------------------------

class TestHealthCheckEndpoint:

    @pytest.mark.asyncio
    async def test_health_check_returns_ok(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


# ---------------------------------------------------------------------------
# Session endpoints
# ---------------------------------------------------------------------------

class TestSessionEndpoints:

    @pytest.mark.asyncio
    async def test_get_session(self, client, store):
        session = await store.create(ChatSession(
            student_id="stu-1", student_name="Sam", risk_level=RiskLevel.HIGH,
        ))
        resp = await client.get(f"/api/chat/sessions/{session.session_id}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["session_id"] == session.session_id
        assert data["status"] == "waiting"
        assert data["risk_level"] == "high"
        assert data["messages"] == []

    @pytest.mark.asyncio
    async def test_get_unknown_session_404(self, client):
        resp = await client.get("/api/chat/sessions/00000000deadbeef")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Session not found"

    @pytest.mark.asyncio
    async def test_get_session_with_invalid_file_404(self, client, store):
        (store.sessions_dir / "00000000deadbeef.json").write_text('{"foo": 1}')
        resp = await client.get("/api/chat/sessions/00000000deadbeef")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_get_session_rejects_traversal(self, client):
        resp = await client.get("/api/chat/sessions/..%2F..%2Fetc")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_student_history(self, client, store):
        for _ in range(2):
            await store.create(ChatSession(student_id="stu-1", risk_level=RiskLevel.LOW))
        await store.create(ChatSession(student_id="stu-2", risk_level=RiskLevel.LOW))

        resp = await client.get("/api/chat/history", params={"student_id": "stu-1"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["count"] == 2
        assert {s["student_id"] for s in data["sessions"]} == {"stu-1"}

    @pytest.mark.asyncio
    async def test_student_history_requires_student_id(self, client):
        resp = await client.get("/api/chat/history")
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_volunteer_sessions(self, client, store):
        accepted = ChatSession(student_id="stu-1", risk_level=RiskLevel.LOW).accept("vol-1", "Vera", T0)
        await store.save(accepted)

        resp = await client.get("/api/chat/volunteer/vol-1/sessions")

        assert resp.status_code == 200
        data = resp.json()
        assert data["count"] == 1
        assert data["sessions"][0]["volunteer_name"] == "Vera"


# ---------------------------------------------------------------------------
# Volunteer and queue endpoints
# ---------------------------------------------------------------------------

class TestVolunteerEndpoints:

    @pytest.mark.asyncio
    async def test_online_count(self, client, engine):
        assert (await client.get("/api/volunteers/online")).json() == {"count": 0}

        await engine.volunteer_online("vol-1", "Vera", FakeConnection())

        assert (await client.get("/api/volunteers/online")).json() == {"count": 1}

    @pytest.mark.asyncio
    async def test_stats_for_unknown_volunteer_404(self, client):
        resp = await client.get("/api/volunteers/nobody/stats")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_stats_after_chat(self, client, engine, clock):
        await engine.volunteer_online("vol-1", "Vera", FakeConnection())
        session = await engine.request_chat("stu-1", "low")
        await engine.accept_chat("vol-1", session.session_id)
        clock.advance(120)
        await engine.end_chat(session.session_id)

        resp = await client.get("/api/volunteers/vol-1/stats")

        assert resp.status_code == 200
        stats = resp.json()
        assert stats["total_chats_handled"] == 1
        assert stats["todays_chats"] == 1
        assert stats["avg_chat_duration_seconds"] == 120.0

    @pytest.mark.asyncio
    async def test_queue_snapshot(self, client, engine):
        first = await engine.request_chat("stu-1", "low", student_name="Sam")
        await engine.request_chat("stu-2", "high")

        resp = await client.get("/api/queue")

        data = resp.json()
        assert data["policy"] == "fifo"
        assert data["size"] == 2
        assert data["entries"][0]["session_id"] == first.session_id
        assert data["entries"][0]["student_name"] == "Sam"


# ---------------------------------------------------------------------------
# CORS configuration
# ---------------------------------------------------------------------------

class TestCorsOrigins:

    def test_default_origin(self, monkeypatch):
        monkeypatch.delenv("CARECHAT_CORS_ORIGINS", raising=False)
        assert _get_cors_origins() == ["http://localhost:8000"]

    def test_comma_separated_origins(self):
        with patch.dict("os.environ", {"CARECHAT_CORS_ORIGINS": "http://a.test, http://b.test,"}):
            assert _get_cors_origins() == ["http://a.test", "http://b.test"]

    def test_blank_falls_back_to_default(self):
        with patch.dict("os.environ", {"CARECHAT_CORS_ORIGINS": " , "}):
            assert _get_cors_origins() == ["http://localhost:8000"]
