"""Tests for carechat.session_store -- session persistence and retrieval.

Concurrent writes go through the engine so the per-session lock is exercised
the way the WebSocket handlers exercise it.
"""

import asyncio
import json
from datetime import timedelta
from unittest.mock import patch

import pytest

from carechat.chat_session import ChatSession, RiskLevel, SenderRole, SessionStatus
from carechat.errors import PersistenceError
from carechat.session_store import JsonSessionStore, _is_valid_session_id
from tests.conftest import T0, FakeConnection


def _session(student_id="stu-1", **overrides) -> ChatSession:
    fields = {"student_id": student_id, "student_name": "Sam", "risk_level": RiskLevel.MEDIUM}
    fields.update(overrides)
    return ChatSession(**fields)


# ---------------------------------------------------------------------------
# Session ID validation
# ---------------------------------------------------------------------------

class TestSessionIdValidation:

    def test_valid_hex_id(self):
        assert _is_valid_session_id("abcdef01234567890abcdef012345678") is True

    def test_short_hex_id(self):
        assert _is_valid_session_id("abcdef01") is True

    def test_too_short_id(self):
        assert _is_valid_session_id("abc") is False

    def test_path_traversal(self):
        assert _is_valid_session_id("../../etc/passwd") is False

    def test_none(self):
        assert _is_valid_session_id(None) is False


# ---------------------------------------------------------------------------
# create / save / get
# ---------------------------------------------------------------------------

class TestPersistence:

    @pytest.mark.asyncio
    async def test_create_writes_snake_case_json(self, tmp_path):
        sessions_dir = tmp_path / "sessions"
        store = JsonSessionStore(sessions_dir=str(sessions_dir))
        session = await store.create(_session(screening_id="scr-9"))

        data = json.loads((sessions_dir / f"{session.session_id}.json").read_text())
        assert data["student_id"] == "stu-1"
        assert data["screening_id"] == "scr-9"
        assert data["status"] == "waiting"
        assert data["risk_level"] == "medium"
        assert data["escalated"] is False

    @pytest.mark.asyncio
    async def test_create_refuses_existing_id(self, store):
        session = await store.create(_session())
        with pytest.raises(PersistenceError):
            await store.create(session)

    @pytest.mark.asyncio
    async def test_save_stamps_updated_at(self, store):
        stale = T0.replace(year=2000)
        session = _session(updated_at=stale)
        saved = await store.save(session)
        assert saved.updated_at > stale
        assert session.updated_at == stale

    @pytest.mark.asyncio
    async def test_round_trip_preserves_messages(self, tmp_path):
        sessions_dir = str(tmp_path / "sessions")
        store = JsonSessionStore(sessions_dir=sessions_dir)
        session = _session().accept("vol-1", "Vera", T0)
        for i, (sender, text) in enumerate([
            (SenderRole.STUDENT, "hi"),
            (SenderRole.VOLUNTEER, "hello"),
            (SenderRole.STUDENT, "thanks"),
        ]):
            session = session.add_message(sender, "x", text, T0 + timedelta(seconds=i))
        await store.save(session)

        # Fresh store instance reads from disk
        loaded = await JsonSessionStore(sessions_dir=sessions_dir).get(session.session_id)
        assert loaded.status is SessionStatus.ACTIVE
        assert [m.text for m in loaded.messages] == ["hi", "hello", "thanks"]
        assert [m.sender for m in loaded.messages] == [
            SenderRole.STUDENT, SenderRole.VOLUNTEER, SenderRole.STUDENT,
        ]
        assert loaded.messages[2].timestamp == T0 + timedelta(seconds=2)
        assert loaded.start_time == T0

    @pytest.mark.asyncio
    async def test_get_nonexistent_session(self, store):
        assert await store.get("00000000deadbeef") is None

    @pytest.mark.asyncio
    async def test_get_invalid_id(self, store):
        assert await store.get("../secrets") is None

    @pytest.mark.asyncio
    async def test_get_corrupt_file(self, store):
        (store.sessions_dir / "00000000deadbeef.json").write_text("{not json")
        assert await store.get("00000000deadbeef") is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", [{"foo": 1}, [1, 2], {"student_id": "stu-1"}])
    async def test_get_wrong_shape_file(self, store, content):
        (store.sessions_dir / "00000000deadbeef.json").write_text(json.dumps(content))
        assert await store.get("00000000deadbeef") is None

    @pytest.mark.asyncio
    async def test_write_failure_raises_persistence_error(self, store):
        session = _session()
        with patch.object(store, "_write_sync", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError):
                await store.save(session)
        assert await store.get(session.session_id) is None
        assert list(store.sessions_dir.glob("*.tmp")) == []


# ---------------------------------------------------------------------------
# History queries
# ---------------------------------------------------------------------------

class TestHistory:

    @pytest.mark.asyncio
    async def test_list_for_student_newest_first(self, store):
        older = await store.create(_session(created_at=T0))
        newer = await store.create(_session(created_at=T0 + timedelta(hours=1)))
        await store.create(_session(student_id="stu-2"))

        history = await store.list_for_student("stu-1")

        assert [s.session_id for s in history] == [newer.session_id, older.session_id]

    @pytest.mark.asyncio
    async def test_list_for_volunteer(self, store):
        mine = await store.save(_session().accept("vol-1", "Vera", T0))
        await store.save(_session().accept("vol-2", "Val", T0))
        await store.create(_session())

        history = await store.list_for_volunteer("vol-1")

        assert [s.session_id for s in history] == [mine.session_id]

    @pytest.mark.asyncio
    async def test_list_skips_corrupt_files(self, store):
        await store.create(_session())
        (store.sessions_dir / "00000000deadbeef.json").write_text("{not json")
        assert len(await store.list_for_student("stu-1")) == 1

    @pytest.mark.asyncio
    async def test_list_skips_wrong_shape_files(self, store):
        await store.create(_session())
        (store.sessions_dir / "00000000deadbeef.json").write_text("[1, 2]")
        # Matches the student but is missing required fields
        (store.sessions_dir / "00000000feedface.json").write_text(json.dumps({"student_id": "stu-1"}))

        history = await store.list_for_student("stu-1")

        assert len(history) == 1
        assert history[0].risk_level is RiskLevel.MEDIUM

    @pytest.mark.asyncio
    async def test_unknown_student_has_empty_history(self, store):
        assert await store.list_for_student("nobody") == []


# ---------------------------------------------------------------------------
# Concurrent safety -- stress-test concurrent writes to one session
# ---------------------------------------------------------------------------

class TestConcurrentSessionWrites:
    """Concurrent sends to one session must neither corrupt the file nor
    lose a message: each append reloads, transitions and saves under the
    session lock."""

    @pytest.mark.asyncio
    async def test_concurrent_messages_all_recorded(self, engine, store):
        vol_conn = FakeConnection("vol")
        await engine.volunteer_online("vol-1", "Vera", vol_conn)
        session = await engine.request_chat("stu-1", "low", connection=FakeConnection("stu"))
        await engine.accept_chat("vol-1", session.session_id)

        await asyncio.gather(*[
            engine.send_message(session.session_id, "student", "Sam", f"message-{i}")
            for i in range(20)
        ])

        data = json.loads((store.sessions_dir / f"{session.session_id}.json").read_text())
        assert len(data["messages"]) == 20
        assert sorted(m["text"] for m in data["messages"]) == sorted(
            f"message-{i}" for i in range(20)
        )
