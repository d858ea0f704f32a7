import asyncio
import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from .chat_session import ChatSession, utcnow
from .errors import PersistenceError

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[0-9a-f]{8,}$")


def _is_valid_session_id(session_id: str) -> bool:
    return isinstance(session_id, str) and bool(_SESSION_ID_RE.match(session_id))


class SessionStore(ABC):
    """Durable record of chat sessions, keyed by session id.

    Implementations raise ``PersistenceError`` when a write does not land, and
    return ``None`` from ``get`` for ids they do not hold.
    """

    @abstractmethod
    async def create(self, session: ChatSession) -> ChatSession:
        ...

    @abstractmethod
    async def save(self, session: ChatSession) -> ChatSession:
        ...

    @abstractmethod
    async def get(self, session_id: str) -> ChatSession | None:
        ...

    @abstractmethod
    async def list_for_student(self, student_id: str) -> list[ChatSession]:
        ...

    @abstractmethod
    async def list_for_volunteer(self, volunteer_id: str) -> list[ChatSession]:
        ...


class JsonSessionStore(SessionStore):
    """One JSON file per session under ``sessions_dir``, written atomically."""

    def __init__(self, sessions_dir: str = "sessions"):
        self.sessions_dir = Path(sessions_dir).resolve()
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

    def _path_for(self, session_id: str) -> Path | None:
        if not _is_valid_session_id(session_id):
            return None
        filepath = (self.sessions_dir / f"{session_id}.json").resolve()
        if not filepath.is_relative_to(self.sessions_dir):
            return None
        return filepath

    def _write_sync(self, filepath: Path, data: dict):
        """Synchronous save — must be called via asyncio.to_thread()."""
        tmp_fd, tmp_path = tempfile.mkstemp(dir=self.sessions_dir, suffix=".tmp")
        try:
            with os.fdopen(tmp_fd, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, filepath)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    async def _write(self, session: ChatSession, *, must_not_exist: bool) -> ChatSession:
        filepath = self._path_for(session.session_id)
        if filepath is None:
            raise PersistenceError(f"Invalid session id: {session.session_id!r}")
        if must_not_exist and filepath.exists():
            raise PersistenceError(f"Session {session.session_id} already exists.")
        stamped = session.model_copy(update={"updated_at": utcnow()})
        try:
            await asyncio.to_thread(self._write_sync, filepath, stamped.model_dump(mode="json"))
        except OSError as e:
            logger.exception("Failed to write session %s", session.session_id)
            raise PersistenceError(f"Could not save session {session.session_id}.") from e
        return stamped

    async def create(self, session: ChatSession) -> ChatSession:
        return await self._write(session, must_not_exist=True)

    async def save(self, session: ChatSession) -> ChatSession:
        return await self._write(session, must_not_exist=False)

    async def get(self, session_id: str) -> ChatSession | None:
        filepath = self._path_for(session_id)
        if filepath is None:
            return None

        def _read():
            if not filepath.exists():
                return None
            with open(filepath) as f:
                return json.load(f)

        try:
            data = await asyncio.to_thread(_read)
        except json.JSONDecodeError:
            logger.warning("Corrupt session file: %s", filepath)
            return None
        except OSError as e:
            raise PersistenceError(f"Could not read session {session_id}.") from e
        if data is None:
            return None
        try:
            return ChatSession.model_validate(data)
        except PydanticValidationError:
            logger.warning("Invalid session file: %s", filepath)
            return None

    async def _scan(self, field: str, value: str) -> list[ChatSession]:

        def _read_all():
            matches = []
            for filepath in self.sessions_dir.glob("*.json"):
                resolved = filepath.resolve()
                if not resolved.is_relative_to(self.sessions_dir):
                    continue
                try:
                    with open(resolved) as f:
                        data = json.load(f)
                except (json.JSONDecodeError, OSError):
                    logger.warning("Skipping corrupt session file: %s", resolved)
                    continue
                if not isinstance(data, dict):
                    logger.warning("Skipping invalid session file: %s", resolved)
                    continue
                if data.get(field) == value:
                    matches.append((resolved, data))
            return matches

        rows = await asyncio.to_thread(_read_all)
        sessions = []
        for filepath, row in rows:
            try:
                sessions.append(ChatSession.model_validate(row))
            except PydanticValidationError:
                logger.warning("Skipping invalid session file: %s", filepath)
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    async def list_for_student(self, student_id: str) -> list[ChatSession]:
        return await self._scan("student_id", student_id)

    async def list_for_volunteer(self, volunteer_id: str) -> list[ChatSession]:
        return await self._scan("volunteer_id", volunteer_id)
