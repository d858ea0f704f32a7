import asyncio
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)


def _blank_entry() -> dict:
    return {
        "total_chats_handled": 0,
        "todays_chats": 0,
        "total_escalations": 0,
        "total_chat_seconds": 0,
        "avg_chat_duration_seconds": 0.0,
        "last_chat_at": None,
        "stats_date": None,
    }


class VolunteerStats:
    """Per-volunteer counters: chats handled, today's chats, escalations."""

    def __init__(self, filepath: str | Path):
        self.filepath = Path(filepath).resolve()
        self._data: dict[str, dict] = {}
        self._lock = asyncio.Lock()
        self._load_sync()

    def _load_sync(self):
        """Synchronous load — called from __init__ only."""
        if self.filepath.exists():
            try:
                with open(self.filepath) as f:
                    self._data = json.load(f)
            except (json.JSONDecodeError, OSError):
                logger.warning("Corrupt volunteer stats file %s, starting fresh", self.filepath)
                self._data = {}

    def _save_sync(self):
        """Synchronous save — must be called via asyncio.to_thread()."""
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(
            dir=str(self.filepath.parent), suffix=".tmp"
        )
        try:
            with os.fdopen(tmp_fd, "w") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_path, self.filepath)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    async def _save(self):
        await asyncio.to_thread(self._save_sync)

    def _entry_for(self, volunteer_id: str, now: datetime) -> dict:
        entry = {**_blank_entry(), **self._data.get(volunteer_id, {})}
        today = now.date().isoformat()
        # Daily counter resets the first time a volunteer is touched on a new day
        if entry["stats_date"] != today:
            entry["todays_chats"] = 0
            entry["stats_date"] = today
        return entry

    async def record_chat_handled(self, volunteer_id: str, duration_seconds: int | None):
        async with self._lock:
            now = datetime.now()
            entry = self._entry_for(volunteer_id, now)
            entry["total_chats_handled"] += 1
            entry["todays_chats"] += 1
            entry["total_chat_seconds"] += max(0, duration_seconds or 0)
            entry["avg_chat_duration_seconds"] = round(
                entry["total_chat_seconds"] / entry["total_chats_handled"], 1
            )
            entry["last_chat_at"] = now.isoformat()
            self._data[volunteer_id] = entry
            await self._save()

    async def record_escalation(self, volunteer_id: str):
        async with self._lock:
            entry = self._entry_for(volunteer_id, datetime.now())
            entry["total_escalations"] += 1
            self._data[volunteer_id] = entry
            await self._save()

    async def get_all(self) -> dict[str, dict]:
        async with self._lock:
            return dict(self._data)

    async def get(self, volunteer_id: str) -> dict | None:
        async with self._lock:
            entry = self._data.get(volunteer_id)
            if entry is None:
                return None
            return self._entry_for(volunteer_id, datetime.now())
