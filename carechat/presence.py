import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterator

from .chat_session import utcnow

logger = logging.getLogger(__name__)


@dataclass
class PresenceEntry:
    volunteer_id: str
    name: str
    connection: Any
    busy: bool = False
    online_since: datetime = field(default_factory=utcnow)
    # Session the volunteer is reserved for (pending offer) or chatting in
    session_id: str | None = None


class PresenceRegistry:
    """Volunteers currently online and whether each is free.

    Methods are synchronous and never await; callers that need several
    operations to be atomic together hold the engine's state lock.
    """

    def __init__(self):
        self._entries: dict[str, PresenceEntry] = {}
        self._observers: list[Callable[[int], None]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, volunteer_id: str) -> bool:
        return volunteer_id in self._entries

    @property
    def count(self) -> int:
        return len(self._entries)

    def subscribe(self, callback: Callable[[int], None]) -> None:
        """Register a callback invoked with the new count on every add/remove."""
        self._observers.append(callback)

    def _notify(self) -> None:
        count = len(self._entries)
        for callback in list(self._observers):
            try:
                callback(count)
            except Exception:
                logger.exception("Volunteer-count observer failed")

    def set_online(self, volunteer_id: str, name: str, connection: Any) -> PresenceEntry:
        """Register (or replace) a volunteer as free."""
        entry = PresenceEntry(volunteer_id=volunteer_id, name=name, connection=connection)
        replaced = self._entries.get(volunteer_id)
        self._entries[volunteer_id] = entry
        if replaced is not None:
            logger.info("Volunteer %s re-registered (was busy=%s)", volunteer_id, replaced.busy)
        self._notify()
        return entry

    def set_offline(self, volunteer_id: str) -> PresenceEntry | None:
        """Remove a volunteer unconditionally, even mid-chat."""
        entry = self._entries.pop(volunteer_id, None)
        if entry is not None:
            if entry.busy:
                logger.info(
                    "Volunteer %s went offline while holding session %s",
                    volunteer_id, entry.session_id,
                )
            self._notify()
        return entry

    def set_busy(self, volunteer_id: str, busy: bool, session_id: str | None = None) -> bool:
        """Toggle availability. Returns False if the volunteer is not online."""
        entry = self._entries.get(volunteer_id)
        if entry is None:
            return False
        entry.busy = busy
        entry.session_id = session_id if busy else None
        return True

    def get(self, volunteer_id: str) -> PresenceEntry | None:
        return self._entries.get(volunteer_id)

    def list_free(self) -> Iterator[PresenceEntry]:
        """Yield free volunteers in registration order.

        Each call starts a fresh scan over a snapshot of the registry, so the
        generator stays finite even if entries change while it is consumed;
        an entry that turned busy in the meantime is skipped.
        """
        for entry in list(self._entries.values()):
            if not entry.busy and self._entries.get(entry.volunteer_id) is entry:
                yield entry

    def find_by_connection(self, connection: Any) -> list[PresenceEntry]:
        return [e for e in self._entries.values() if e.connection is connection]

    def snapshot(self) -> list[dict]:
        return [
            {
                "volunteer_id": e.volunteer_id,
                "name": e.name,
                "busy": e.busy,
                "session_id": e.session_id,
                "online_since": e.online_since.isoformat(),
            }
            for e in self._entries.values()
        ]
