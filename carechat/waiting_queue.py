from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .chat_session import RiskLevel, utcnow
from .errors import ValidationError

POLICY_FIFO = "fifo"
POLICY_RISK = "risk"
QUEUE_POLICIES = (POLICY_FIFO, POLICY_RISK)


@dataclass
class QueueEntry:
    session_id: str
    student_id: str
    student_name: str
    risk_level: RiskLevel
    connection: Any = None
    enqueued_at: datetime = field(default_factory=utcnow)

    def wait_seconds(self, now: datetime) -> int:
        return max(0, int((now - self.enqueued_at).total_seconds()))

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "student_id": self.student_id,
            "student_name": self.student_name,
            "risk_level": self.risk_level.value,
            "enqueued_at": self.enqueued_at.isoformat(),
        }


class WaitingQueue:
    """Students waiting for a volunteer, in arrival order.

    Entries are always stored in arrival order (or at the head, when an entry
    is handed back after a failed match). The policy only decides which entry
    ``peek_next``/``dequeue_next`` select:

    - ``fifo``: the head of the queue.
    - ``risk``: the highest risk level; ties go to the entry nearest the head.
    """

    def __init__(self, policy: str = POLICY_FIFO):
        if policy not in QUEUE_POLICIES:
            raise ValueError(f"Unknown queue policy {policy!r}; expected one of {QUEUE_POLICIES}")
        self.policy = policy
        self._entries: "OrderedDict[str, QueueEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._entries

    def enqueue(self, entry: QueueEntry) -> None:
        if entry.session_id in self._entries:
            raise ValidationError(f"Session {entry.session_id} is already waiting.")
        self._entries[entry.session_id] = entry

    def requeue_front(self, entry: QueueEntry) -> None:
        """Put an entry back at the head, keeping its original arrival time."""
        self._entries[entry.session_id] = entry
        self._entries.move_to_end(entry.session_id, last=False)

    def remove_by_session(self, session_id: str) -> QueueEntry | None:
        return self._entries.pop(session_id, None)

    def peek_next(self) -> QueueEntry | None:
        if not self._entries:
            return None
        if self.policy == POLICY_RISK:
            best = None
            for entry in self._entries.values():
                if best is None or entry.risk_level.rank > best.risk_level.rank:
                    best = entry
            return best
        return next(iter(self._entries.values()))

    def dequeue_next(self) -> QueueEntry | None:
        entry = self.peek_next()
        if entry is not None:
            del self._entries[entry.session_id]
        return entry

    def get(self, session_id: str) -> QueueEntry | None:
        return self._entries.get(session_id)

    def entries(self) -> list[QueueEntry]:
        return list(self._entries.values())

    def find_by_connection(self, connection: Any) -> list[QueueEntry]:
        return [e for e in self._entries.values() if e.connection is connection]

    def expire_older_than(self, cutoff: datetime) -> list[QueueEntry]:
        """Remove and return every entry enqueued before ``cutoff``."""
        expired = [e for e in self._entries.values() if e.enqueued_at < cutoff]
        for entry in expired:
            del self._entries[entry.session_id]
        return expired
