"""Chat session record and its lifecycle state machine.

A ``ChatSession`` is immutable: every transition returns a new instance and
leaves the receiver untouched, so a failed guard or a failed store write never
leaves a half-applied session behind.

    waiting --accept--> active --escalate--> escalated
       |                  |
       +--withdraw--> ended <--end--+
"""

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .errors import InvalidTransition, ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    ESCALATED = "escalated"
    ENDED = "ended"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class SenderRole(str, Enum):
    STUDENT = "student"
    VOLUNTEER = "volunteer"


# status -> statuses reachable from it
_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.WAITING: frozenset({SessionStatus.ACTIVE, SessionStatus.ENDED}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.ESCALATED, SessionStatus.ENDED}),
    SessionStatus.ESCALATED: frozenset(),
    SessionStatus.ENDED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in _TRANSITIONS.items() if not targets)


class ChatMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    sender: SenderRole
    sender_name: str
    text: str
    timestamp: datetime


class ChatSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str = Field(default_factory=lambda: uuid4().hex)
    student_id: str = Field(..., min_length=1)
    student_name: str | None = None
    screening_id: str | None = None
    risk_level: RiskLevel
    status: SessionStatus = SessionStatus.WAITING
    volunteer_id: str | None = None
    volunteer_name: str | None = None
    messages: tuple[ChatMessage, ...] = ()
    escalation_reason: str | None = None
    volunteer_notes: str | None = None
    end_reason: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration: int | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def escalated(self) -> bool:
        return self.status is SessionStatus.ESCALATED

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, target: SessionStatus, now: datetime, **updates) -> "ChatSession":
        if target not in _TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Cannot move session {self.session_id} from {self.status.value} to {target.value}."
            )
        return self.model_copy(update={"status": target, "updated_at": now, **updates})

    def accept(self, volunteer_id: str, volunteer_name: str | None, now: datetime) -> "ChatSession":
        if not volunteer_id:
            raise ValidationError("volunteerId is required to accept a chat.")
        return self._transition(
            SessionStatus.ACTIVE,
            now,
            volunteer_id=volunteer_id,
            volunteer_name=volunteer_name,
            start_time=self.start_time or now,
        )

    def add_message(
        self, sender: SenderRole, sender_name: str, text: str, now: datetime
    ) -> "ChatSession":
        if self.status is not SessionStatus.ACTIVE:
            raise InvalidTransition(
                f"Cannot send messages while session {self.session_id} is {self.status.value}."
            )
        message = ChatMessage(
            sender=sender, sender_name=sender_name, text=text, timestamp=now
        )
        return self.model_copy(update={"messages": (*self.messages, message), "updated_at": now})

    def escalate(self, reason: str, now: datetime) -> "ChatSession":
        if not reason or not reason.strip():
            raise ValidationError("An escalation reason is required.")
        return self._transition(SessionStatus.ESCALATED, now, escalation_reason=reason)

    def end(self, now: datetime, notes: str | None = None) -> "ChatSession":
        if self.status is not SessionStatus.ACTIVE:
            # waiting -> ended is reserved for withdraw()
            raise InvalidTransition(
                f"Cannot end session {self.session_id} while it is {self.status.value}."
            )
        start = self.start_time or now
        updates = {
            "end_time": now,
            "duration": int((now - start).total_seconds()),
        }
        if notes:
            updates["volunteer_notes"] = notes
        return self._transition(SessionStatus.ENDED, now, **updates)

    def withdraw(self, now: datetime, reason: str) -> "ChatSession":
        """End a session that never left the queue (skip or wait timeout)."""
        if self.status is not SessionStatus.WAITING:
            raise InvalidTransition(
                f"Only waiting sessions can be withdrawn; {self.session_id} is {self.status.value}."
            )
        return self._transition(SessionStatus.ENDED, now, end_time=now, end_reason=reason)
