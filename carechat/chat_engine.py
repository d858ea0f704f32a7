"""Chat engine: applies client commands to presence, queue and sessions.

Locking:

- ``_state_lock`` guards the presence registry, the waiting queue and the
  matcher's offers. Sections under it never await I/O.
- A per-session lock serializes transitions of one session. Store I/O runs
  under the session lock only, so a slow write delays that session alone.
- Lock order is always session lock, then state lock.

Reservations that have to exist before a write (accept, skip) are taken
first and rolled back if the store raises ``PersistenceError``. Releases
(escalate, end) are applied only after the write succeeded.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from .chat_session import ChatMessage, ChatSession, RiskLevel, SenderRole, utcnow
from .errors import ChatError, NotFound, PersistenceError, ValidationError
from .hub import ROLE_STUDENT, ROLE_VOLUNTEER, ConnectionHub
from .matcher import Match, Matcher
from .presence import PresenceEntry, PresenceRegistry
from .session_store import SessionStore
from .volunteer_stats import VolunteerStats
from .waiting_queue import POLICY_FIFO, QueueEntry, WaitingQueue
from .ws_constants import (
    END_REASON_SKIPPED,
    END_REASON_STUDENT_LEFT,
    END_REASON_WAIT_TIMEOUT,
    MSG_CHAT_ENDED,
    MSG_CHAT_ESCALATED,
    MSG_CHAT_STATUS,
    MSG_NEW_CHAT_REQUEST,
    MSG_RECEIVE_MESSAGE,
    MSG_STUDENT_JOINED,
    MSG_VOLUNTEER_COUNT,
    MSG_VOLUNTEER_JOINED,
    MSG_WAIT_TIMEOUT,
)

logger = logging.getLogger(__name__)

SWEEP_INTERVAL = 30  # seconds


@dataclass
class _SessionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _sweep_task_done_callback(task: asyncio.Task):
    """Log exceptions from the sweep task instead of silently swallowing."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Queue sweep task failed: %s", exc, exc_info=exc)


class ChatEngine:
    def __init__(
        self,
        store: SessionStore,
        *,
        hub: ConnectionHub | None = None,
        stats: VolunteerStats | None = None,
        queue_policy: str = POLICY_FIFO,
        wait_timeout: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.hub = hub or ConnectionHub()
        self.stats = stats
        self.wait_timeout = wait_timeout
        self._clock = clock

        self.presence = PresenceRegistry()
        self.queue = WaitingQueue(policy=queue_policy)
        self.matcher = Matcher(self.presence, self.queue, clock=clock)

        self._state_lock = asyncio.Lock()
        self._session_locks: dict[str, _SessionLock] = {}
        self._pending_counts: list[int] = []
        self._count_lock = asyncio.Lock()
        self._sweep_task: asyncio.Task | None = None

        self.presence.subscribe(self._pending_counts.append)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _session_lock(self, session_id: str):
        """Hold the lock of one session; it is dropped once nobody uses it."""
        entry = self._session_locks.get(session_id)
        if entry is None:
            entry = self._session_locks[session_id] = _SessionLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._session_locks[session_id]

    async def _load(self, session_id: str) -> ChatSession:
        session = await self.store.get(session_id)
        if session is None:
            raise NotFound(f"Chat session {session_id} not found.")
        return session

    async def _flush_counts(self) -> None:
        # One flusher at a time so every connection sees the counts in order
        async with self._count_lock:
            while self._pending_counts:
                count = self._pending_counts.pop(0)
                await self.hub.broadcast({
                    "type": MSG_VOLUNTEER_COUNT,
                    "count": count,
                    "timestamp": self._clock().isoformat(),
                })

    async def _announce_matches(self, matches: list[Match]) -> None:
        for match in matches:
            await self.hub.send_to(match.volunteer.connection, {
                "type": MSG_NEW_CHAT_REQUEST,
                "sessionId": match.session_id,
                "studentName": match.student_name,
                "riskLevel": match.risk_level.value,
                "waitTime": match.wait_time,
            })

    async def _rematch(self) -> None:
        async with self._state_lock:
            matches = self.matcher.try_match_all()
        await self._announce_matches(matches)

    async def _notify_participants(self, session: ChatSession, payload: dict) -> None:
        await self.hub.send(ROLE_STUDENT, session.student_id, payload)
        await self.hub.send(ROLE_VOLUNTEER, session.volunteer_id, payload)

    @property
    def online_count(self) -> int:
        return self.presence.count

    def queue_snapshot(self) -> dict:
        return {
            "policy": self.queue.policy,
            "size": len(self.queue),
            "entries": [e.to_dict() for e in self.queue.entries()],
        }

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    async def volunteer_online(self, volunteer_id: str, name: str, connection: Any) -> PresenceEntry:
        async with self._state_lock:
            # A re-registering volunteer gives back any offer it was holding
            self.matcher.release_volunteer(volunteer_id)
            entry = self.presence.set_online(volunteer_id, name, connection)
            matches = self.matcher.try_match_all()
        self.hub.bind(ROLE_VOLUNTEER, volunteer_id, connection)
        logger.info("Volunteer online: %s (%s)", name, volunteer_id)
        await self._flush_counts()
        await self._announce_matches(matches)
        return entry

    async def volunteer_offline(self, volunteer_id: str) -> PresenceEntry | None:
        async with self._state_lock:
            entry = self.presence.set_offline(volunteer_id)
            returned = self.matcher.release_volunteer(volunteer_id)
            matches = self.matcher.try_match_all() if returned else []
        if entry is not None:
            self.hub.unbind(ROLE_VOLUNTEER, volunteer_id, entry.connection)
            logger.info("Volunteer offline: %s", volunteer_id)
        await self._flush_counts()
        await self._announce_matches(matches)
        return entry

    async def disconnect(self, connection: Any) -> None:
        """Release everything a closed connection held. Sessions are left as they are."""
        async with self._state_lock:
            gone = self.presence.find_by_connection(connection)
            for entry in gone:
                self.presence.set_offline(entry.volunteer_id)
                self.matcher.release_volunteer(entry.volunteer_id)
            abandoned = self.queue.find_by_connection(connection)
            for entry in abandoned:
                self.queue.remove_by_session(entry.session_id)
            withdrawn = []
            for offer in self.matcher.offers_from(connection):
                self.matcher.withdraw(offer.entry.session_id)
                withdrawn.append(offer)
                abandoned.append(offer.entry)
            matches = self.matcher.try_match_all()
        self.hub.detach(connection)
        for entry in gone:
            logger.info("Volunteer disconnected: %s (%s)", entry.name, entry.volunteer_id)
        for entry in abandoned:
            logger.info("Student left the queue: %s (session %s)", entry.student_name, entry.session_id)
        for offer in withdrawn:
            await self.hub.send(ROLE_VOLUNTEER, offer.volunteer_id, {
                "type": MSG_CHAT_ENDED,
                "sessionId": offer.entry.session_id,
                "reason": END_REASON_STUDENT_LEFT,
                "message": "The student disconnected before the chat started",
            })
        await self._flush_counts()
        await self._announce_matches(matches)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def request_chat(
        self,
        student_id: str,
        risk_level: RiskLevel | str,
        *,
        student_name: str = "Anonymous",
        screening_id: str | None = None,
        connection: Any = None,
    ) -> ChatSession:
        now = self._clock()
        session = ChatSession(
            student_id=student_id,
            student_name=student_name,
            screening_id=screening_id,
            risk_level=RiskLevel(risk_level),
            created_at=now,
            updated_at=now,
        )
        session = await self.store.create(session)
        if connection is not None:
            self.hub.bind(ROLE_STUDENT, student_id, connection)

        async with self._state_lock:
            self.queue.enqueue(QueueEntry(
                session_id=session.session_id,
                student_id=student_id,
                student_name=student_name,
                risk_level=session.risk_level,
                connection=connection,
                enqueued_at=now,
            ))
            matches = self.matcher.try_match_all()

        logger.info("Student waiting for chat: %s (session %s, risk %s)",
                    student_name, session.session_id, session.risk_level.value)
        await self.hub.send_to(connection, {
            "type": MSG_CHAT_STATUS,
            "status": session.status.value,
            "message": "Looking for a volunteer...",
            "sessionId": session.session_id,
        })
        await self._announce_matches(matches)
        return session

    async def send_message(
        self, session_id: str, sender: SenderRole | str, sender_name: str, text: str
    ) -> ChatMessage:
        async with self._session_lock(session_id):
            session = await self._load(session_id)
            updated = session.add_message(SenderRole(sender), sender_name, text, self._clock())
            updated = await self.store.save(updated)

        message = updated.messages[-1]
        await self._notify_participants(updated, {
            "type": MSG_RECEIVE_MESSAGE,
            "sessionId": session_id,
            "sender": message.sender.value,
            "senderName": message.sender_name,
            "text": message.text,
            "timestamp": message.timestamp.isoformat(),
        })
        return message

    async def accept_chat(
        self, volunteer_id: str, session_id: str, volunteer_name: str | None = None
    ) -> ChatSession:
        async with self._session_lock(session_id):
            session = await self._load(session_id)
            if not volunteer_name:
                present = self.presence.get(volunteer_id)
                volunteer_name = present.name if present else None
            # Guard the transition before reserving anything
            accepted = session.accept(volunteer_id, volunteer_name, self._clock())

            try:
                async with self._state_lock:
                    claim = self.matcher.claim(volunteer_id, session_id)
            except NotFound:
                # The offer may have gone back to the queue; hand it out again
                await self._rematch()
                raise

            try:
                accepted = await self.store.save(accepted)
            except PersistenceError:
                async with self._state_lock:
                    self.matcher.rollback(claim)
                    matches = self.matcher.try_match_all()
                await self._announce_matches(matches)
                raise

        logger.info("Chat accepted: %s <-> %s (session %s)",
                    volunteer_name, accepted.student_name, session_id)
        await self.hub.send(ROLE_STUDENT, accepted.student_id, {
            "type": MSG_VOLUNTEER_JOINED,
            "sessionId": session_id,
            "volunteerName": accepted.volunteer_name,
        })
        await self.hub.send(ROLE_VOLUNTEER, volunteer_id, {
            "type": MSG_STUDENT_JOINED,
            "sessionId": session_id,
            "studentName": accepted.student_name or "Anonymous",
            "riskLevel": accepted.risk_level.value,
        })
        return accepted

    async def escalate_chat(self, session_id: str, reason: str) -> ChatSession:
        async with self._session_lock(session_id):
            session = await self._load(session_id)
            escalated = session.escalate(reason, self._clock())
            escalated = await self.store.save(escalated)

        async with self._state_lock:
            self.matcher.release_session(escalated.volunteer_id, session_id)
            matches = self.matcher.try_match_all()

        logger.info("Chat escalated: %s (%s)", session_id, reason)
        if self.stats and escalated.volunteer_id:
            try:
                await self.stats.record_escalation(escalated.volunteer_id)
            except Exception:
                logger.exception("Failed to record escalation for volunteer %s", escalated.volunteer_id)

        await self.hub.send(ROLE_STUDENT, escalated.student_id, {
            "type": MSG_CHAT_ESCALATED,
            "sessionId": session_id,
            "reason": reason,
            "message": "Your case has been escalated to a psychologist",
        })
        await self.hub.send(ROLE_VOLUNTEER, escalated.volunteer_id, {
            "type": MSG_CHAT_ESCALATED,
            "sessionId": session_id,
            "reason": reason,
            "message": "Chat escalated to psychologist",
        })
        await self._announce_matches(matches)
        return escalated

    async def end_chat(
        self, session_id: str, volunteer_id: str | None = None, notes: str | None = None
    ) -> ChatSession:
        async with self._session_lock(session_id):
            session = await self._load(session_id)
            if volunteer_id and session.volunteer_id and volunteer_id != session.volunteer_id:
                raise ValidationError(
                    f"Volunteer {volunteer_id} is not part of session {session_id}."
                )
            ended = session.end(self._clock(), notes)
            ended = await self.store.save(ended)

        async with self._state_lock:
            self.matcher.release_session(ended.volunteer_id, session_id)
            matches = self.matcher.try_match_all()

        logger.info("Chat ended: %s (%ss)", session_id, ended.duration)
        if self.stats and ended.volunteer_id:
            try:
                await self.stats.record_chat_handled(ended.volunteer_id, ended.duration)
            except Exception:
                logger.exception("Failed to record chat stats for volunteer %s", ended.volunteer_id)

        await self._notify_participants(ended, {
            "type": MSG_CHAT_ENDED,
            "sessionId": session_id,
            "duration": ended.duration,
            "message": "Chat session has ended",
        })
        await self._announce_matches(matches)
        return ended

    async def skip_chat(self, session_id: str) -> ChatSession:
        """Withdraw a waiting request: out of the queue, session ended as skipped."""
        async with self._session_lock(session_id):
            session = await self._load(session_id)
            withdrawn = session.withdraw(self._clock(), END_REASON_SKIPPED)

            async with self._state_lock:
                entry = self.queue.remove_by_session(session_id)
                offer = self.matcher.withdraw(session_id)

            try:
                withdrawn = await self.store.save(withdrawn)
            except PersistenceError:
                restored = entry or (offer.entry if offer else None)
                async with self._state_lock:
                    if restored is not None and session_id not in self.queue:
                        self.queue.requeue_front(restored)
                    matches = self.matcher.try_match_all()
                await self._announce_matches(matches)
                raise

        logger.info("Chat request skipped: %s", session_id)
        payload = {
            "type": MSG_CHAT_ENDED,
            "sessionId": session_id,
            "reason": END_REASON_SKIPPED,
            "message": "Chat request was withdrawn",
        }
        await self.hub.send(ROLE_STUDENT, withdrawn.student_id, payload)
        if offer is not None:
            await self.hub.send(ROLE_VOLUNTEER, offer.volunteer_id, payload)
        await self._rematch()
        return withdrawn

    # ------------------------------------------------------------------
    # Wait timeout
    # ------------------------------------------------------------------

    async def expire_waiting(self) -> list[str]:
        """End every queued request older than ``wait_timeout`` seconds."""
        if self.wait_timeout <= 0:
            return []
        now = self._clock()
        cutoff = now - timedelta(seconds=self.wait_timeout)
        async with self._state_lock:
            expired = self.queue.expire_older_than(cutoff)

        expired_ids: list[str] = []
        failed: list[QueueEntry] = []
        for entry in expired:
            try:
                async with self._session_lock(entry.session_id):
                    session = await self._load(entry.session_id)
                    withdrawn = session.withdraw(now, END_REASON_WAIT_TIMEOUT)
                    await self.store.save(withdrawn)
            except PersistenceError:
                logger.exception("Could not expire session %s; keeping it queued", entry.session_id)
                failed.append(entry)
                continue
            except ChatError as e:
                logger.warning("Dropping stale queue entry %s: %s", entry.session_id, e)
                continue
            expired_ids.append(entry.session_id)
            logger.info("Queue wait timeout: %s after %ss", entry.session_id, entry.wait_seconds(now))
            await self.hub.send(ROLE_STUDENT, entry.student_id, {
                "type": MSG_WAIT_TIMEOUT,
                "sessionId": entry.session_id,
                "waitTime": entry.wait_seconds(now),
                "message": "No volunteer is available right now. Please try again later.",
            })

        if failed:
            async with self._state_lock:
                for entry in reversed(failed):
                    self.queue.requeue_front(entry)
        return expired_ids

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(SWEEP_INTERVAL)
            try:
                await self.expire_waiting()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Queue sweep iteration failed")

    def start(self):
        if self._sweep_task is None and self.wait_timeout > 0:
            self._sweep_task = asyncio.ensure_future(self._sweep_loop())
            self._sweep_task.add_done_callback(_sweep_task_done_callback)

    async def stop(self):
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
