"""Pairs waiting students with free volunteers.

The matcher only touches in-memory state (presence, queue, pending offers).
It never creates or transitions a ``ChatSession``: an offer becomes a chat
only when the volunteer accepts, which the engine persists.

All methods are synchronous and must be called with the engine's state lock
held, so two concurrent match runs can never hand out the same volunteer or
the same queue entry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .chat_session import RiskLevel, utcnow
from .errors import InvalidTransition, NotFound
from .presence import PresenceEntry, PresenceRegistry
from .waiting_queue import QueueEntry, WaitingQueue

logger = logging.getLogger(__name__)


@dataclass
class Offer:
    entry: QueueEntry
    volunteer_id: str
    offered_at: datetime


@dataclass
class Match:
    volunteer: PresenceEntry
    entry: QueueEntry
    wait_time: int

    @property
    def session_id(self) -> str:
        return self.entry.session_id

    @property
    def student_name(self) -> str:
        return self.entry.student_name

    @property
    def risk_level(self) -> RiskLevel:
        return self.entry.risk_level


@dataclass
class Claim:
    """What ``claim`` took, so a failed store write can be undone."""
    volunteer_id: str
    session_id: str
    entry: QueueEntry | None


class Matcher:
    def __init__(
        self,
        presence: PresenceRegistry,
        queue: WaitingQueue,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.presence = presence
        self.queue = queue
        self._clock = clock
        self._offers: dict[str, Offer] = {}

    def pending_offer(self, session_id: str) -> Offer | None:
        return self._offers.get(session_id)

    def offers_for(self, volunteer_id: str) -> list[Offer]:
        return [o for o in self._offers.values() if o.volunteer_id == volunteer_id]

    def offers_from(self, connection) -> list[Offer]:
        """Pending offers whose student is on ``connection``."""
        return [o for o in self._offers.values() if o.entry.connection is connection]

    def try_match_all(self) -> list[Match]:
        """Offer queued students to free volunteers until either runs out."""
        matches: list[Match] = []
        while len(self.queue):
            volunteer = next(self.presence.list_free(), None)
            if volunteer is None:
                break
            entry = self.queue.dequeue_next()
            now = self._clock()
            self.presence.set_busy(volunteer.volunteer_id, True, session_id=entry.session_id)
            self._offers[entry.session_id] = Offer(
                entry=entry, volunteer_id=volunteer.volunteer_id, offered_at=now
            )
            matches.append(Match(volunteer=volunteer, entry=entry, wait_time=entry.wait_seconds(now)))
            logger.info(
                "Matched: %s (%s) <-> %s",
                entry.student_name, entry.session_id, volunteer.name,
            )
        return matches

    def claim(self, volunteer_id: str, session_id: str) -> Claim:
        """Reserve ``volunteer_id`` for ``session_id`` at accept time.

        Presence is re-validated here because the volunteer may have gone
        offline between the offer and the accept.
        """
        volunteer = self.presence.get(volunteer_id)
        if volunteer is None:
            offer = self._offers.get(session_id)
            if offer is not None and offer.volunteer_id == volunteer_id:
                del self._offers[session_id]
                self.queue.requeue_front(offer.entry)
                logger.info("Volunteer %s gone before accepting %s; student requeued",
                            volunteer_id, session_id)
            raise NotFound(f"Volunteer {volunteer_id} is not online.")
        if volunteer.busy and volunteer.session_id != session_id:
            raise InvalidTransition(
                f"Volunteer {volunteer_id} is already busy with session {volunteer.session_id}."
            )
        if session_id not in self._offers and session_id not in self.queue:
            raise InvalidTransition(f"Session {session_id} is no longer waiting for a volunteer.")

        offer = self._offers.pop(session_id, None)
        queued = self.queue.remove_by_session(session_id)
        if offer is not None and offer.volunteer_id != volunteer_id:
            # Someone else accepted the request offered to this volunteer
            self.release_session(offer.volunteer_id, session_id)
        self.presence.set_busy(volunteer_id, True, session_id=session_id)
        entry = offer.entry if offer is not None else queued
        return Claim(volunteer_id=volunteer_id, session_id=session_id, entry=entry)

    def rollback(self, claim: Claim) -> None:
        """Undo ``claim`` after the accept could not be persisted."""
        self.release_session(claim.volunteer_id, claim.session_id)
        if claim.entry is not None and claim.session_id not in self.queue:
            self.queue.requeue_front(claim.entry)

    def withdraw(self, session_id: str) -> Offer | None:
        """Drop a pending offer and free the volunteer it was made to."""
        offer = self._offers.pop(session_id, None)
        if offer is not None:
            self.release_session(offer.volunteer_id, session_id)
        return offer

    def release_volunteer(self, volunteer_id: str) -> list[QueueEntry]:
        """Hand every offer made to ``volunteer_id`` back to the queue head."""
        returned = []
        # Reverse so the earliest offer ends up first in the queue
        for offer in reversed(self.offers_for(volunteer_id)):
            del self._offers[offer.entry.session_id]
            self.queue.requeue_front(offer.entry)
            returned.append(offer.entry)
        return returned

    def release_session(self, volunteer_id: str | None, session_id: str) -> bool:
        """Free ``volunteer_id`` if it is still reserved for ``session_id``."""
        if volunteer_id is None:
            return False
        volunteer = self.presence.get(volunteer_id)
        if volunteer is None or volunteer.session_id != session_id:
            return False
        return self.presence.set_busy(volunteer_id, False)
