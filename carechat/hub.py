"""Routes outbound events to connected students and volunteers.

A connection is any object with ``async safe_send(dict) -> bool`` -- in
production the per-socket ``WebSocketSession``. The hub maps participant
ids to their connections and knows every live connection for broadcasts.
"""

import logging
from collections import defaultdict
from typing import Any

logger = logging.getLogger(__name__)

ROLE_STUDENT = "student"
ROLE_VOLUNTEER = "volunteer"


class ConnectionHub:
    def __init__(self):
        self._connections: list[Any] = []
        self._routes: dict[tuple[str, str], list[Any]] = defaultdict(list)

    def attach(self, connection: Any) -> None:
        if connection not in self._connections:
            self._connections.append(connection)

    def detach(self, connection: Any) -> None:
        """Forget a connection everywhere (socket closed)."""
        if connection in self._connections:
            self._connections.remove(connection)
        for key in list(self._routes):
            conns = self._routes[key]
            if connection in conns:
                conns.remove(connection)
            if not conns:
                del self._routes[key]

    def bind(self, role: str, participant_id: str, connection: Any) -> None:
        conns = self._routes[(role, participant_id)]
        if connection not in conns:
            conns.append(connection)

    def unbind(self, role: str, participant_id: str, connection: Any = None) -> None:
        key = (role, participant_id)
        if key not in self._routes:
            return
        if connection is None:
            del self._routes[key]
            return
        conns = self._routes[key]
        if connection in conns:
            conns.remove(connection)
        if not conns:
            del self._routes[key]

    def connections_for(self, role: str, participant_id: str) -> list[Any]:
        return list(self._routes.get((role, participant_id), ()))

    @staticmethod
    async def send_to(connection: Any, payload: dict) -> bool:
        if connection is None:
            return False
        delivered = await connection.safe_send(payload)
        if not delivered:
            logger.debug("Dropped %s: connection closed", payload.get("type"))
        return delivered

    async def send(self, role: str, participant_id: str | None, payload: dict) -> int:
        """Send to every connection bound to a participant. Returns deliveries."""
        if participant_id is None:
            return 0
        delivered = 0
        for connection in self.connections_for(role, participant_id):
            if await self.send_to(connection, payload):
                delivered += 1
        return delivered

    async def broadcast(self, payload: dict) -> int:
        delivered = 0
        for connection in list(self._connections):
            if await self.send_to(connection, payload):
                delivered += 1
        return delivered
