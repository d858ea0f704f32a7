"""WebSocket chat handler: one ``WebSocketSession`` per connected client.

The main entry point is ``websocket_chat()``, which is mounted as
``/ws/chat`` by server.py. Every inbound frame is ``{"type": <event>, ...}``;
the session validates it and forwards it to the shared ``ChatEngine``.
"""

import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from .chat_engine import ChatEngine
from .errors import ChatError
from .events import (
    EndChat,
    EscalateChat,
    SendMessage,
    SkipChat,
    StudentRequestChat,
    VolunteerAcceptChat,
    VolunteerOffline,
    VolunteerOnline,
    parse_event,
)
from .ws_constants import (
    ERR_INTERNAL,
    ERR_MALFORMED,
    ERR_UNKNOWN_EVENT,
    MSG_END_CHAT,
    MSG_ERROR,
    MSG_ESCALATE_CHAT,
    MSG_SEND_MESSAGE,
    MSG_SKIP_CHAT,
    MSG_STUDENT_REQUEST_CHAT,
    MSG_VOLUNTEER_ACCEPT_CHAT,
    MSG_VOLUNTEER_OFFLINE,
    MSG_VOLUNTEER_ONLINE,
)

logger = logging.getLogger(__name__)


class WebSocketSession:
    """Holds the state of a single WebSocket connection.

    Each event type is handled by a ``handle_<type>`` method, keeping the
    main loop thin and each handler focused on one concern. The session
    itself is the connection handle the engine stores in presence and
    queue entries.
    """

    def __init__(self, websocket: WebSocket, *, engine: ChatEngine):
        self.ws = websocket
        self.engine = engine
        self._ws_alive = True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def safe_send(self, data: dict) -> bool:
        """Send JSON to client, return False if disconnected."""
        if not self._ws_alive:
            return False
        try:
            await self.ws.send_json(data)
            return True
        except (WebSocketDisconnect, RuntimeError):
            self._ws_alive = False
            return False

    async def send_error(self, code: str, message: str) -> None:
        await self.safe_send({"type": MSG_ERROR, "code": code, "message": message})

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def handle_volunteer_online(self, msg: dict) -> None:
        event = parse_event(VolunteerOnline, msg)
        await self.engine.volunteer_online(event.volunteer_id, event.name, self)

    async def handle_volunteer_offline(self, msg: dict) -> None:
        event = parse_event(VolunteerOffline, msg)
        await self.engine.volunteer_offline(event.volunteer_id)

    async def handle_student_request_chat(self, msg: dict) -> None:
        event = parse_event(StudentRequestChat, msg)
        await self.engine.request_chat(
            event.student_id,
            event.risk_level,
            student_name=event.student_name,
            screening_id=event.screening_id,
            connection=self,
        )

    async def handle_send_message(self, msg: dict) -> None:
        event = parse_event(SendMessage, msg)
        await self.engine.send_message(event.session_id, event.sender, event.sender_name, event.text)

    async def handle_volunteer_accept_chat(self, msg: dict) -> None:
        event = parse_event(VolunteerAcceptChat, msg)
        await self.engine.accept_chat(event.volunteer_id, event.session_id, event.volunteer_name)

    async def handle_escalate_chat(self, msg: dict) -> None:
        event = parse_event(EscalateChat, msg)
        await self.engine.escalate_chat(event.session_id, event.reason)

    async def handle_end_chat(self, msg: dict) -> None:
        event = parse_event(EndChat, msg)
        await self.engine.end_chat(event.session_id, event.volunteer_id, event.notes)

    async def handle_skip_chat(self, msg: dict) -> None:
        event = parse_event(SkipChat, msg)
        await self.engine.skip_chat(event.session_id)

    # ------------------------------------------------------------------
    # Main loop & cleanup
    # ------------------------------------------------------------------

    # Dispatch table: event type -> handler method name
    _HANDLERS = {
        MSG_VOLUNTEER_ONLINE: "handle_volunteer_online",
        MSG_VOLUNTEER_OFFLINE: "handle_volunteer_offline",
        MSG_STUDENT_REQUEST_CHAT: "handle_student_request_chat",
        MSG_SEND_MESSAGE: "handle_send_message",
        MSG_VOLUNTEER_ACCEPT_CHAT: "handle_volunteer_accept_chat",
        MSG_ESCALATE_CHAT: "handle_escalate_chat",
        MSG_END_CHAT: "handle_end_chat",
        MSG_SKIP_CHAT: "handle_skip_chat",
    }

    async def dispatch(self, msg: dict) -> None:
        msg_type = msg.get("type")
        if not msg_type:
            await self.send_error(ERR_MALFORMED, "Missing message type.")
            return
        if not isinstance(msg_type, str):
            await self.send_error(ERR_MALFORMED, "Message type must be a string.")
            return

        handler_name = self._HANDLERS.get(msg_type)
        if not handler_name:
            await self.send_error(ERR_UNKNOWN_EVENT, f"Unknown message type: {msg_type}")
            return

        try:
            await getattr(self, handler_name)(msg)
        except ChatError as e:
            logger.info("Rejected %s: %s", msg_type, e.message)
            await self.safe_send(e.to_event())
        except Exception:
            logger.exception("Unexpected error handling message type=%s", msg_type)
            await self.send_error(ERR_INTERNAL, "An internal error occurred.")

    async def run(self) -> None:
        """Main message loop — dispatches to handler methods."""
        try:
            while True:
                data = await self.ws.receive_text()

                try:
                    msg = json.loads(data)
                except (json.JSONDecodeError, ValueError) as e:
                    logger.warning("Malformed JSON from client: %s", e)
                    await self.send_error(ERR_MALFORMED, "Invalid message format.")
                    continue
                if not isinstance(msg, dict):
                    await self.send_error(ERR_MALFORMED, "Invalid message format.")
                    continue

                await self.dispatch(msg)
        except (WebSocketDisconnect, RuntimeError):
            pass
        finally:
            self._ws_alive = False

    async def cleanup(self) -> None:
        """Release presence and queue entries held by this connection."""
        try:
            await self.engine.disconnect(self)
        except Exception:
            logger.exception("engine disconnect failed during cleanup")


# ------------------------------------------------------------------
# FastAPI endpoint — this is what server.py mounts at /ws/chat
# ------------------------------------------------------------------

async def websocket_chat(websocket: WebSocket, *, engine: ChatEngine) -> None:
    """WebSocket endpoint handler for /ws/chat."""
    await websocket.accept()
    session = WebSocketSession(websocket, engine=engine)
    engine.hub.attach(session)
    try:
        await session.run()
    finally:
        await session.cleanup()
