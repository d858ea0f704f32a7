"""Error taxonomy for chat operations.

Every error carries a machine-readable ``code`` so the WebSocket layer can
report it to the originating connection without inspecting the type.
"""

from .ws_constants import (
    ERR_INTERNAL,
    ERR_INVALID_TRANSITION,
    ERR_NOT_FOUND,
    ERR_PERSISTENCE,
    ERR_VALIDATION,
    MSG_ERROR,
)


class ChatError(Exception):
    code = ERR_INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_event(self) -> dict:
        return {"type": MSG_ERROR, "code": self.code, "message": self.message}


class ValidationError(ChatError):
    """A required field is missing or malformed. Raised before any mutation."""
    code = ERR_VALIDATION


class InvalidTransition(ChatError):
    """A state-machine guard failed. The session is unchanged."""
    code = ERR_INVALID_TRANSITION


class NotFound(ChatError):
    code = ERR_NOT_FOUND


class PersistenceError(ChatError):
    """The session store could not read or write a record."""
    code = ERR_PERSISTENCE
