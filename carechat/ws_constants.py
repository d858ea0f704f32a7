"""WebSocket protocol constants: event types and error codes.

Pure data module -- no imports, no logic. Safe to import from any carechat
module without risk of circular dependencies.
"""

# ── Client -> Server event types ──────────────────────────────────────

MSG_VOLUNTEER_ONLINE = "volunteer-online"
MSG_VOLUNTEER_OFFLINE = "volunteer-offline"
MSG_STUDENT_REQUEST_CHAT = "student-request-chat"
MSG_SEND_MESSAGE = "send-message"
MSG_VOLUNTEER_ACCEPT_CHAT = "volunteer-accept-chat"
MSG_ESCALATE_CHAT = "escalate-chat"
MSG_END_CHAT = "end-chat"
MSG_SKIP_CHAT = "skip-chat"

# ── Server -> Client event types ──────────────────────────────────────

MSG_CHAT_STATUS = "chat-status"
MSG_NEW_CHAT_REQUEST = "new-chat-request"
MSG_RECEIVE_MESSAGE = "receive-message"
MSG_VOLUNTEER_JOINED = "volunteer-joined"
MSG_STUDENT_JOINED = "student-joined"
MSG_CHAT_ESCALATED = "chat-escalated"
MSG_CHAT_ENDED = "chat-ended"
MSG_VOLUNTEER_COUNT = "volunteer-count"
MSG_WAIT_TIMEOUT = "wait-timeout"
MSG_ERROR = "error"

# ── Error codes (machine-readable, included in MSG_ERROR messages) ────

ERR_VALIDATION = "VALIDATION_ERROR"
ERR_INVALID_TRANSITION = "INVALID_TRANSITION"
ERR_NOT_FOUND = "NOT_FOUND"
ERR_PERSISTENCE = "PERSISTENCE_ERROR"
ERR_UNKNOWN_EVENT = "UNKNOWN_EVENT"
ERR_MALFORMED = "MALFORMED_MESSAGE"
ERR_INTERNAL = "INTERNAL_ERROR"

# ── Session end reasons ───────────────────────────────────────────────

END_REASON_SKIPPED = "skipped"
END_REASON_WAIT_TIMEOUT = "wait-timeout"
END_REASON_STUDENT_LEFT = "student-left"
