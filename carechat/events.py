"""Inbound event payloads.

Each client event is validated into one of these models before the engine
sees it. Wire names are camelCase (``sessionId``); attributes are snake_case.
"""

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .chat_session import RiskLevel, SenderRole
from .errors import ValidationError

Identifier = Annotated[str, Field(min_length=1, max_length=100)]
DisplayName = Annotated[str, Field(min_length=1, max_length=100)]


class _Event(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class VolunteerOnline(_Event):
    volunteer_id: Identifier
    name: DisplayName


class VolunteerOffline(_Event):
    volunteer_id: Identifier


class StudentRequestChat(_Event):
    student_id: Identifier
    risk_level: RiskLevel
    screening_id: str | None = Field(None, max_length=100)
    student_name: str = Field("Anonymous", min_length=1, max_length=100)


class SendMessage(_Event):
    session_id: Identifier
    sender: SenderRole
    sender_name: DisplayName
    text: str = Field(..., min_length=1, max_length=5000)


class VolunteerAcceptChat(_Event):
    volunteer_id: Identifier
    session_id: Identifier
    volunteer_name: str | None = Field(None, max_length=100)


class EscalateChat(_Event):
    session_id: Identifier
    reason: str = Field(..., min_length=1, max_length=1000)


class EndChat(_Event):
    session_id: Identifier
    volunteer_id: str | None = Field(None, max_length=100)
    notes: str | None = Field(None, max_length=5000)


class SkipChat(_Event):
    session_id: Identifier


def parse_event(model: type[_Event], msg: dict) -> _Event:
    """Validate a raw event dict, translating pydantic errors to ``ValidationError``."""
    try:
        return model.model_validate(msg)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid {model.__name__} payload: {problems}") from e
