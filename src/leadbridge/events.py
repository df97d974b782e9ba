"""
Webhook payload validation.

Twilio posts form-encoded bodies; each endpoint turns its body into one typed
event before any state is touched. Anything malformed raises
EventValidationError, which the HTTP layer maps to a 400.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Mapping, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from src.leadbridge.amd import AnsweredBy
from src.leadbridge.records import LegStatus

logger = structlog.get_logger(__name__)


class EventValidationError(ValueError):
    """Raised when a webhook body cannot be turned into an event."""
    pass


_STATUS_ALIASES = {
    "queued": LegStatus.INITIATED.value,
    "answered": LegStatus.IN_PROGRESS.value,
}

_CONFERENCE_ACTIONS = {
    "participant-join": "join",
    "join": "join",
    "participant-leave": "leave",
    "leave": "leave",
}


class _TwilioEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    call_id: str = Field(alias="CallSid", min_length=1)


class LegStatusEvent(_TwilioEvent):
    kind: Literal["leg_status"] = "leg_status"
    status: LegStatus = Field(alias="CallStatus")

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            return _STATUS_ALIASES.get(value, value)
        return value


class AmdEvent(_TwilioEvent):
    kind: Literal["amd"] = "amd"
    answered_by: AnsweredBy = Field(alias="AnsweredBy")

    @field_validator("answered_by", mode="before")
    @classmethod
    def _normalize_answered_by(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class ConferenceEvent(_TwilioEvent):
    kind: Literal["conference"] = "conference"
    room_id: str = Field(alias="FriendlyName", min_length=1)
    action: Literal["join", "leave"] = Field(alias="StatusCallbackEvent")

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _CONFERENCE_ACTIONS.get(value.strip().lower(), value)
        return value


WebhookEvent = Annotated[
    Union[LegStatusEvent, AmdEvent, ConferenceEvent],
    Field(discriminator="kind"),
]

_event_adapter: TypeAdapter = TypeAdapter(WebhookEvent)


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def parse_event(payload: Mapping[str, Any]) -> WebhookEvent:
    """Validate a payload that already carries its `kind` discriminator."""
    try:
        return _event_adapter.validate_python(dict(payload))
    except ValidationError as e:
        raise EventValidationError(_validation_message(e)) from e


def parse_status_event(form: Mapping[str, Any]) -> LegStatusEvent:
    try:
        return LegStatusEvent.model_validate(dict(form))
    except ValidationError as e:
        raise EventValidationError(_validation_message(e)) from e


def parse_amd_event(form: Mapping[str, Any]) -> AmdEvent:
    try:
        return AmdEvent.model_validate(dict(form))
    except ValidationError as e:
        raise EventValidationError(_validation_message(e)) from e


def parse_conference_event(form: Mapping[str, Any]) -> Optional[ConferenceEvent]:
    """
    Validate a conference status callback.

    Conference-level events (`conference-start`, `conference-end`, ...) carry
    no participant change and return None.
    """
    raw_action = str(form.get("StatusCallbackEvent", "")).strip().lower()
    if raw_action and raw_action not in _CONFERENCE_ACTIONS:
        logger.debug("Ignoring conference event", status_callback_event=raw_action)
        return None
    try:
        return ConferenceEvent.model_validate(dict(form))
    except ValidationError as e:
        raise EventValidationError(_validation_message(e)) from e
