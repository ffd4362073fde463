from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import (
    AnswerMessage,
    ControlMessage,
    EndMessage,
    NextMessage,
    PresenceRecord,
    ReceivedAnswer,
    StartMessage,
)
from .utils import now_ms

logger = logging.getLogger(__name__)

ANSWER_EVENT = "answer"

_control_adapter: TypeAdapter[ControlMessage] = TypeAdapter(ControlMessage)


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ())) or "payload"
    return f"{loc}: {err.get('msg')}"


def parse_control(name: Optional[str], data: Any = None) -> ControlMessage:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError(f"Control payload for {name!r} must be an object")
    try:
        return _control_adapter.validate_python({**data, "name": name})
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid control message {name!r}: {_first_error(exc)}") from exc


def control_event(message: ControlMessage) -> Tuple[str, dict]:
    """Split a control message into the event name and payload it is published as."""

    match message:
        case StartMessage(at=at):
            return "start", ({"at": at} if at is not None else {})
        case NextMessage(question_id=question_id):
            return "next", {"questionId": question_id}
        case EndMessage():
            return "end", {}
        case _:
            raise ValidationError(f"Unknown control message {message!r}")


def parse_answer(data: Any, client_id: Optional[str] = None, received_at: Optional[int] = None) -> ReceivedAnswer:
    if not isinstance(data, dict):
        raise ValidationError("Answer payload must be an object")
    try:
        answer = AnswerMessage.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid answer: {_first_error(exc)}") from exc
    return ReceivedAnswer(
        **answer.model_dump(),
        client_id=client_id,
        received_at=received_at if received_at is not None else now_ms(),
    )


def parse_presence(data: Any) -> PresenceRecord:
    if not isinstance(data, dict):
        raise ValidationError("Presence data must be an object")
    try:
        return PresenceRecord.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid presence data: {_first_error(exc)}") from exc


def try_parse_control(name: Optional[str], data: Any = None) -> Optional[ControlMessage]:
    try:
        return parse_control(name, data)
    except ValidationError as exc:
        logger.warning("Dropping control message: %s", exc.message)
        return None


def try_parse_answer(
    name: Optional[str], data: Any, client_id: Optional[str] = None, received_at: Optional[int] = None
) -> Optional[ReceivedAnswer]:
    if name != ANSWER_EVENT:
        logger.debug("Ignoring %r event on answers channel", name)
        return None
    try:
        return parse_answer(data, client_id, received_at)
    except ValidationError as exc:
        logger.warning("Dropping answer from %s: %s", client_id, exc.message)
        return None


def try_parse_presence(data: Any) -> Optional[PresenceRecord]:
    try:
        return parse_presence(data)
    except ValidationError as exc:
        logger.warning("Dropping presence update: %s", exc.message)
        return None
