from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .utils import now_ms


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class Question(CamelModel):
    id: str = Field(min_length=1)
    title: str = ""


class LiveSession(CamelModel):
    id: str
    quiz_id: str
    teacher_id: str
    questions: List[Question] = Field(default_factory=list)
    plan: str = "free"
    status: Literal["active", "ended"] = "active"
    participants: List[str] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)
    last_activity_at: int = Field(default_factory=now_ms)

    @property
    def question_ids(self) -> List[str]:
        return [q.id for q in self.questions]


class CapabilityToken(CamelModel):
    token: str
    client_id: str
    role: str
    ttl: int
    capability: Dict[str, List[str]]
    key_name: str
    issued: int
    expires: int


class RealtimeLimits(CamelModel):
    """``None`` means no ceiling."""

    model_config = ConfigDict(frozen=True)

    max_concurrent_sessions: Optional[int] = Field(default=None, gt=0)
    max_participants_per_session: Optional[int] = Field(default=None, gt=0)
    session_timeout_minutes: Optional[int] = Field(default=None, gt=0)


# Control channel messages, tagged by the event name they are published under.
class StartMessage(CamelModel):
    name: Literal["start"] = "start"
    at: Optional[int] = None


class NextMessage(CamelModel):
    name: Literal["next"] = "next"
    question_id: str = Field(min_length=1)


class EndMessage(CamelModel):
    name: Literal["end"] = "end"


ControlMessage = Annotated[Union[StartMessage, NextMessage, EndMessage], Field(discriminator="name")]


class AnswerMessage(CamelModel):
    question_id: str = Field(min_length=1)
    # may hold a JSON document for structured question types
    answer: str
    timestamp: int


class ReceivedAnswer(AnswerMessage):
    client_id: Optional[str] = None
    received_at: int = Field(default_factory=now_ms)


class PresenceRecord(CamelModel):
    role: Literal["teacher", "student"]
    name: str = Field(min_length=1)
    joined_at: int = Field(default_factory=now_ms)


class PresenceMember(CamelModel):
    client_id: str
    data: PresenceRecord
