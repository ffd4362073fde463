from typing import Dict, List, Optional, Union

from pydantic import Field

from .models import CamelModel, PresenceMember, Question


class CreateSessionIn(CamelModel):
    teacher_id: str = Field(min_length=1)
    quiz_id: str = Field(min_length=1)
    questions: List[Question] = Field(min_length=1)
    plan: str = "free"
    session_id: Optional[str] = None


class JoinIn(CamelModel):
    name: str = Field(min_length=1, max_length=80)
    client_id: Optional[str] = None


class NextIn(CamelModel):
    question_id: str = Field(min_length=1)


class AnswerIn(CamelModel):
    question_id: str = Field(min_length=1)
    answer: Union[str, List[str], Dict[str, object]]
    client_id: Optional[str] = None


class PublicSessionOut(CamelModel):
    id: str
    quiz_id: str
    status: str
    state: str
    questions: List[Question]
    participant_count: int


class QuestionSummaryOut(CamelModel):
    question_id: str
    count: int
    respondents: List[str]
    distribution: Dict[str, int]


class SessionSummaryOut(CamelModel):
    session_id: str
    state: str
    total_answers: int
    questions: List[QuestionSummaryOut]
    participants: List[PresenceMember]
