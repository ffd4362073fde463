"""Per-client session phase, rebuilt from the control stream."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel

from .models import ControlMessage, EndMessage, NextMessage, StartMessage

logger = logging.getLogger(__name__)


class SessionPhase(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    ACTIVE = "active"
    ENDED = "ended"


class SessionState(BaseModel):
    phase: SessionPhase = SessionPhase.IDLE
    question_id: Optional[str] = None
    question_index: Optional[int] = None
    started_at: Optional[int] = None

    @property
    def label(self) -> str:
        if self.phase == SessionPhase.PENDING:
            return "active:pending"
        if self.phase == SessionPhase.ACTIVE:
            return f"active:question={self.question_id}"
        return self.phase.value


class SessionStateMachine:
    def __init__(self, question_ids: Iterable[str]):
        self.question_ids: List[str] = list(question_ids)
        self._state = SessionState()

    @property
    def state(self) -> SessionState:
        return self._state.model_copy()

    @property
    def phase(self) -> SessionPhase:
        return self._state.phase

    @property
    def label(self) -> str:
        return self._state.label

    @property
    def is_ended(self) -> bool:
        return self._state.phase == SessionPhase.ENDED

    def apply(self, message: ControlMessage) -> bool:
        """Feed one control message; returns True when the state changed."""

        if self.is_ended:
            logger.debug("Session already ended, ignoring %s", message.name)
            return False

        previous = self._state
        match message:
            case StartMessage(at=at):
                if previous.phase != SessionPhase.IDLE:
                    return False
                self._state = SessionState(phase=SessionPhase.PENDING, started_at=at)
            case NextMessage(question_id=question_id):
                if question_id not in self.question_ids:
                    logger.warning("Rejecting next for unknown question %s", question_id)
                    return False
                self._state = SessionState(
                    phase=SessionPhase.ACTIVE,
                    question_id=question_id,
                    question_index=self.question_ids.index(question_id),
                    started_at=previous.started_at,
                )
            case EndMessage():
                self._state = SessionState(phase=SessionPhase.ENDED, started_at=previous.started_at)
            case _:
                return False

        return self._state != previous

    def restore(self, latest: Optional[ControlMessage]) -> None:
        """Rebuild a late joiner's state from the most recent control message only."""

        self._state = SessionState()
        if latest is None:
            return
        if isinstance(latest, NextMessage) and latest.question_id not in self.question_ids:
            # still started, even if the question is not one we know
            self._state = SessionState(phase=SessionPhase.PENDING)
            return
        self.apply(latest)

    def reset(self) -> None:
        self._state = SessionState()
