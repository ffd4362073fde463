from __future__ import annotations

import json
import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional

from .models import ReceivedAnswer

logger = logging.getLogger(__name__)


class AnswerAggregator:
    """Live list of received answers plus a running count per question.

    Answers are never deduplicated: a student who answers twice shows up
    twice. State lives only in process memory until :meth:`clear`.
    """

    def __init__(self, question_ids: Optional[Iterable[str]] = None):
        self.question_ids = set(question_ids) if question_ids is not None else None
        self._answers: List[ReceivedAnswer] = []
        self._counts: Dict[str, int] = {}

    def add(self, answer: ReceivedAnswer) -> bool:
        if self.question_ids is not None and answer.question_id not in self.question_ids:
            logger.info("Not counting answer for unknown question %s from %s", answer.question_id, answer.client_id)
            return False
        self._answers.append(answer)
        self._counts[answer.question_id] = self._counts.get(answer.question_id, 0) + 1
        return True

    @property
    def answers(self) -> List[ReceivedAnswer]:
        return list(self._answers)

    @property
    def counts(self) -> Dict[str, int]:
        return dict(self._counts)

    @property
    def total(self) -> int:
        return len(self._answers)

    def answers_for(self, question_id: str) -> List[ReceivedAnswer]:
        return [a for a in self._answers if a.question_id == question_id]

    def count_for(self, question_id: str) -> int:
        return self._counts.get(question_id, 0)

    def respondents_for(self, question_id: str) -> List[str]:
        seen: Dict[str, None] = {}
        for a in self.answers_for(question_id):
            if a.client_id:
                seen.setdefault(a.client_id)
        return list(seen)

    def distribution(self, question_id: str) -> Dict[str, int]:
        """How often each answer value was given; JSON-encoded answers are normalised first."""

        tally: Counter[str] = Counter()
        for a in self.answers_for(question_id):
            tally[_normalise(a.answer)] += 1
        return dict(tally)

    def clear(self) -> None:
        self._answers.clear()
        self._counts.clear()


def _normalise(answer: str) -> str:
    try:
        decoded = json.loads(answer)
    except ValueError:
        return answer
    if isinstance(decoded, str):
        return decoded
    if isinstance(decoded, list):
        return json.dumps(sorted(decoded, key=str))
    if isinstance(decoded, dict):
        return json.dumps(decoded, sort_keys=True)
    return answer
