from __future__ import annotations

import json
import logging
from typing import Callable, Dict, Union

from fastapi import Request

from .capability import Role, TokenIssuer
from .channels import answers_channel
from .client import LiveSessionClient, Outcome
from .db import InMemoryDatabase, Settings
from .errors import SessionNotFound
from .events import ChannelHistory
from .limits import FixedWindowRateLimiter
from .messages import ANSWER_EVENT
from .models import AnswerMessage, LiveSession
from .sessions import SessionRegistry
from .transport import InMemoryTransport
from .utils import now_ms

logger = logging.getLogger(__name__)


class AppContext:
    """Everything a request handler needs, created once per process.

    Rate-limit buckets and answer tallies live here rather than at module
    level so each app (and each test) gets its own.
    """

    def __init__(self, settings: Settings, clock: Callable[[], int] = now_ms):
        self.settings = settings
        self.database = InMemoryDatabase()
        self.history = ChannelHistory(self.database)
        self.issuer = TokenIssuer(settings.API_KEY, settings.TOKEN_TTL_SECONDS)
        self.transport = InMemoryTransport(self.issuer, history=self.history)
        self.sessions = SessionRegistry(self.database, clock=clock, on_end=self.close_monitor)
        self.answer_limiter = FixedWindowRateLimiter(
            settings.ANSWER_RATE_LIMIT_MAX, settings.ANSWER_RATE_LIMIT_WINDOW_MS, clock
        )
        self.token_limiter = FixedWindowRateLimiter(
            settings.TOKEN_RATE_LIMIT_MAX, settings.TOKEN_RATE_LIMIT_WINDOW_MS, clock
        )
        self.monitors: Dict[str, LiveSessionClient] = {}

    async def open_monitor(self, s: LiveSession) -> LiveSessionClient:
        """Attach a silent teacher-side observer that tracks state and answers for the summary endpoint."""

        monitor = self.monitors.get(s.id)
        if monitor is not None:
            return monitor
        monitor = LiveSessionClient(
            self.transport,
            s.id,
            s.question_ids,
            Role.TEACHER,
            name="server",
            client_id=f"server-{s.id}",
            announce=False,
        )
        raise_for(await monitor.connect())
        self.monitors[s.id] = monitor
        return monitor

    def monitor(self, session_id: str) -> LiveSessionClient:
        monitor = self.monitors.get(session_id)
        if monitor is None:
            raise SessionNotFound(f"Session {session_id} is not live")
        return monitor

    async def close_monitor(self, session_id: str) -> None:
        monitor = self.monitors.pop(session_id, None)
        if monitor is not None:
            await monitor.close()

    async def publish_answer(self, session_id: str, client_id: str, question_id: str, answer: Union[str, list, dict]):
        """Relay an answer for a client that posts over HTTP instead of holding a channel connection."""

        token = self.transport.create_token(Role.STUDENT, client_id=client_id, session_id=session_id)
        conn = await self.transport.connect(token)
        try:
            payload = AnswerMessage.model_validate(
                {"questionId": question_id, "answer": _encode(answer), "timestamp": now_ms()}
            )
            return await conn.publish(answers_channel(session_id), ANSWER_EVENT, payload.wire())
        finally:
            await conn.close()

    async def shutdown(self) -> None:
        for session_id in list(self.monitors):
            await self.close_monitor(session_id)


def _encode(answer: Union[str, list, dict]) -> str:
    return answer if isinstance(answer, str) else json.dumps(answer)


def raise_for(outcome: Outcome) -> None:
    if not outcome.ok and outcome.error is not None:
        raise outcome.error


def get_context(request: Request) -> AppContext:
    return request.app.state.context
