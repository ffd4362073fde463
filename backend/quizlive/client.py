from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .aggregator import AnswerAggregator
from .capability import Role
from .channels import answers_channel, control_channel, room_channel
from .errors import PermissionDenied, QuizLiveError, TransportError, ValidationError
from .messages import ANSWER_EVENT, control_event, try_parse_answer, try_parse_control, try_parse_presence
from .models import (
    AnswerMessage,
    ControlMessage,
    EndMessage,
    NextMessage,
    PresenceMember,
    PresenceRecord,
    StartMessage,
)
from .state import SessionState, SessionStateMachine
from .transport import Connection, Message, PresenceEvent, Subscription, Transport
from .utils import now_ms

logger = logging.getLogger(__name__)

RECONNECT_BASE_MS = 1000
RECONNECT_MAX_MS = 30_000


class ConnectionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class Outcome:
    ok: bool
    error: Optional[QuizLiveError] = None


def reconnect_delay_ms(attempt: int) -> int:
    return min(RECONNECT_BASE_MS * 2**attempt, RECONNECT_MAX_MS)


class LiveSessionClient:
    def __init__(
        self,
        transport: Transport,
        session_id: str,
        question_ids: Iterable[str],
        role: Role,
        name: str,
        client_id: Optional[str] = None,
        *,
        replay_history: bool = True,
        announce: bool = True,
        max_reconnect_attempts: int = 5,
        on_state_change: Optional[Callable[[SessionState], Any]] = None,
        on_error: Optional[Callable[[QuizLiveError], Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.transport = transport
        self.session_id = session_id
        self.role = role
        self.name = name
        self.client_id = client_id
        self.replay_history = replay_history
        self.announce = announce
        self.max_reconnect_attempts = max_reconnect_attempts
        self.on_state_change = on_state_change
        self.on_error = on_error
        self._sleep = sleep

        question_ids = list(question_ids)
        self.state_machine = SessionStateMachine(question_ids)
        self.aggregator = AnswerAggregator(question_ids)
        self.status = ConnectionStatus.IDLE
        self.reconnect_attempts = 0
        self.last_error: Optional[QuizLiveError] = None

        self._connection: Optional[Connection] = None
        self._subscriptions: List[Subscription] = []
        self._participants: Dict[str, PresenceRecord] = {}

    # channels

    @property
    def control(self) -> str:
        return control_channel(self.session_id)

    @property
    def answers(self) -> str:
        return answers_channel(self.session_id)

    @property
    def room(self) -> str:
        return room_channel(self.session_id)

    # lifecycle

    async def connect(self) -> Outcome:
        """Join all channels for this role; a missing API key still raises ConfigurationError."""

        await self._drop_connection()
        self.status = ConnectionStatus.CONNECTING
        token = self.transport.create_token(self.role, client_id=self.client_id, session_id=self.session_id)
        self.client_id = token.client_id
        try:
            conn = await self.transport.connect(token)
            self._connection = conn
            self._subscriptions = [await conn.subscribe(self.control, self._on_control)]
            if self.role == Role.TEACHER:
                self._subscriptions.append(await conn.subscribe(self.answers, self._on_answer))
            self._subscriptions.append(await conn.presence_subscribe(self.room, self._on_presence))

            if self.replay_history:
                await self._restore(conn)

            if self.announce:
                await conn.presence_enter(self.room, PresenceRecord(role=self.role.value, name=self.name).wire())
            await self._refresh_participants(conn)
        except TransportError as exc:
            await self._drop_connection()
            return self._transport_failed(exc)

        self.status = ConnectionStatus.CONNECTED
        self.reconnect_attempts = 0
        logger.info("%s %s connected to session %s", self.role.value, self.client_id, self.session_id)
        return Outcome(True)

    async def reconnect(self) -> Outcome:
        while self.reconnect_attempts < self.max_reconnect_attempts:
            delay = reconnect_delay_ms(self.reconnect_attempts)
            self.reconnect_attempts += 1
            self.status = ConnectionStatus.RECONNECTING
            logger.info("Reconnecting %s in %dms (attempt %d)", self.client_id, delay, self.reconnect_attempts)
            await self._sleep(delay / 1000)
            outcome = await self.connect()
            if outcome.ok:
                return outcome

        self.status = ConnectionStatus.FAILED
        error = TransportError(f"Could not reconnect after {self.max_reconnect_attempts} attempts")
        self._report(error)
        return Outcome(False, error)

    async def close(self) -> None:
        """Unsubscribe and leave presence; the transport's liveness check covers anything that fails here."""

        await self._drop_connection()
        self.status = ConnectionStatus.CLOSED

    async def _drop_connection(self) -> None:
        conn, self._connection = self._connection, None
        self._subscriptions = []
        if conn is None:
            return
        try:
            await conn.close()
        except TransportError as exc:
            logger.info("Ignoring failure while leaving session %s: %s", self.session_id, exc.message)

    # teacher actions

    async def start(self) -> Outcome:
        return await self._send_control(StartMessage(at=now_ms()))

    async def next_question(self, question_id: str) -> Outcome:
        if question_id not in self.state_machine.question_ids:
            error = ValidationError(f"Unknown question {question_id!r}")
            self._report(error)
            return Outcome(False, error)
        return await self._send_control(NextMessage(question_id=question_id))

    async def end(self) -> Outcome:
        return await self._send_control(EndMessage())

    async def _send_control(self, message: ControlMessage) -> Outcome:
        name, data = control_event(message)
        return await self._publish(self.control, name, data)

    # student actions

    async def submit_answer(self, question_id: str, answer: Union[str, list, dict]) -> Outcome:
        if not isinstance(answer, str):
            answer = json.dumps(answer)
        try:
            payload = AnswerMessage(question_id=question_id, answer=answer, timestamp=now_ms())
        except PydanticValidationError as exc:
            error = ValidationError(f"Invalid answer: {exc.errors()[0]['msg']}")
            self._report(error)
            return Outcome(False, error)
        return await self._publish(self.answers, ANSWER_EVENT, payload.wire())

    async def _publish(self, channel: str, name: str, data: Any) -> Outcome:
        if self._connection is None:
            error = TransportError("Not connected")
            self._report(error)
            return Outcome(False, error)
        try:
            await self._connection.publish(channel, name, data)
        except TransportError as exc:
            return self._transport_failed(exc)
        return Outcome(True)

    # observed state

    @property
    def state(self) -> SessionState:
        return self.state_machine.state

    @property
    def participants(self) -> List[PresenceMember]:
        return [PresenceMember(client_id=cid, data=rec) for cid, rec in self._participants.items()]

    @property
    def teacher_count(self) -> int:
        return sum(1 for rec in self._participants.values() if rec.role == Role.TEACHER.value)

    @property
    def student_count(self) -> int:
        return sum(1 for rec in self._participants.values() if rec.role == Role.STUDENT.value)

    def new_run(self) -> None:
        """Forget everything observed so far, before the same room hosts another run."""

        self.aggregator.clear()
        self.state_machine.reset()

    # channel handlers

    def _on_control(self, message: Message) -> None:
        parsed = try_parse_control(message.name, message.data)
        if parsed is None:
            return
        if self.state_machine.apply(parsed) and self.on_state_change is not None:
            self.on_state_change(self.state_machine.state)

    def _on_answer(self, message: Message) -> None:
        parsed = try_parse_answer(message.name, message.data, client_id=message.client_id)
        if parsed is not None:
            self.aggregator.add(parsed)

    def _on_presence(self, event: PresenceEvent) -> None:
        if event.action == "leave":
            self._participants.pop(event.client_id, None)
            return
        record = try_parse_presence(event.data)
        if record is not None:
            self._participants[event.client_id] = record

    async def _restore(self, conn: Connection) -> None:
        latest = await conn.history(self.control, limit=1, newest_first=True)
        if latest:
            self.state_machine.restore(try_parse_control(latest[0].name, latest[0].data))

    async def _refresh_participants(self, conn: Connection) -> None:
        members = await conn.presence_members(self.room)
        participants = {}
        for client_id, data in members.items():
            record = try_parse_presence(data)
            if record is not None:
                participants[client_id] = record
        self._participants = participants

    def _transport_failed(self, exc: TransportError) -> Outcome:
        logger.warning("Realtime operation failed for %s: %s", self.client_id, exc.message)
        if not isinstance(exc, PermissionDenied):
            self.status = ConnectionStatus.RECONNECTING
        self._report(exc)
        return Outcome(False, exc)

    def _report(self, error: QuizLiveError) -> None:
        self.last_error = error
        if self.on_error is not None:
            try:
                self.on_error(error)
            except Exception:
                logger.exception("on_error callback failed")
