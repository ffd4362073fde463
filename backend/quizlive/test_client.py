from __future__ import annotations

from unittest import IsolatedAsyncioTestCase, mock

from .capability import Role, TokenIssuer
from .client import ConnectionStatus, LiveSessionClient, reconnect_delay_ms
from .db import InMemoryDatabase
from .errors import ConfigurationError, PermissionDenied, TransportError, ValidationError
from .events import ChannelHistory
from .state import SessionPhase
from .transport import InMemoryConnection, InMemoryTransport

API_KEY = "app.key1:s3cret"
QUESTIONS = ["q1", "q2"]


class LiveSessionClientTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.transport = InMemoryTransport(TokenIssuer(API_KEY), history=ChannelHistory(InMemoryDatabase()))
        self.teacher = self._client(Role.TEACHER, "Ms Berg", "t-1")
        self.student = self._client(Role.STUDENT, "Alva", "s-1")
        self.assertTrue((await self.teacher.connect()).ok)
        self.assertTrue((await self.student.connect()).ok)

    def _client(self, role: Role, name: str, client_id: str, **kwargs) -> LiveSessionClient:
        return LiveSessionClient(self.transport, "s1", QUESTIONS, role, name, client_id, **kwargs)

    async def test_full_session_scenario(self):
        await self.teacher.start()
        await self.teacher.next_question("q1")
        await self.student.submit_answer("q1", "A")
        await self.student.submit_answer("q1", "B")
        await self.teacher.next_question("q2")
        await self.teacher.end()

        for client in (self.teacher, self.student):
            self.assertEqual(client.state.phase, SessionPhase.ENDED)
        agg = self.teacher.aggregator
        self.assertEqual(agg.count_for("q1"), 2)
        self.assertEqual(agg.count_for("q2"), 0)
        self.assertEqual(len(agg.answers), 2)
        self.assertEqual({a.client_id for a in agg.answers}, {"s-1"})

    async def test_students_follow_teacher_navigation(self):
        changes = []
        self.student.on_state_change = lambda state: changes.append(state.label)

        await self.teacher.next_question("q2")
        await self.teacher.next_question("q1")

        self.assertEqual(changes, ["active:question=q2", "active:question=q1"])

    async def test_structured_answers_are_json_encoded(self):
        await self.student.submit_answer("q1", ["a", "c"])
        self.assertEqual(self.teacher.aggregator.answers[0].answer, '["a", "c"]')

    async def test_answers_to_unknown_questions_are_not_counted(self):
        outcome = await self.student.submit_answer("q42", "A")
        self.assertTrue(outcome.ok)
        self.assertEqual(self.teacher.aggregator.total, 0)

    async def test_presence_tracks_roles(self):
        self.assertEqual(self.teacher.teacher_count, 1)
        self.assertEqual(self.teacher.student_count, 1)

        await self.student.close()
        self.assertEqual(self.teacher.student_count, 0)
        self.assertEqual(self.student.status, ConnectionStatus.CLOSED)

    async def test_student_cannot_drive_the_session(self):
        outcome = await self.student.start()
        self.assertFalse(outcome.ok)
        self.assertIsInstance(outcome.error, PermissionDenied)
        self.assertEqual(self.student.status, ConnectionStatus.CONNECTED)
        self.assertEqual(self.teacher.state.phase, SessionPhase.IDLE)

    async def test_unknown_question_is_rejected_before_publish(self):
        errors = []
        self.teacher.on_error = errors.append
        outcome = await self.teacher.next_question("nope")
        self.assertIsInstance(outcome.error, ValidationError)
        self.assertEqual(len(errors), 1)

    async def test_late_joiner_restores_from_latest_control_message(self):
        await self.teacher.start()
        await self.teacher.next_question("q2")

        late = self._client(Role.STUDENT, "Sam", "s-2")
        await late.connect()
        self.assertEqual(late.state.label, "active:question=q2")
        self.assertEqual(late.student_count, 2)

    async def test_late_joiner_without_history_starts_idle(self):
        await self.teacher.start()
        late = self._client(Role.STUDENT, "Sam", "s-2", replay_history=False)
        await late.connect()
        self.assertEqual(late.state.phase, SessionPhase.IDLE)

    async def test_transport_failure_keeps_state_and_reports(self):
        await self.teacher.next_question("q1")
        errors = []
        self.teacher.on_error = errors.append

        with mock.patch.object(self.teacher._connection, "publish", side_effect=TransportError("timed out")):
            outcome = await self.teacher.next_question("q2")

        self.assertFalse(outcome.ok)
        self.assertEqual(self.teacher.status, ConnectionStatus.RECONNECTING)
        self.assertEqual(self.teacher.state.question_id, "q1")
        self.assertIsInstance(errors[0], TransportError)

    async def test_reconnect_backs_off_then_recovers(self):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        self.student._sleep = fake_sleep
        real_connect = self.transport.connect
        attempts = {"n": 0}

        async def flaky_connect(token):
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise TransportError("unreachable")
            return await real_connect(token)

        with mock.patch.object(self.transport, "connect", side_effect=flaky_connect):
            outcome = await self.student.reconnect()

        self.assertTrue(outcome.ok)
        self.assertEqual(delays, [1, 2, 4])
        self.assertEqual(self.student.status, ConnectionStatus.CONNECTED)
        self.assertEqual(self.teacher.student_count, 1)

    async def test_connecting_again_replaces_the_old_connection(self):
        self.assertTrue((await self.teacher.connect()).ok)
        await self.student.submit_answer("q1", "A")
        self.assertEqual(self.teacher.aggregator.count_for("q1"), 1)
        self.assertEqual(self.teacher.teacher_count, 1)

    async def test_half_open_connection_is_released_on_failure(self):
        assistant = self._client(Role.TEACHER, "Mr Lind", "t-2")
        with mock.patch.object(InMemoryConnection, "presence_enter", side_effect=TransportError("timed out")):
            outcome = await assistant.connect()
        self.assertFalse(outcome.ok)
        self.assertEqual(assistant.status, ConnectionStatus.RECONNECTING)

        self.assertTrue((await assistant.connect()).ok)
        await self.student.submit_answer("q1", "A")
        self.assertEqual(assistant.aggregator.count_for("q1"), 1)

    async def test_reconnect_gives_up(self):
        async def no_sleep(seconds):
            return None

        client = self._client(Role.STUDENT, "Kim", "s-3", max_reconnect_attempts=2, sleep=no_sleep)
        with mock.patch.object(self.transport, "connect", side_effect=TransportError("down")):
            outcome = await client.reconnect()

        self.assertFalse(outcome.ok)
        self.assertEqual(client.status, ConnectionStatus.FAILED)

    async def test_new_run_clears_observed_state(self):
        await self.teacher.next_question("q1")
        await self.student.submit_answer("q1", "A")
        self.teacher.new_run()
        self.assertEqual(self.teacher.aggregator.total, 0)
        self.assertEqual(self.teacher.state.phase, SessionPhase.IDLE)

    async def test_missing_api_key_is_not_swallowed(self):
        transport = InMemoryTransport(TokenIssuer(None))
        client = LiveSessionClient(transport, "s1", QUESTIONS, Role.TEACHER, "T")
        with self.assertRaises(ConfigurationError):
            await client.connect()

    def test_reconnect_delay_is_capped(self):
        self.assertEqual(reconnect_delay_ms(0), 1000)
        self.assertEqual(reconnect_delay_ms(3), 8000)
        self.assertEqual(reconnect_delay_ms(10), 30_000)
