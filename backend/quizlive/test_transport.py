from __future__ import annotations

from unittest import IsolatedAsyncioTestCase

from .capability import Role, TokenIssuer
from .db import InMemoryDatabase
from .errors import PermissionDenied, TransportError
from .events import ChannelHistory
from .transport import InMemoryTransport

API_KEY = "app.key1:s3cret"


class InMemoryTransportTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.history = ChannelHistory(InMemoryDatabase())
        self.transport = InMemoryTransport(TokenIssuer(API_KEY), history=self.history)
        self.teacher = await self.transport.connect(self.transport.create_token(Role.TEACHER, "t-1", "s1"))
        self.student = await self.transport.connect(self.transport.create_token(Role.STUDENT, "s-1", "s1"))

    async def test_delivery_in_publish_order(self):
        seen = []
        await self.student.subscribe("quiz:s1:control", lambda m: seen.append((m.name, m.data, m.client_id)))

        await self.teacher.publish("quiz:s1:control", "start", {"at": 1})
        await self.teacher.publish("quiz:s1:control", "next", {"questionId": "q1"})

        self.assertEqual(
            seen,
            [("start", {"at": 1}, "t-1"), ("next", {"questionId": "q1"}, "t-1")],
        )

    async def test_capability_is_enforced(self):
        with self.assertRaises(PermissionDenied):
            await self.student.publish("quiz:s1:control", "start", {})
        with self.assertRaises(PermissionDenied):
            await self.teacher.publish("quiz:s1:answers", "answer", {})
        with self.assertRaises(PermissionDenied):
            await self.student.subscribe("quiz:s1:answers", lambda m: None)
        with self.assertRaises(PermissionDenied):
            await self.teacher.publish("quiz:s2:control", "start", {})

    async def test_failing_handler_keeps_subscription(self):
        calls = []

        def flaky(message):
            calls.append(message.name)
            raise RuntimeError("boom")

        await self.student.subscribe("quiz:s1:control", flaky)
        await self.teacher.publish("quiz:s1:control", "start", {})
        await self.teacher.publish("quiz:s1:control", "end", {})

        self.assertEqual(calls, ["start", "end"])

    async def test_async_handlers_are_awaited(self):
        seen = []

        async def handler(message):
            seen.append(message.data)

        await self.teacher.subscribe("quiz:s1:answers", handler)
        await self.student.publish("quiz:s1:answers", "answer", {"questionId": "q1"})
        self.assertEqual(seen, [{"questionId": "q1"}])

    async def test_unsubscribe_stops_delivery(self):
        seen = []
        sub = await self.student.subscribe("quiz:s1:control", lambda m: seen.append(m.name))
        await self.student.unsubscribe(sub)
        await self.teacher.publish("quiz:s1:control", "start", {})
        self.assertEqual(seen, [])

    async def test_presence_enter_update_leave(self):
        events = []
        await self.teacher.presence_subscribe("quiz:s1:room", lambda e: events.append((e.action, e.client_id)))

        await self.student.presence_enter("quiz:s1:room", {"role": "student", "name": "Alva"})
        await self.student.presence_enter("quiz:s1:room", {"role": "student", "name": "Alva B"})
        self.assertEqual(list((await self.teacher.presence_members("quiz:s1:room")).keys()), ["s-1"])

        await self.student.presence_leave("quiz:s1:room")
        self.assertEqual(events, [("enter", "s-1"), ("update", "s-1"), ("leave", "s-1")])
        self.assertEqual(await self.teacher.presence_members("quiz:s1:room"), {})

    async def test_disconnect_removes_presence(self):
        await self.student.presence_enter("quiz:s1:room", {"role": "student", "name": "Alva"})
        await self.transport.disconnect("s-1")

        self.assertEqual(self.transport.members("quiz:s1:room"), {})
        with self.assertRaises(TransportError):
            await self.student.publish("quiz:s1:answers", "answer", {})

    async def test_history_replay(self):
        await self.teacher.publish("quiz:s1:control", "start", {})
        await self.teacher.publish("quiz:s1:control", "next", {"questionId": "q2"})

        everything = await self.student.history("quiz:s1:control")
        self.assertEqual([m.seq for m in everything], [1, 2])

        latest = await self.student.history("quiz:s1:control", limit=1, newest_first=True)
        self.assertEqual(latest[0].name, "next")

        after_first = await self.student.history("quiz:s1:control", after=1)
        self.assertEqual([m.name for m in after_first], ["next"])

    async def test_history_disabled_returns_nothing(self):
        transport = InMemoryTransport(TokenIssuer(API_KEY))
        conn = await transport.connect(transport.create_token(Role.TEACHER, "t", "s1"))
        await conn.publish("quiz:s1:control", "start", {})
        self.assertEqual(await conn.history("quiz:s1:control"), [])

    async def test_forged_token_rejected(self):
        forged = TokenIssuer("app.key1:not-the-secret").create_token(Role.TEACHER, "s-2", "s1")
        with self.assertRaises(PermissionDenied):
            await self.transport.connect(forged)
