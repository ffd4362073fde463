from __future__ import annotations

from unittest import IsolatedAsyncioTestCase

from .client import ConnectionStatus
from .context import AppContext
from .db import Settings
from .errors import SessionNotFound
from .models import Question
from .test_limits import FakeClock

QUESTIONS = [Question(id="q1", title="2+2"), Question(id="q2", title="Capital of Sweden")]


class AppContextTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock(1_000_000)
        self.ctx = AppContext(Settings(API_KEY="app.key1:s3cret"), clock=self.clock)
        s = await self.ctx.sessions.create("t-1", "quiz-1", QUESTIONS, plan="free", session_id="abc")
        self.monitor = await self.ctx.open_monitor(s)

    async def asyncTearDown(self):
        await self.ctx.shutdown()

    async def test_sweep_closes_lapsed_monitors(self):
        self.clock.now += 31 * 60_000
        self.assertEqual(await self.ctx.sessions.sweep(), ["abc"])

        self.assertNotIn("abc", self.ctx.monitors)
        self.assertEqual(self.monitor.status, ConnectionStatus.CLOSED)
        with self.assertRaises(SessionNotFound):
            self.ctx.monitor("abc")

    async def test_lapse_noticed_on_access_closes_monitor(self):
        self.clock.now += 31 * 60_000
        with self.assertRaises(SessionNotFound):
            await self.ctx.sessions.require("abc")
        self.assertEqual(self.ctx.monitors, {})

    async def test_lapsed_monitor_stops_counting(self):
        await self.ctx.sessions.join("abc", "s-1")
        self.clock.now += 31 * 60_000
        await self.ctx.sessions.sweep()

        await self.ctx.publish_answer("abc", "s-1", "q1", "A")
        self.assertEqual(self.monitor.aggregator.total, 0)

    async def test_ending_closes_monitor(self):
        await self.ctx.sessions.end("abc")
        self.assertEqual(self.ctx.monitors, {})
