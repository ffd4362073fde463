from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .db import InMemoryDatabase
from .errors import SessionNotFound, ValidationError
from .limits import ensure_capacity, get_realtime_limits
from .models import LiveSession, Question, RealtimeLimits
from .utils import now_ms

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Bookkeeping of live runs so plan ceilings can be enforced.

    This is not the session's state; clients derive that from the control
    channel. The registry only knows which runs are open, who owns them and
    which clients joined, and lets runs lapse after the plan's timeout.
    """

    def __init__(
        self,
        database: InMemoryDatabase,
        limits_for: Callable[[str], RealtimeLimits] = get_realtime_limits,
        clock: Callable[[], int] = now_ms,
        on_end: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self.collection = database.sessions
        self.limits_for = limits_for
        self._clock = clock
        self.on_end = on_end
        self.locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, session_id: str) -> asyncio.Lock:
        self.locks.setdefault(session_id, asyncio.Lock())
        return self.locks[session_id]

    async def get(self, session_id: str) -> Optional[LiveSession]:
        doc = await self.collection.find_one({"id": session_id})
        return LiveSession(**doc) if doc else None

    async def require(self, session_id: str) -> LiveSession:
        s = await self.get(session_id)
        if not s:
            raise SessionNotFound(f"Session {session_id} not found")
        if self._expired(s):
            await self._end(s, reason="timeout")
            raise SessionNotFound(f"Session {session_id} has expired")
        return s

    async def save(self, s: LiveSession):
        await self.collection.update_one({"id": s.id}, {"$set": s.model_dump()}, upsert=True)

    async def active_for_teacher(self, teacher_id: str) -> List[LiveSession]:
        docs = await self.collection.find({"teacher_id": teacher_id, "status": "active"}).to_list()
        return [s for s in (LiveSession(**d) for d in docs) if not self._expired(s)]

    async def create(
        self,
        teacher_id: str,
        quiz_id: str,
        questions: List[Question],
        plan: str = "free",
        session_id: Optional[str] = None,
    ) -> LiveSession:
        if not questions:
            raise ValidationError("A live session needs at least one question")
        ids = [q.id for q in questions]
        if len(set(ids)) != len(ids):
            raise ValidationError("Question ids must be unique within a session")

        await self.sweep()
        limits = self.limits_for(plan)
        running = await self.active_for_teacher(teacher_id)
        ensure_capacity(limits.max_concurrent_sessions, len(running), "concurrent live sessions")

        now = self._clock()
        s = LiveSession(
            id=session_id or uuid.uuid4().hex[:12],
            quiz_id=quiz_id,
            teacher_id=teacher_id,
            questions=questions,
            plan=plan,
            created_at=now,
            last_activity_at=now,
        )
        async with self._lock(s.id):
            if await self.get(s.id):
                raise ValidationError(f"Session {s.id} already exists")
            await self.save(s)
        logger.info("Teacher %s opened session %s for quiz %s (%s plan)", teacher_id, s.id, quiz_id, plan)
        return s

    async def join(self, session_id: str, client_id: str) -> LiveSession:
        async with self._lock(session_id):
            s = await self.require(session_id)
            if s.status != "active":
                raise ValidationError("Session has ended")
            if client_id not in s.participants:
                limits = self.limits_for(s.plan)
                ensure_capacity(limits.max_participants_per_session, len(s.participants), "participants per session")
                s.participants.append(client_id)
                logger.info("Client %s joined session %s (%d participants)", client_id, session_id, len(s.participants))
            s.last_activity_at = self._clock()
            await self.save(s)
            return s

    async def touch(self, session_id: str) -> LiveSession:
        async with self._lock(session_id):
            s = await self.require(session_id)
            s.last_activity_at = self._clock()
            await self.save(s)
            return s

    async def end(self, session_id: str) -> LiveSession:
        async with self._lock(session_id):
            s = await self.get(session_id)
            if not s:
                raise SessionNotFound(f"Session {session_id} not found")
            return await self._end(s, reason="ended by teacher")

    async def discard(self, session_id: str) -> None:
        """Forget a run that never went live."""

        async with self._lock(session_id):
            await self.collection.delete_one({"id": session_id})
        self.locks.pop(session_id, None)

    async def sweep(self) -> List[str]:
        """Close active runs whose timeout elapsed; returns their ids."""

        lapsed = []
        for doc in await self.collection.find({"status": "active"}).to_list():
            s = LiveSession(**doc)
            if self._expired(s):
                await self._end(s, reason="timeout")
                lapsed.append(s.id)
        return lapsed

    def _expired(self, s: LiveSession) -> bool:
        if s.status != "active":
            return False
        timeout = self.limits_for(s.plan).session_timeout_minutes
        if timeout is None:
            return False
        return self._clock() - s.last_activity_at > timeout * 60_000

    async def _end(self, s: LiveSession, reason: str) -> LiveSession:
        if s.status != "ended":
            s.status = "ended"
            await self.save(s)
            logger.info("Session %s closed (%s)", s.id, reason)
            if self.on_end is not None:
                await self.on_end(s.id)
        return s
