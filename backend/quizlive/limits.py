from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import QuotaExceeded, RateLimitExceeded
from .models import RealtimeLimits
from .utils import now_ms

logger = logging.getLogger(__name__)


_REALTIME_LIMITS: Dict[str, RealtimeLimits] = {
    "free": RealtimeLimits(max_concurrent_sessions=1, max_participants_per_session=20, session_timeout_minutes=30),
    "teacher_bas": RealtimeLimits(max_concurrent_sessions=3, max_participants_per_session=40, session_timeout_minutes=60),
    "teacher_pro": RealtimeLimits(max_concurrent_sessions=10, max_participants_per_session=100, session_timeout_minutes=120),
    "school": RealtimeLimits(),
}


def get_realtime_limits(plan: Optional[str]) -> RealtimeLimits:
    """Plan ceilings; unknown or missing plans get the free tier."""

    return _REALTIME_LIMITS.get((plan or "free").lower(), _REALTIME_LIMITS["free"])


def ensure_capacity(limit: Optional[int], current: int, what: str) -> None:
    if limit is not None and current >= limit:
        raise QuotaExceeded(f"Limit of {limit} {what} reached for this plan. Upgrade for more.")


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset: int
    retry_after_ms: int = 0


@dataclass
class _Bucket:
    count: int
    reset: int


class FixedWindowRateLimiter:
    """Fixed-window counter per key.

    Single-process and not thread-safe: each instance assumes its handlers
    run to completion on one event loop.
    """

    def __init__(self, max_requests: int, window_ms: int, clock: Callable[[], int] = now_ms):
        if max_requests < 1 or window_ms < 1:
            raise ValueError("max_requests and window_ms must be positive")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}

    def check(self, key: str) -> RateLimitResult:
        now = self._clock()
        bucket = self._buckets.get(key)

        if bucket is None or now >= bucket.reset:
            bucket = _Bucket(count=1, reset=now + self.window_ms)
            self._buckets[key] = bucket
            return RateLimitResult(True, self.max_requests - 1, bucket.reset)

        if bucket.count >= self.max_requests:
            return RateLimitResult(False, 0, bucket.reset, retry_after_ms=max(0, bucket.reset - now))

        bucket.count += 1
        return RateLimitResult(True, self.max_requests - bucket.count, bucket.reset)

    def hit(self, key: str) -> RateLimitResult:
        result = self.check(key)
        if not result.allowed:
            logger.info("Rate limit hit for %s, retry in %sms", key, result.retry_after_ms)
            raise RateLimitExceeded(result.retry_after_ms)
        return result
