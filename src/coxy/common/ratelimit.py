"""Tracking of the origin's advertised rate limit."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

LOGGER = structlog.get_logger("coxy.ratelimit")


@dataclass(frozen=True)
class RateLimitState:
    limit: int = -1
    remaining: int = -1
    reset_at: Optional[float] = None


class OriginRateLimiter:
    """Remembers when the origin told us we are blocked.

    The proxy never counts requests on its own. The origin's headers are
    authoritative, so the limiter only records the next wall-clock time at
    which a request is allowed again.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._state = RateLimitState()

    def _now(self, now: Optional[float]) -> float:
        return self._clock() if now is None else now

    def is_limited(self, now: Optional[float] = None) -> bool:
        reset_at = self._state.reset_at
        return reset_at is not None and reset_at > self._now(now)

    def observe(self, now: Optional[float], limit: int, remaining: int, reset_seconds: int) -> bool:
        """Record an origin response; returns True when it exhausted the limit."""
        if remaining != 0 or reset_seconds <= 0:
            return False
        reset_at = self._now(now) + reset_seconds
        with self._lock:
            self._state = RateLimitState(limit=limit, remaining=remaining, reset_at=reset_at)
        LOGGER.warning(
            "origin_rate_limit_hit",
            limit=limit,
            reset_seconds=reset_seconds,
            next_request_at=datetime.fromtimestamp(reset_at, tz=timezone.utc).isoformat(),
        )
        return True

    def seconds_until_reset(self, now: Optional[float] = None) -> int:
        reset_at = self._state.reset_at
        if reset_at is None:
            return 0
        return max(0, math.ceil(reset_at - self._now(now)))

    def snapshot(self, now: Optional[float] = None) -> dict[str, object]:
        state = self._state
        return {
            "limit": state.limit,
            "remaining": state.remaining,
            "reset_at": state.reset_at,
            "limited": self.is_limited(now),
            "seconds_until_reset": self.seconds_until_reset(now),
        }
