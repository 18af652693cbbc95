"""Admission-time sliding-window rate limiter."""

import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one admission check."""

    allowed: bool
    remaining: int
    limit: int
    reset_in_seconds: int
    current: int


class SlidingWindowRateLimiter:
    """Admits at most `max_requests` per client over any `window_seconds` span.

    Only admitted requests count towards the window. Running executions
    are irrelevant here; this bounds the submission rate only.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}

    def _prune(self, client_id: str, now: float) -> deque[float]:
        hits = self._hits.setdefault(client_id, deque())
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        return hits

    def check(self, client_id: str = "default") -> RateLimitResult:
        """Record an admission attempt and report whether it is allowed."""
        now = self._clock()
        hits = self._prune(client_id, now)

        if len(hits) >= self.max_requests:
            reset_in = math.ceil(hits[0] + self.window_seconds - now)
            logger.warning(
                "Rate limit exceeded",
                client_id=client_id,
                current=len(hits),
                limit=self.max_requests,
                reset_in_seconds=reset_in,
            )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                limit=self.max_requests,
                reset_in_seconds=max(reset_in, 0),
                current=len(hits),
            )

        hits.append(now)
        return RateLimitResult(
            allowed=True,
            remaining=self.max_requests - len(hits),
            limit=self.max_requests,
            reset_in_seconds=math.ceil(hits[0] + self.window_seconds - now),
            current=len(hits),
        )

    def reset(self, client_id: str = "default") -> None:
        self._hits.pop(client_id, None)
