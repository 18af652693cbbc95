"""Bounded exponential backoff for remote calls."""

import asyncio
import math
import random
import socket
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import httpx
import structlog

from ..config import RetrySettings
from .errors import (
    InputValidationError,
    ModelNotFoundError,
    ProviderAuthenticationError,
    ProviderConnectionError,
    ProviderRateLimitError,
    ProviderTimeoutError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[BaseException, int, int], Any]
RetryPredicate = Callable[[BaseException], bool]

_RETRYABLE_TYPES = (
    ProviderTimeoutError,
    ProviderRateLimitError,
    ProviderConnectionError,
    TimeoutError,
    ConnectionError,
    socket.gaierror,
    httpx.TransportError,
)
_FATAL_TYPES = (
    ProviderAuthenticationError,
    ModelNotFoundError,
    InputValidationError,
)


def is_retryable_error(error: BaseException) -> bool:
    """Default retry policy.

    Network-class failures, rate limits and server-side (5xx) errors are
    retried. Authentication, validation and other client errors are fatal.
    """
    if isinstance(error, _FATAL_TYPES):
        return False
    if isinstance(error, _RETRYABLE_TYPES):
        return True

    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    if isinstance(status, int):
        return status == 429 or status >= 500
    return False


@dataclass
class RetryPolicy:
    """Backoff configuration.

    Delays are in milliseconds. Pass a seeded `random.Random` as `rng`
    to make jittered delays reproducible.
    """

    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    should_retry: RetryPredicate = is_retryable_error
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_settings(cls, settings: RetrySettings, **overrides: Any) -> "RetryPolicy":
        """Build a policy from environment configuration."""
        values: dict[str, Any] = {
            "max_attempts": settings.max_attempts,
            "initial_delay_ms": settings.initial_delay_ms,
            "max_delay_ms": settings.max_delay_ms,
            "backoff_multiplier": settings.backoff_multiplier,
            "jitter": settings.jitter,
        }
        values.update(overrides)
        return cls(**values)

    def compute_delay(self, attempt: int) -> int:
        """Delay in milliseconds before retrying after `attempt` failed.

        Jitter adds up to 100% of the base delay.
        """
        delay = min(
            self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1),
            self.max_delay_ms,
        )
        if self.jitter:
            return math.floor(delay + delay * self.rng.random())
        return math.floor(delay)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    on_retry: RetryCallback | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run `fn` until it succeeds, fails fatally, or attempts run out.

    Args:
        fn: Zero-argument coroutine factory performing the remote call
        policy: Backoff configuration (defaults to RetryPolicy())
        on_retry: Called with (error, attempt, delay_ms) before each wait
        sleep: Awaitable sleep taking seconds

    Returns:
        Whatever `fn` returns on its first successful attempt

    Raises:
        The original error, unmodified, when it is fatal or on the last attempt
    """
    policy = policy or RetryPolicy()
    attempt = 1

    while True:
        try:
            return await fn()
        except Exception as e:
            if attempt >= policy.max_attempts or not policy.should_retry(e):
                raise

            delay_ms = policy.compute_delay(attempt)
            if on_retry is not None:
                try:
                    outcome = on_retry(e, attempt, delay_ms)
                    if asyncio.iscoroutine(outcome):
                        await outcome
                except Exception as callback_error:
                    logger.warning(
                        "Retry callback failed",
                        error=str(callback_error),
                        attempt=attempt,
                    )

            await sleep(delay_ms / 1000)
            attempt += 1
