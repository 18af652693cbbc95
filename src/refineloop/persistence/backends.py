"""Key-value backends for the fast-tier state store.

Two interchangeable implementations share one interface:
- RedisBackend: networked, via redis.asyncio
- InMemoryBackend: in-process map with the same TTL semantics

ResilientBackend fronts both. It starts on Redis and switches to the
in-process map permanently when the initial connection fails or when
consecutive failures exceed the reconnect budget.
"""

import fnmatch
import math
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, TypeVar

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

BACKEND_ERRORS = (RedisError, OSError, TimeoutError)


class KeyValueBackend(ABC):
    """Minimal string key-value interface with TTLs."""

    name = "backend"

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]:
        """Keys matching a glob pattern (e.g., "execution:state:*")."""
        ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryBackend(KeyValueBackend):
    """In-process map. Expired entries are dropped lazily on access."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    def ttl(self, key: str) -> int | None:
        """Whole seconds left before `key` expires, None when it never does."""
        entry = self._data.get(key)
        if entry is None or entry[1] is None:
            return None
        return max(1, math.ceil(entry[1] - self._clock()))

    async def keys(self, pattern: str) -> list[str]:
        return [
            key
            for key in list(self._data)
            if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
        ]

    def __len__(self) -> int:
        return len(self._data)


class RedisBackend(KeyValueBackend):
    """Redis-backed store."""

    name = "redis"

    def __init__(self, client: Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str, connect_timeout: float = 5.0) -> "RedisBackend":
        return cls(
            Redis.from_url(
                url,
                decode_responses=True,
                socket_connect_timeout=connect_timeout,
                socket_timeout=connect_timeout,
            )
        )

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        await self._client.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> bool:
        return await self._client.delete(key) > 0

    async def exists(self, key: str) -> bool:
        return await self._client.exists(key) > 0

    async def keys(self, pattern: str) -> list[str]:
        return [key async for key in self._client.scan_iter(match=pattern)]

    async def ping(self) -> bool:
        return bool(await self._client.ping())

    async def close(self) -> None:
        await self._client.aclose()


class ResilientBackend(KeyValueBackend):
    """Redis with a permanent, transparent fallback to the in-process map.

    While Redis is healthy every write is also applied to the fallback so
    that switching mid-session keeps the most recent writes.

    A write that fails on Redis lands only in the fallback. Such keys are
    tracked as pending: reads for them are served from the fallback until
    a later Redis write of the same key succeeds, and they are copied back
    to Redis after the next successful Redis operation.
    """

    def __init__(
        self,
        primary: KeyValueBackend | None,
        fallback: InMemoryBackend | None = None,
        max_reconnect_attempts: int = 10,
    ):
        self._primary = primary
        self._fallback = fallback or InMemoryBackend()
        self._max_reconnect_attempts = max_reconnect_attempts
        self._failures = 0
        self._using_fallback = primary is None
        self._pending: set[str] = set()

    @property
    def name(self) -> str:
        return self._fallback.name if self._using_fallback else self._primary.name

    @property
    def using_fallback(self) -> bool:
        return self._using_fallback

    async def connect(self) -> None:
        """Check the primary once; fall back for good if it is unreachable."""
        if self._using_fallback:
            logger.info("State store using in-memory backend")
            return

        try:
            await self._primary.ping()
        except BACKEND_ERRORS as e:
            logger.warning("Redis connection failed, using in-memory fallback", error=str(e))
            await self._switch_to_fallback()
            return

        logger.info("State store connected to Redis")

    async def _switch_to_fallback(self) -> None:
        if self._using_fallback:
            return
        self._using_fallback = True
        self._pending.clear()
        logger.warning(
            "Switched state store to in-memory fallback",
            failures=self._failures,
        )
        try:
            await self._primary.close()
        except BACKEND_ERRORS as e:
            logger.debug("Error closing Redis client", error=str(e))

    async def _call(
        self,
        operation: str,
        primary_call: Callable[[], Awaitable[T]],
        fallback_call: Callable[[], Awaitable[T]],
    ) -> T:
        if self._using_fallback:
            return await fallback_call()

        try:
            result = await primary_call()
        except BACKEND_ERRORS as e:
            self._failures += 1
            logger.warning(
                "Redis operation failed, serving from fallback",
                operation=operation,
                failures=self._failures,
                error=str(e),
            )
            if self._failures > self._max_reconnect_attempts:
                await self._switch_to_fallback()
            return await fallback_call()

        self._failures = 0
        if self._pending:
            await self._restore_pending()
        return result

    def _mark_pending(self, key: str) -> None:
        if not self._using_fallback:
            self._pending.add(key)

    async def _restore_pending(self) -> None:
        """Copy fallback-only writes back to Redis."""
        for key in list(self._pending):
            value = await self._fallback.get(key)
            try:
                if value is None:
                    await self._primary.delete(key)
                else:
                    await self._primary.set(key, value, self._fallback.ttl(key))
            except BACKEND_ERRORS as e:
                logger.warning("Failed to restore key to Redis", key=key, error=str(e))
                return
            self._pending.discard(key)
            logger.debug("Restored key to Redis", key=key)

    async def get(self, key: str) -> str | None:
        if key in self._pending:
            return await self._fallback.get(key)
        return await self._call(
            "get",
            lambda: self._primary.get(key),
            lambda: self._fallback.get(key),
        )

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> None:
        async def on_primary() -> None:
            await self._primary.set(key, value, ttl_seconds)
            await self._fallback.set(key, value, ttl_seconds)
            self._pending.discard(key)

        async def on_fallback() -> None:
            await self._fallback.set(key, value, ttl_seconds)
            self._mark_pending(key)

        await self._call("set", on_primary, on_fallback)

    async def delete(self, key: str) -> bool:
        async def on_primary() -> bool:
            deleted = await self._primary.delete(key)
            deleted = await self._fallback.delete(key) or deleted
            self._pending.discard(key)
            return deleted

        async def on_fallback() -> bool:
            deleted = await self._fallback.delete(key)
            self._mark_pending(key)
            return deleted

        return await self._call("delete", on_primary, on_fallback)

    async def exists(self, key: str) -> bool:
        if key in self._pending:
            return await self._fallback.exists(key)
        return await self._call(
            "exists",
            lambda: self._primary.exists(key),
            lambda: self._fallback.exists(key),
        )

    async def keys(self, pattern: str) -> list[str]:
        pending = [key for key in self._pending if fnmatch.fnmatchcase(key, pattern)]
        found = await self._call(
            "keys",
            lambda: self._primary.keys(pattern),
            lambda: self._fallback.keys(pattern),
        )
        if not pending:
            return found

        merged = set(found)
        for key in pending:
            if await self._fallback.exists(key):
                merged.add(key)
            else:
                merged.discard(key)
        return sorted(merged)

    async def ping(self) -> bool:
        if self._using_fallback:
            return True
        return await self._call("ping", self._primary.ping, self._fallback.ping)

    async def close(self) -> None:
        if not self._using_fallback:
            await self._primary.close()

    def status(self) -> dict[str, Any]:
        return {
            "backend": self.name,
            "using_fallback": self._using_fallback,
            "consecutive_failures": self._failures,
            "fallback_keys": len(self._fallback),
            "pending_restore": len(self._pending),
        }
