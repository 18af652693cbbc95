"""Fast-tier snapshot store and durable execution history."""

from .backends import InMemoryBackend, KeyValueBackend, RedisBackend, ResilientBackend
from .repository import ExecutionPage, ExecutionRepository
from .state_store import ExecutionStateStore

__all__ = [
    "InMemoryBackend",
    "KeyValueBackend",
    "RedisBackend",
    "ResilientBackend",
    "ExecutionPage",
    "ExecutionRepository",
    "ExecutionStateStore",
]
