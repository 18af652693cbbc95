"""Core infrastructure components."""

from .errors import RefineLoopError
from .llm import CompletionProvider, CompletionRequest, CompletionResponse, build_provider
from .messaging import EventPublisher, ExecutionJob, MessageBroker
from .retry import RetryPolicy, call_with_retry
from .state import IterationState

__all__ = [
    "RefineLoopError",
    "CompletionProvider",
    "CompletionRequest",
    "CompletionResponse",
    "build_provider",
    "EventPublisher",
    "ExecutionJob",
    "MessageBroker",
    "RetryPolicy",
    "call_with_retry",
    "IterationState",
]
