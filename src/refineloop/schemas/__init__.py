"""Pydantic schemas for data structures."""

from .feedback import Feedback, fallback_feedback
from .execution import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionSnapshot,
    ExecutionStatus,
    IterationRecord,
    StopReason,
    TokenUsage,
    utc_now,
)

__all__ = [
    # Feedback
    "Feedback",
    "fallback_feedback",
    # Execution
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionSnapshot",
    "ExecutionStatus",
    "IterationRecord",
    "StopReason",
    "TokenUsage",
    "utc_now",
]
