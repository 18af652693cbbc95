"""Execution-related Pydantic schemas."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..config import DEFAULT_MODEL
from .feedback import Feedback


def utc_now() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """Lifecycle states of an execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class StopReason(str, Enum):
    """Why the refinement loop ended."""

    THRESHOLD_REACHED = "threshold_reached"  # passed and score >= threshold
    MAX_ITERATIONS = "max_iterations"  # iteration ceiling hit
    STAGNATION = "stagnation"  # no progress over the trailing window
    EARLY_TERMINATION = "early_termination"  # score below the critical floor
    CANCELLED = "cancelled"  # cancellation observed at a boundary


class TokenUsage(BaseModel):
    """Token counts reported by a completion provider."""

    model_config = ConfigDict(frozen=True)

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


class IterationRecord(BaseModel):
    """One generate/evaluate round. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    number: int = Field(..., ge=1)
    output: str
    feedback: Feedback
    duration_ms: int = Field(..., ge=0)
    timestamp: datetime = Field(default_factory=utc_now)
    generator_usage: TokenUsage | None = None
    evaluator_usage: TokenUsage | None = None


class ExecutionSnapshot(BaseModel):
    """Live state of an execution as kept in the fast tier."""

    id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    task: str
    criteria: list[str]
    max_iterations: int = Field(..., ge=1)
    score_threshold: float = Field(..., ge=0.0, le=1.0)
    generator_model: str = DEFAULT_MODEL
    evaluator_model: str = DEFAULT_MODEL
    mode: Literal["sync", "async"] = "sync"

    current_iteration: int = 0
    iterations: list[IterationRecord] = Field(default_factory=list)
    current_output: str | None = None
    last_feedback: Feedback | None = None
    current_score: float | None = None

    final_output: str | None = None
    final_score: float | None = None
    stop_reason: StopReason | None = None
    stop_message: str | None = None
    error_message: str | None = None

    cancel_requested: bool = False
    cancel_reason: str | None = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class ExecutionResult(BaseModel):
    """Terminal outcome of one run of the refinement loop."""

    execution_id: str
    success: bool
    output: str
    final_score: float
    iterations: int
    reason: StopReason
    message: str | None = None
    total_duration_ms: int
    usage: TokenUsage = Field(default_factory=TokenUsage)
    iteration_history: list[IterationRecord] = Field(default_factory=list)


class ExecutionRequest(BaseModel):
    """Submission payload.

    Static bounds live here; limits that depend on configuration are
    checked by the execution service.
    """

    task: str = Field(..., min_length=1, description="The task to perform")
    criteria: list[str] = Field(..., min_length=1, description="Evaluation criteria, in order")
    max_iterations: int = Field(10, ge=1, description="Iteration ceiling")
    score_threshold: float = Field(0.85, ge=0.0, le=1.0, description="Score needed to succeed")
    mode: Literal["sync", "async"] = "sync"
    generator_model: str = DEFAULT_MODEL
    evaluator_model: str = DEFAULT_MODEL

    @field_validator("task")
    @classmethod
    def _task_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("task must not be blank")
        return value

    @field_validator("criteria")
    @classmethod
    def _criteria_not_blank(cls, value: list[str]) -> list[str]:
        for index, criterion in enumerate(value):
            if not criterion.strip():
                raise ValueError(f"criterion {index + 1} must not be blank")
        return value
