"""LangGraph state definition for one refinement iteration."""

from typing import TypedDict

from ..schemas.execution import IterationRecord, StopReason, TokenUsage
from ..schemas.feedback import Feedback


class IterationState(TypedDict):
    """State for a single generate -> evaluate -> check_stop pass.

    The outer loop lives in the orchestrator; this state never spans
    more than one iteration.
    """

    # Execution identity and limits
    execution_id: str
    task: str
    criteria: list[str]
    iteration: int
    max_iterations: int
    score_threshold: float

    # Records of all previous iterations, oldest first
    history: list[IterationRecord]
    previous_feedback: Feedback | None

    # perf_counter() when the iteration began
    started_at: float

    # Generation output
    candidate: str | None
    generator_usage: TokenUsage | None

    # Evaluation output
    feedback: Feedback | None
    evaluator_usage: TokenUsage | None

    # Results
    record: IterationRecord | None
    should_stop: bool
    stop_reason: StopReason | None
    stop_message: str | None
