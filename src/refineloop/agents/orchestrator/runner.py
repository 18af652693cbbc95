"""External loop orchestrator for the refinement loop.

The orchestrator owns the iteration loop. Each iteration runs a fresh
single-iteration graph (generate -> evaluate -> check_stop); everything
across iterations (history, cancellation, termination) is handled here
with a plain Python loop.
"""

import time
import uuid
from typing import Awaitable, Callable

import structlog

from ...core.errors import ExecutionFailedError, InputValidationError
from ...core.state import IterationState
from ...schemas.execution import ExecutionResult, IterationRecord, StopReason, TokenUsage
from ..evaluator import Evaluator
from ..generator import Generator
from .graph import create_single_iteration_graph
from .stop_conditions import StopCondition, create_default_stop_conditions

logger = structlog.get_logger(__name__)

IterationCallback = Callable[[IterationRecord], Awaitable[None]]
CancelPredicate = Callable[[], Awaitable[bool]]


class RefinementOrchestrator:
    """Drives generate -> evaluate -> check-stop iterations.

    Iterations are strictly sequential. Cancellation is cooperative and
    only observed between iterations, so an in-flight iteration always
    completes and is recorded.
    """

    def __init__(
        self,
        generator: Generator,
        evaluator: Evaluator,
        stop_conditions: StopCondition | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            generator: Generation stage
            evaluator: Evaluation stage
            stop_conditions: Stop condition (usually a composite), defaults
                to create_default_stop_conditions()
        """
        self.generator = generator
        self.evaluator = evaluator
        self.stop_conditions: StopCondition = stop_conditions or create_default_stop_conditions()

    async def execute(
        self,
        task: str,
        criteria: list[str],
        max_iterations: int,
        score_threshold: float,
        execution_id: str | None = None,
        on_iteration: IterationCallback | None = None,
        should_cancel: CancelPredicate | None = None,
    ) -> ExecutionResult:
        """Run the loop until a stop condition fires or iterations run out.

        Args:
            task: The task to perform
            criteria: Evaluation criteria
            max_iterations: Iteration ceiling (>= 1)
            score_threshold: Score needed (together with passed) to succeed
            execution_id: Identifier used for logging and the result
            on_iteration: Awaited with each new IterationRecord. Errors it
                raises are logged and do not stop the loop
            should_cancel: Checked before every iteration

        Returns:
            Terminal result with full iteration history

        Raises:
            InputValidationError: Invalid limits
            ExecutionFailedError: A stage failed after retries were exhausted,
                or the cancellation check raised
        """
        if max_iterations < 1:
            raise InputValidationError("max_iterations must be at least 1")
        if not 0.0 <= score_threshold <= 1.0:
            raise InputValidationError("score_threshold must be between 0 and 1")
        if not criteria:
            raise InputValidationError("At least one criterion is required")

        execution_id = execution_id or str(uuid.uuid4())
        history: list[IterationRecord] = []
        reason = StopReason.MAX_ITERATIONS
        message: str | None = None
        started = time.perf_counter()

        logger.info(
            "Starting execution",
            execution_id=execution_id,
            max_iterations=max_iterations,
            score_threshold=score_threshold,
            criteria=len(criteria),
        )

        for iteration in range(1, max_iterations + 1):
            if await self._cancel_requested(should_cancel, execution_id, history):
                logger.info(
                    "Cancellation observed",
                    execution_id=execution_id,
                    iterations_completed=len(history),
                )
                reason = StopReason.CANCELLED
                message = f"Cancelled after {len(history)} iteration(s)"
                break

            logger.info(
                "Starting iteration",
                execution_id=execution_id,
                iteration=iteration,
                max_iterations=max_iterations,
            )

            try:
                # Fresh graph per iteration
                graph = create_single_iteration_graph()
                result = await graph.ainvoke(
                    self._iteration_state(
                        execution_id, task, criteria, iteration,
                        max_iterations, score_threshold, history,
                    ),
                    config={
                        "configurable": {
                            "generator": self.generator,
                            "evaluator": self.evaluator,
                            "stop_conditions": self.stop_conditions,
                        }
                    },
                )

                record: IterationRecord = result["record"]
                history.append(record)

            except Exception as e:
                logger.exception(
                    "Iteration failed",
                    execution_id=execution_id,
                    iteration=iteration,
                    error=str(e),
                )
                raise ExecutionFailedError(execution_id, e, len(history)) from e

            if on_iteration is not None:
                try:
                    await on_iteration(record)
                except Exception as e:
                    # The record is already in history; reporting it is best-effort
                    logger.error(
                        "Iteration callback failed",
                        execution_id=execution_id,
                        iteration=iteration,
                        error=str(e),
                    )

            if result["should_stop"]:
                reason = result["stop_reason"] or reason
                message = result["stop_message"]
                break
        else:
            message = message or f"Reached maximum of {max_iterations} iterations"

        return self._build_result(execution_id, history, reason, message, started)

    @staticmethod
    async def _cancel_requested(
        should_cancel: CancelPredicate | None,
        execution_id: str,
        history: list[IterationRecord],
    ) -> bool:
        if should_cancel is None:
            return False
        try:
            return await should_cancel()
        except Exception as e:
            logger.exception(
                "Cancellation check failed",
                execution_id=execution_id,
                error=str(e),
            )
            raise ExecutionFailedError(execution_id, e, len(history)) from e

    @staticmethod
    def _iteration_state(
        execution_id: str,
        task: str,
        criteria: list[str],
        iteration: int,
        max_iterations: int,
        score_threshold: float,
        history: list[IterationRecord],
    ) -> IterationState:
        return {
            "execution_id": execution_id,
            "task": task,
            "criteria": criteria,
            "iteration": iteration,
            "max_iterations": max_iterations,
            "score_threshold": score_threshold,
            "history": list(history),
            "previous_feedback": history[-1].feedback if history else None,
            "started_at": time.perf_counter(),
            "candidate": None,
            "generator_usage": None,
            "feedback": None,
            "evaluator_usage": None,
            "record": None,
            "should_stop": False,
            "stop_reason": None,
            "stop_message": None,
        }

    def _build_result(
        self,
        execution_id: str,
        history: list[IterationRecord],
        reason: StopReason,
        message: str | None,
        started: float,
    ) -> ExecutionResult:
        """Build the final result from the iteration history."""
        last = history[-1] if history else None

        usage = TokenUsage()
        for record in history:
            for stage_usage in (record.generator_usage, record.evaluator_usage):
                if stage_usage is not None:
                    usage = usage + stage_usage

        result = ExecutionResult(
            execution_id=execution_id,
            success=reason == StopReason.THRESHOLD_REACHED,
            output=last.output if last else "",
            final_score=last.feedback.score if last else 0.0,
            iterations=len(history),
            reason=reason,
            message=message,
            total_duration_ms=int((time.perf_counter() - started) * 1000),
            usage=usage,
            iteration_history=list(history),
        )

        logger.info(
            "Execution finished",
            execution_id=execution_id,
            success=result.success,
            reason=reason.value,
            iterations=result.iterations,
            final_score=result.final_score,
            duration_ms=result.total_duration_ms,
        )
        return result

