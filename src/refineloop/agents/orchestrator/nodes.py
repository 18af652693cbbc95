"""Node implementations for the single-iteration graph.

The stages and stop conditions are passed in through
`config["configurable"]` so the graph itself stays stateless.
"""

import time
from typing import Any

import structlog
from langchain_core.runnables import RunnableConfig

from ...core.state import IterationState
from ...schemas.execution import IterationRecord, utc_now
from .stop_conditions import StopContext

logger = structlog.get_logger(__name__)


def _component(config: RunnableConfig, key: str) -> Any:
    configurable = (config or {}).get("configurable", {})
    if key not in configurable:
        raise KeyError(f"Iteration graph requires '{key}' in config['configurable']")
    return configurable[key]


async def generate_node(
    state: IterationState,
    config: RunnableConfig,
) -> dict[str, Any]:
    """Produce a candidate for this iteration.

    Args:
        state: Current iteration state
        config: Runnable config carrying the generator

    Returns:
        State update with the candidate and its token usage
    """
    generator = _component(config, "generator")

    generation = await generator.generate(
        state["task"],
        state["previous_feedback"],
        state["iteration"],
    )

    logger.info(
        "Candidate generated",
        execution_id=state["execution_id"],
        iteration=state["iteration"],
        length=len(generation.content),
    )
    return {
        "candidate": generation.content,
        "generator_usage": generation.usage,
    }


async def evaluate_node(
    state: IterationState,
    config: RunnableConfig,
) -> dict[str, Any]:
    """Score the candidate and build the immutable iteration record."""
    evaluator = _component(config, "evaluator")

    evaluation = await evaluator.evaluate(
        state["candidate"] or "",
        state["criteria"],
        state["task"],
    )

    record = IterationRecord(
        number=state["iteration"],
        output=state["candidate"] or "",
        feedback=evaluation.feedback,
        duration_ms=int((time.perf_counter() - state["started_at"]) * 1000),
        timestamp=utc_now(),
        generator_usage=state["generator_usage"],
        evaluator_usage=evaluation.usage,
    )

    logger.info(
        "Candidate evaluated",
        execution_id=state["execution_id"],
        iteration=state["iteration"],
        score=evaluation.feedback.score,
        passed=evaluation.feedback.passed,
        duration_ms=record.duration_ms,
    )
    return {
        "feedback": evaluation.feedback,
        "evaluator_usage": evaluation.usage,
        "record": record,
    }


async def check_stop_node(
    state: IterationState,
    config: RunnableConfig,
) -> dict[str, Any]:
    """Run the stop conditions over the full history including this iteration."""
    stop_conditions = _component(config, "stop_conditions")
    record = state["record"]

    context = StopContext(
        current_iteration=state["iteration"],
        max_iterations=state["max_iterations"],
        score_threshold=state["score_threshold"],
        iterations=[*state["history"], record],
        current_score=record.feedback.score,
        current_passed=record.feedback.passed,
    )
    decision = stop_conditions.evaluate(context)

    if decision.should_stop:
        logger.info(
            "Stop condition fired",
            execution_id=state["execution_id"],
            iteration=state["iteration"],
            reason=decision.reason.value if decision.reason else None,
            message=decision.message,
        )

    return {
        "should_stop": decision.should_stop,
        "stop_reason": decision.reason,
        "stop_message": decision.message,
    }
