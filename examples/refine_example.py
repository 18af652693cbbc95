#!/usr/bin/env python3
"""Example: Running the refinement loop.

This example demonstrates:
1. A synchronous submission through the execution service
2. Watching iterations as they complete
3. Asynchronous submission with status polling
4. Error handling

Requires ANTHROPIC_API_KEY (or OPENAI_API_KEY with DEFAULT_LLM_PROVIDER=openai).
"""

import asyncio

import structlog

from refineloop.config import get_settings
from refineloop.container import open_container
from refineloop.core.errors import ExecutionFailedError, RefineLoopError
from refineloop.schemas.execution import IterationRecord

logger = structlog.get_logger(__name__)

TASK = "Write a product description for an insulated steel water bottle"
CRITERIA = [
    "Mentions that drinks stay cold for 24 hours",
    "Under 80 words",
    "Ends with a call to action",
]


async def example_sync_run(container):
    """Example 1: Submit and wait for the terminal result."""
    print("\n" + "=" * 60)
    print("EXAMPLE 1: Synchronous Run")
    print("=" * 60 + "\n")

    result = await container.service.submit(
        {"task": TASK, "criteria": CRITERIA, "max_iterations": 4, "score_threshold": 0.85}
    )

    print("Refinement Results:")
    print(f"  Success: {result.success}")
    print(f"  Reason: {result.reason.value}")
    print(f"  Iterations: {result.iterations}")
    print(f"  Final Score: {result.final_score:.0%}")
    print(f"  Tokens: {result.usage.total_tokens}")
    print(f"\nOutput:\n{result.output}")
    return result


async def example_watch_iterations(container):
    """Example 2: Drive the orchestrator directly and print each iteration."""
    print("\n" + "=" * 60)
    print("EXAMPLE 2: Watching Iterations")
    print("=" * 60 + "\n")

    settings = container.settings
    orchestrator = container.build_orchestrator(
        settings.llm.generator_model, settings.llm.evaluator_model
    )

    async def on_iteration(record: IterationRecord) -> None:
        feedback = record.feedback
        marker = "PASS" if feedback.passed else "...."
        print(f"  [{marker}] Iteration {record.number}: score {feedback.score:.0%}")
        for issue in feedback.issues[:3]:
            print(f"         - {issue}")

    result = await orchestrator.execute(
        TASK, CRITERIA, max_iterations=3, score_threshold=0.9, on_iteration=on_iteration
    )
    print(f"\nStopped: {result.reason.value} ({result.message})")
    return result


async def example_async_submit(container):
    """Example 3: Queue the execution and poll its status."""
    print("\n" + "=" * 60)
    print("EXAMPLE 3: Asynchronous Submission")
    print("=" * 60 + "\n")

    container.worker_pool.start()
    try:
        accepted = await container.service.submit(
            {"task": TASK, "criteria": CRITERIA, "max_iterations": 3, "mode": "async"}
        )
        execution_id = accepted["execution_id"]
        print(f"Submitted: {execution_id}")

        while True:
            status = await container.service.get_status(execution_id)
            print(
                f"  {status['status']:<10} iteration {status['current_iteration']}"
                f"/{status['max_iterations']}"
            )
            if status["status"] not in ("pending", "running"):
                break
            await asyncio.sleep(2)
    finally:
        await container.worker_pool.stop()


async def main():
    settings = get_settings()

    async with open_container(settings) as container:
        try:
            await example_sync_run(container)
            await example_watch_iterations(container)
            await example_async_submit(container)
        except ExecutionFailedError as e:
            logger.error("Execution failed", iterations=e.iterations_completed, error=str(e.cause))
        except RefineLoopError as e:
            logger.error("Request rejected", code=e.code, error=e.message)


if __name__ == "__main__":
    asyncio.run(main())
