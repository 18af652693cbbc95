"""Execution runner and worker pool.

ExecutionRunner is the one code path both submission modes use: sync
submissions call it inline, async submissions reach it through the job
queue and the WorkerPool.
"""

import asyncio
import time
from typing import Callable

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .agents.orchestrator import RefinementOrchestrator
from .core.errors import ExecutionFailedError, RefineLoopError
from .core.messaging import Events, EventPublisher, ExecutionJob, JobQueue
from .core.pricing import actual_cost
from .persistence.repository import ExecutionRepository
from .persistence.state_store import ExecutionStateStore
from .schemas.execution import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionSnapshot,
    ExecutionStatus,
    IterationRecord,
)

logger = structlog.get_logger(__name__)

OrchestratorFactory = Callable[[str, str], RefinementOrchestrator]

_STATUS_EVENTS = {
    ExecutionStatus.COMPLETED: Events.EXECUTION_COMPLETED,
    ExecutionStatus.FAILED: Events.EXECUTION_FAILED,
    ExecutionStatus.CANCELLED: Events.EXECUTION_CANCELLED,
}


class ExecutionRunner:
    """Runs one execution end to end and records its lifecycle.

    The fast-tier store is updated as the loop progresses. The durable
    tier receives one best-effort write once the execution is terminal.
    """

    def __init__(
        self,
        store: ExecutionStateStore,
        orchestrator_factory: OrchestratorFactory,
        repository: ExecutionRepository | None = None,
        events: EventPublisher | None = None,
    ):
        """Initialize the runner.

        Args:
            store: Fast-tier snapshot store
            orchestrator_factory: Builds an orchestrator for
                (generator_model, evaluator_model)
            repository: Durable history, optional
            events: Lifecycle event publisher, optional
        """
        self.store = store
        self.orchestrator_factory = orchestrator_factory
        self.repository = repository
        self.events = events or EventPublisher()

    async def run(self, job: ExecutionJob) -> ExecutionResult | None:
        """Run the execution described by `job`.

        Returns:
            The terminal result, or None when the execution was already
            terminal (e.g. cancelled while still queued)

        Raises:
            ExecutionFailedError: The loop aborted for any reason; the
                snapshot is marked failed
        """
        execution_id = job.execution_id
        snapshot = await self.store.get(execution_id)
        if snapshot is None:
            # Submitted from another process with a separate store
            snapshot = ExecutionStateStore.create_initial(execution_id, _request_from_job(job))
            await self.store.save(snapshot)
        elif snapshot.is_terminal:
            logger.info(
                "Skipping terminal execution",
                execution_id=execution_id,
                status=snapshot.status.value,
            )
            return None

        await self.store.mark_running(execution_id)
        await self.events.publish(
            Events.EXECUTION_STARTED,
            {"execution_id": execution_id, "max_iterations": job.max_iterations},
        )

        orchestrator = self.orchestrator_factory(job.generator_model, job.evaluator_model)
        started = time.perf_counter()

        async def on_iteration(record: IterationRecord) -> None:
            await self.store.append_iteration(execution_id, record)
            await self.events.publish(
                Events.ITERATION_COMPLETED,
                {
                    "execution_id": execution_id,
                    "iteration": record.number,
                    "score": record.feedback.score,
                    "passed": record.feedback.passed,
                },
            )

        async def should_cancel() -> bool:
            return await self.store.is_cancel_requested(execution_id)

        try:
            result = await orchestrator.execute(
                task=job.task,
                criteria=job.criteria,
                max_iterations=job.max_iterations,
                score_threshold=job.score_threshold,
                execution_id=execution_id,
                on_iteration=on_iteration,
                should_cancel=should_cancel,
            )
        except ExecutionFailedError as e:
            await self._record_failure(execution_id, e.cause, started)
            raise
        except Exception as e:
            # Anything else escaping the loop still ends the execution
            final = await self._record_failure(execution_id, e, started)
            completed = final.current_iteration if final else 0
            raise ExecutionFailedError(execution_id, e, completed) from e

        final = await self.store.complete(execution_id, result)
        await self.finalize(final, result.total_duration_ms)
        return result

    async def _record_failure(
        self, execution_id: str, cause: BaseException, started: float
    ) -> ExecutionSnapshot | None:
        final = await self.store.fail(execution_id, f"{type(cause).__name__}: {cause}")
        await self.finalize(final, int((time.perf_counter() - started) * 1000))
        return final

    async def finalize(self, snapshot: ExecutionSnapshot | None, duration_ms: int | None = None) -> None:
        """Publish the terminal event and write the durable record."""
        if snapshot is None:
            return

        await self.events.publish(
            _STATUS_EVENTS[snapshot.status],
            {
                "execution_id": snapshot.id,
                "status": snapshot.status.value,
                "iterations": snapshot.current_iteration,
                "final_score": snapshot.final_score,
                "stop_reason": snapshot.stop_reason.value if snapshot.stop_reason else None,
                "error_message": snapshot.error_message,
            },
        )

        if self.repository is None:
            return

        try:
            cost = actual_cost(
                snapshot.iterations, snapshot.generator_model, snapshot.evaluator_model
            )
            await self.repository.save_terminal(snapshot, duration_ms, cost)
            await self.repository.add_audit_log(
                f"execution.{snapshot.status.value}",
                execution_id=snapshot.id,
                details={
                    "iterations": snapshot.current_iteration,
                    "stop_reason": snapshot.stop_reason.value if snapshot.stop_reason else None,
                },
            )
        except (SQLAlchemyError, OSError, ValueError) as e:
            # Durable history is best-effort; the caller-visible result stands
            logger.error(
                "Failed to persist execution",
                execution_id=snapshot.id,
                error=str(e),
            )


def _request_from_job(job: ExecutionJob) -> ExecutionRequest:
    return ExecutionRequest(
        task=job.task,
        criteria=job.criteria,
        max_iterations=job.max_iterations,
        score_threshold=job.score_threshold,
        mode="async",
        generator_model=job.generator_model,
        evaluator_model=job.evaluator_model,
    )


class WorkerPool:
    """Consumes the job queue with a fixed number of concurrent executions."""

    def __init__(self, queue: JobQueue, runner: ExecutionRunner, concurrency: int = 2):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.runner = runner
        self.concurrency = concurrency
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def handle(self, job: ExecutionJob) -> None:
        """Run one job. Failures are already recorded in the store."""
        logger.info("Processing job", execution_id=job.execution_id, task=job.task[:100])
        try:
            await self.runner.run(job)
        except RefineLoopError as e:
            logger.error(
                "Execution failed",
                execution_id=job.execution_id,
                code=e.code,
                error=e.message,
            )

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.queue.consume(self.handle, self.concurrency))
        logger.info("Worker pool started", queue=self.queue.name, concurrency=self.concurrency)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Worker pool stopped")

    async def run_forever(self) -> None:
        """Consume until cancelled (used by the `worker` command)."""
        logger.info("Worker pool running", queue=self.queue.name, concurrency=self.concurrency)
        await self.queue.consume(self.handle, self.concurrency)
