"""Execution service: submission, status, cancellation and listing."""

import uuid
from typing import Any, Literal

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .core.errors import (
    CriteriaCountExceededError,
    ExecutionNotCancellableError,
    ExecutionNotFoundError,
    InputSizeExceededError,
    InputValidationError,
    MaxCostExceededError,
    RateLimitExceededError,
)
from .core.messaging import Events, EventPublisher, ExecutionJob, JobQueue
from .core.pricing import estimate_cost
from .core.rate_limit import SlidingWindowRateLimiter
from .core.sanitizer import sanitize, sanitize_criteria, threat_summary
from .persistence.repository import ExecutionRepository
from .persistence.state_store import ExecutionStateStore
from .schemas.execution import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionSnapshot,
    ExecutionStatus,
)
from .worker import ExecutionRunner

logger = structlog.get_logger(__name__)

MAX_PAGE_SIZE = 100

StatusFilter = Literal["all", "pending", "running", "completed", "failed", "cancelled"]
SortField = Literal["created_at", "updated_at", "score"]

_LIVE_STATUSES = {ExecutionStatus.PENDING, ExecutionStatus.RUNNING}


def _snapshot_summary(snapshot: ExecutionSnapshot) -> dict[str, Any]:
    return {
        "id": snapshot.id,
        "status": snapshot.status.value,
        "task": snapshot.task,
        "current_iteration": snapshot.current_iteration,
        "max_iterations": snapshot.max_iterations,
        "current_score": snapshot.current_score,
        "final_score": snapshot.final_score,
        "stop_reason": snapshot.stop_reason.value if snapshot.stop_reason else None,
        "created_at": snapshot.created_at,
        "updated_at": snapshot.updated_at,
    }


class ExecutionService:
    """Entry point for callers. Sync and async submissions share the runner."""

    def __init__(
        self,
        settings: Settings,
        store: ExecutionStateStore,
        runner: ExecutionRunner,
        queue: JobQueue,
        rate_limiter: SlidingWindowRateLimiter,
        repository: ExecutionRepository | None = None,
        events: EventPublisher | None = None,
    ):
        self.settings = settings
        self.store = store
        self.runner = runner
        self.queue = queue
        self.rate_limiter = rate_limiter
        self.repository = repository
        self.events = events or EventPublisher()

    def validate(self, request: ExecutionRequest | dict[str, Any]) -> ExecutionRequest:
        """Screen the text for prompt injection, then apply the configured limits.

        Returns:
            The request to run, with suspicious phrases redacted unless
            redaction is disabled in the limits settings

        Raises:
            InputValidationError: Any limit is violated (subclasses carry
                the specific code)
        """
        if not isinstance(request, ExecutionRequest):
            try:
                request = ExecutionRequest.model_validate(request)
            except ValidationError as e:
                raise InputValidationError(
                    "Invalid execution request",
                    details={"errors": e.errors(include_url=False, include_context=False)},
                ) from e

        limits = self.settings.limits
        request = self._screen_for_injection(request, limits.redact_prompt_injection)

        size_bytes = len(request.task.encode("utf-8"))
        if size_bytes > limits.max_input_size_bytes:
            raise InputSizeExceededError(size_bytes, limits.max_input_size_bytes)

        if len(request.criteria) > limits.max_criteria_count:
            raise CriteriaCountExceededError(len(request.criteria), limits.max_criteria_count)

        for index, criterion in enumerate(request.criteria):
            if len(criterion) > limits.max_criterion_length:
                raise InputValidationError(
                    f"Criterion {index + 1} exceeds {limits.max_criterion_length} characters",
                    details={"index": index, "length": len(criterion)},
                )

        if request.max_iterations > limits.max_iterations_limit:
            raise InputValidationError(
                f"max_iterations {request.max_iterations} exceeds the limit of "
                f"{limits.max_iterations_limit}",
                details={
                    "max_iterations": request.max_iterations,
                    "limit": limits.max_iterations_limit,
                },
            )

        estimated = estimate_cost(
            request.max_iterations, request.generator_model, request.evaluator_model
        )
        if estimated > limits.max_cost_per_execution_usd:
            raise MaxCostExceededError(estimated, limits.max_cost_per_execution_usd)

        return request

    @staticmethod
    def _screen_for_injection(request: ExecutionRequest, redact: bool) -> ExecutionRequest:
        task = sanitize(request.task, redact=redact)
        criteria = sanitize_criteria(request.criteria, redact=redact)
        threats = [threat for result in (task, *criteria) for threat in result.threats]
        if not threats:
            return request

        logger.warning(
            "Suspicious patterns detected in submission",
            task_threats=len(task.threats),
            criteria_threats=len(threats) - len(task.threats),
            summary=threat_summary(threats),
            redacted=redact,
        )
        if not redact:
            return request
        return request.model_copy(
            update={
                "task": task.sanitized,
                "criteria": [result.sanitized for result in criteria],
            }
        )

    async def submit(
        self,
        request: ExecutionRequest | dict[str, Any],
        client_id: str = "default",
    ) -> ExecutionResult | dict[str, Any]:
        """Admit a new execution.

        Args:
            request: Submission payload
            client_id: Rate limit bucket

        Returns:
            The terminal ExecutionResult for sync mode, or
            {"execution_id", "status"} for async mode

        Raises:
            InputValidationError: The request violates a limit (checked first)
            RateLimitExceededError: Admission budget exhausted
            ExecutionFailedError: A sync execution aborted
        """
        # Rejected requests do not consume admission budget
        request = self.validate(request)

        admission = self.rate_limiter.check(client_id)
        if not admission.allowed:
            raise RateLimitExceededError(admission.reset_in_seconds)

        execution_id = str(uuid.uuid4())
        snapshot = ExecutionStateStore.create_initial(execution_id, request)
        await self.store.save(snapshot)

        job = ExecutionJob(
            execution_id=execution_id,
            task=request.task,
            criteria=request.criteria,
            max_iterations=request.max_iterations,
            score_threshold=request.score_threshold,
            generator_model=request.generator_model,
            evaluator_model=request.evaluator_model,
        )

        logger.info(
            "Execution submitted",
            execution_id=execution_id,
            mode=request.mode,
            max_iterations=request.max_iterations,
            criteria=len(request.criteria),
        )
        await self.events.publish(
            Events.EXECUTION_SUBMITTED,
            {"execution_id": execution_id, "mode": request.mode},
        )

        if request.mode == "sync":
            return await self.runner.run(job)

        await self.queue.enqueue(job)
        return {"execution_id": execution_id, "status": ExecutionStatus.PENDING.value}

    async def get_status(self, execution_id: str, include_history: bool = False) -> dict[str, Any]:
        """Current status, from the fast tier first and then durable history.

        Raises:
            ExecutionNotFoundError: Neither tier knows the id
        """
        snapshot = await self.store.get(execution_id)
        if snapshot is not None:
            data = _snapshot_summary(snapshot)
            data.update(
                criteria=snapshot.criteria,
                score_threshold=snapshot.score_threshold,
                current_output=snapshot.current_output,
                last_feedback=(
                    snapshot.last_feedback.model_dump() if snapshot.last_feedback else None
                ),
                final_output=snapshot.final_output,
                stop_message=snapshot.stop_message,
                error_message=snapshot.error_message,
                cancel_requested=snapshot.cancel_requested,
                started_at=snapshot.started_at,
                completed_at=snapshot.completed_at,
                source="state_store",
            )
            if include_history:
                data["iterations"] = [record.model_dump() for record in snapshot.iterations]
            return data

        if self.repository is not None:
            row = await self.repository.get(execution_id, with_iterations=include_history)
            if row is not None:
                data = row.to_dict(include_iterations=include_history)
                data["source"] = "database"
                return data

        raise ExecutionNotFoundError(execution_id)

    async def cancel(self, execution_id: str, reason: str | None = None) -> dict[str, Any]:
        """Cancel an execution.

        A pending execution is cancelled immediately. A running one is
        flagged and stops before its next iteration.

        Raises:
            ExecutionNotFoundError: Unknown id
            ExecutionNotCancellableError: Already terminal
        """
        snapshot = await self.store.get(execution_id)
        if snapshot is None:
            if self.repository is not None:
                row = await self.repository.get(execution_id)
                if row is not None:
                    raise ExecutionNotCancellableError(execution_id, row.status)
            raise ExecutionNotFoundError(execution_id)

        if snapshot.is_terminal:
            raise ExecutionNotCancellableError(execution_id, snapshot.status.value)

        if snapshot.status == ExecutionStatus.PENDING:
            cancelled = await self.store.cancel(execution_id, reason)
            await self.runner.finalize(cancelled)
            logger.info("Execution cancelled before start", execution_id=execution_id)
            return {
                "execution_id": execution_id,
                "status": ExecutionStatus.CANCELLED.value,
                "cancel_requested": True,
                "message": "Execution cancelled",
            }

        await self.store.request_cancel(execution_id, reason)
        logger.info(
            "Cancellation requested",
            execution_id=execution_id,
            iteration=snapshot.current_iteration,
        )
        return {
            "execution_id": execution_id,
            "status": ExecutionStatus.RUNNING.value,
            "cancel_requested": True,
            "message": "Cancellation requested; the execution stops before its next iteration",
        }

    async def list(
        self,
        status: StatusFilter = "all",
        limit: int = 20,
        offset: int = 0,
        sort_by: SortField = "created_at",
        sort_order: Literal["asc", "desc"] = "desc",
    ) -> dict[str, Any]:
        """Paginated listing.

        Live statuses come from the fast tier. Terminal and unfiltered
        listings come from durable history when it is configured.
        """
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise InputValidationError(
                f"limit must be between 1 and {MAX_PAGE_SIZE}", details={"limit": limit}
            )
        if offset < 0:
            raise InputValidationError("offset must be >= 0", details={"offset": offset})
        if sort_by not in ("created_at", "updated_at", "score"):
            raise InputValidationError(f"Unsupported sort field: {sort_by}")
        if sort_order not in ("asc", "desc"):
            raise InputValidationError(f"Unsupported sort order: {sort_order}")

        try:
            status_filter = None if status == "all" else ExecutionStatus(status)
        except ValueError as e:
            raise InputValidationError(f"Unknown status: {status}") from e

        if self.repository is not None and status_filter not in _LIVE_STATUSES:
            page = await self.repository.list(
                status=status_filter,
                limit=limit,
                offset=offset,
                sort_by=sort_by,
                sort_order=sort_order,
            )
            items = [row.to_dict() for row in page.items]
            total = page.total
            source = "database"
        else:
            snapshots, total = await self.store.list(
                status=status_filter,
                limit=limit,
                offset=offset,
                sort_by=sort_by,
                sort_order=sort_order,
            )
            items = [_snapshot_summary(snapshot) for snapshot in snapshots]
            source = "state_store"

        return {
            "items": items,
            "total": total,
            "limit": limit,
            "offset": offset,
            "has_more": offset + len(items) < total,
            "source": source,
        }

    async def statistics(self) -> dict[str, Any]:
        """Aggregates from durable history, or from the fast tier without it."""
        if self.repository is not None:
            stats = await self.repository.statistics()
            stats["source"] = "database"
        else:
            snapshots, total = await self.store.list(limit=MAX_PAGE_SIZE * 100)
            by_status: dict[str, int] = {}
            for snapshot in snapshots:
                by_status[snapshot.status.value] = by_status.get(snapshot.status.value, 0) + 1
            completed = [s for s in snapshots if s.status == ExecutionStatus.COMPLETED]
            scores = [s.final_score for s in completed if s.final_score is not None]
            stats = {
                "total": total,
                "by_status": by_status,
                "avg_iterations": (
                    sum(s.current_iteration for s in completed) / len(completed)
                    if completed
                    else 0.0
                ),
                "avg_score": sum(scores) / len(scores) if scores else 0.0,
                "source": "state_store",
            }

        stats["active"] = await self.store.count_active()
        stats["queue"] = await self.queue.stats()
        return stats

    async def health(self) -> dict[str, Any]:
        """Status of the store backend, durable tier and queue."""
        store = await self.store.health()

        database: dict[str, Any] = {"configured": self.repository is not None}
        if self.repository is not None:
            try:
                database["healthy"] = await self.repository.ping()
            except (SQLAlchemyError, OSError) as e:
                database.update(healthy=False, error=str(e))

        return {
            "healthy": store["healthy"] and database.get("healthy", True),
            "state_store": store,
            "database": database,
            "queue": await self.queue.stats(),
        }
