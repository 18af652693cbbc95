"""Fast-tier execution state store.

One JSON snapshot per execution id, TTL-bounded. This store is the single
source of truth for live progress: status pollers read it while at most
one worker appends to a given execution.
"""

from typing import Any, Literal

import structlog

from ..schemas.execution import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionSnapshot,
    ExecutionStatus,
    IterationRecord,
    StopReason,
    utc_now,
)
from .backends import KeyValueBackend

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60
DEFAULT_KEY_PREFIX = "execution:state:"

SortField = Literal["created_at", "updated_at", "score"]
SortOrder = Literal["asc", "desc"]


class ExecutionStateStore:
    """Snapshot store over any KeyValueBackend."""

    def __init__(
        self,
        backend: KeyValueBackend,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ):
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def _key(self, execution_id: str) -> str:
        return f"{self.key_prefix}{execution_id}"

    @staticmethod
    def create_initial(execution_id: str, request: ExecutionRequest) -> ExecutionSnapshot:
        """Pending snapshot for a new submission."""
        return ExecutionSnapshot(
            id=execution_id,
            status=ExecutionStatus.PENDING,
            task=request.task,
            criteria=list(request.criteria),
            max_iterations=request.max_iterations,
            score_threshold=request.score_threshold,
            generator_model=request.generator_model,
            evaluator_model=request.evaluator_model,
            mode=request.mode,
        )

    async def save(self, snapshot: ExecutionSnapshot) -> None:
        """Write the full snapshot, replacing any previous one."""
        await self.backend.set(
            self._key(snapshot.id),
            snapshot.model_dump_json(),
            self.ttl_seconds,
        )

    async def get(self, execution_id: str) -> ExecutionSnapshot | None:
        raw = await self.backend.get(self._key(execution_id))
        if raw is None:
            return None
        return ExecutionSnapshot.model_validate_json(raw)

    async def update(self, execution_id: str, **changes: Any) -> ExecutionSnapshot | None:
        """Shallow-merge `changes` over the stored snapshot.

        Returns:
            The updated snapshot, or None if the execution is unknown
        """
        current = await self.get(execution_id)
        if current is None:
            logger.warning("Update for unknown execution", execution_id=execution_id)
            return None

        merged = current.model_dump()
        merged.update(changes)
        merged["updated_at"] = utc_now()
        snapshot = ExecutionSnapshot.model_validate(merged)
        await self.save(snapshot)
        return snapshot

    async def append_iteration(
        self, execution_id: str, record: IterationRecord
    ) -> ExecutionSnapshot | None:
        """Append a record and refresh the derived progress fields.

        Raises:
            ValueError: The record number would leave a gap or duplicate
        """
        current = await self.get(execution_id)
        if current is None:
            logger.warning("Iteration for unknown execution", execution_id=execution_id)
            return None
        if current.is_terminal:
            logger.warning(
                "Ignoring iteration for terminal execution",
                execution_id=execution_id,
                status=current.status.value,
                iteration=record.number,
            )
            return current
        if record.number != current.current_iteration + 1:
            raise ValueError(
                f"Iteration {record.number} does not follow {current.current_iteration} "
                f"for execution {execution_id}"
            )

        snapshot = current.model_copy(
            update={
                "iterations": [*current.iterations, record],
                "current_iteration": record.number,
                "current_output": record.output,
                "last_feedback": record.feedback,
                "current_score": record.feedback.score,
                "updated_at": utc_now(),
            }
        )
        await self.save(snapshot)
        return snapshot

    async def mark_running(self, execution_id: str) -> ExecutionSnapshot | None:
        now = utc_now()
        return await self.update(
            execution_id,
            status=ExecutionStatus.RUNNING,
            started_at=now,
        )

    async def complete(
        self, execution_id: str, result: ExecutionResult
    ) -> ExecutionSnapshot | None:
        """Record a terminal result (completed, or cancelled if that was the reason)."""
        status = (
            ExecutionStatus.CANCELLED
            if result.reason == StopReason.CANCELLED
            else ExecutionStatus.COMPLETED
        )
        return await self.update(
            execution_id,
            status=status,
            final_output=result.output,
            final_score=result.final_score,
            stop_reason=result.reason,
            stop_message=result.message,
            completed_at=utc_now(),
        )

    async def fail(self, execution_id: str, error_message: str) -> ExecutionSnapshot | None:
        return await self.update(
            execution_id,
            status=ExecutionStatus.FAILED,
            error_message=error_message,
            completed_at=utc_now(),
        )

    async def cancel(
        self, execution_id: str, reason: str | None = None
    ) -> ExecutionSnapshot | None:
        """Move a not-yet-started execution straight to cancelled."""
        return await self.update(
            execution_id,
            status=ExecutionStatus.CANCELLED,
            stop_reason=StopReason.CANCELLED,
            cancel_requested=True,
            cancel_reason=reason,
            completed_at=utc_now(),
        )

    async def request_cancel(
        self, execution_id: str, reason: str | None = None
    ) -> ExecutionSnapshot | None:
        """Flag a running execution; the orchestrator stops at the next boundary."""
        return await self.update(execution_id, cancel_requested=True, cancel_reason=reason)

    async def is_cancel_requested(self, execution_id: str) -> bool:
        snapshot = await self.get(execution_id)
        return snapshot is not None and (
            snapshot.cancel_requested or snapshot.status == ExecutionStatus.CANCELLED
        )

    async def delete(self, execution_id: str) -> bool:
        return await self.backend.delete(self._key(execution_id))

    async def exists(self, execution_id: str) -> bool:
        return await self.backend.exists(self._key(execution_id))

    async def list_ids(self) -> list[str]:
        keys = await self.backend.keys(f"{self.key_prefix}*")
        return [key[len(self.key_prefix):] for key in keys]

    async def list(
        self,
        status: ExecutionStatus | None = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: SortField = "updated_at",
        sort_order: SortOrder = "desc",
    ) -> tuple[list[ExecutionSnapshot], int]:
        """List snapshots by enumerating keys, then filtering.

        Fine for the moderate number of live executions kept here.

        Returns:
            (page of snapshots, total matching count)
        """
        snapshots = []
        for execution_id in await self.list_ids():
            snapshot = await self.get(execution_id)
            if snapshot is None:
                continue
            if status is not None and snapshot.status != status:
                continue
            snapshots.append(snapshot)

        def sort_key(snapshot: ExecutionSnapshot) -> Any:
            if sort_by == "score":
                return snapshot.final_score if snapshot.final_score is not None else (
                    snapshot.current_score if snapshot.current_score is not None else -1.0
                )
            return getattr(snapshot, sort_by)

        snapshots.sort(key=sort_key, reverse=sort_order == "desc")
        return snapshots[offset : offset + limit], len(snapshots)

    async def count_active(self) -> int:
        """Number of running executions."""
        _, total = await self.list(status=ExecutionStatus.RUNNING, limit=0)
        return total

    async def health(self) -> dict[str, Any]:
        healthy = await self.backend.ping()
        status = getattr(self.backend, "status", None)
        details = status() if callable(status) else {"backend": self.backend.name}
        return {"healthy": healthy, **details}
