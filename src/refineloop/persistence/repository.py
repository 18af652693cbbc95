"""Durable execution history (PostgreSQL via SQLAlchemy async)."""

from dataclasses import dataclass
from typing import Any, Literal

import structlog
from sqlalchemy import asc, delete, desc, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import selectinload

from ..config import DatabaseSettings
from ..schemas.execution import ExecutionSnapshot, ExecutionStatus, utc_now
from .models import AuditLogRow, Base, ExecutionRow, IterationRow

logger = structlog.get_logger(__name__)

_SORT_COLUMNS = {
    "created_at": ExecutionRow.created_at,
    "updated_at": ExecutionRow.updated_at,
    "score": ExecutionRow.final_score,
}


@dataclass
class ExecutionPage:
    """One page of stored executions."""

    items: list[ExecutionRow]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


class ExecutionRepository:
    """Terminal executions, their iterations and an audit trail.

    Never on the per-iteration hot path: each execution is written once,
    after its loop has ended.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "ExecutionRepository":
        kwargs: dict[str, Any] = {"echo": settings.echo}
        if not settings.url.startswith("sqlite"):
            kwargs.update(
                pool_size=settings.pool_size,
                max_overflow=settings.max_overflow,
                pool_pre_ping=True,
            )
        return cls(create_async_engine(settings.url, **kwargs))

    async def create_schema(self) -> None:
        """Create tables if they do not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ready")

    async def close(self) -> None:
        await self.engine.dispose()

    async def ping(self) -> bool:
        async with self._sessions() as session:
            await session.execute(select(1))
        return True

    async def save_terminal(
        self,
        snapshot: ExecutionSnapshot,
        total_duration_ms: int | None = None,
        estimated_cost_usd: float | None = None,
    ) -> None:
        """Insert a terminal execution with its full iteration history.

        Raises:
            ValueError: The snapshot is not terminal
            sqlalchemy.exc.IntegrityError: The execution was already stored
        """
        if not snapshot.is_terminal:
            raise ValueError(f"Execution {snapshot.id} is {snapshot.status.value}, not terminal")

        total_tokens = 0
        iterations = []
        for record in snapshot.iterations:
            generator_tokens = record.generator_usage.total_tokens if record.generator_usage else None
            evaluator_tokens = record.evaluator_usage.total_tokens if record.evaluator_usage else None
            total_tokens += (generator_tokens or 0) + (evaluator_tokens or 0)
            iterations.append(
                IterationRow(
                    number=record.number,
                    output=record.output,
                    score=record.feedback.score,
                    passed=record.feedback.passed,
                    feedback=record.feedback.model_dump(mode="json"),
                    duration_ms=record.duration_ms,
                    generator_tokens=generator_tokens,
                    evaluator_tokens=evaluator_tokens,
                    created_at=record.timestamp,
                )
            )

        row = ExecutionRow(
            id=snapshot.id,
            status=snapshot.status.value,
            task=snapshot.task,
            criteria=list(snapshot.criteria),
            max_iterations=snapshot.max_iterations,
            score_threshold=snapshot.score_threshold,
            final_output=snapshot.final_output,
            final_score=snapshot.final_score,
            total_iterations=snapshot.current_iteration,
            stop_reason=snapshot.stop_reason.value if snapshot.stop_reason else None,
            stop_message=snapshot.stop_message,
            error_message=snapshot.error_message,
            generator_model=snapshot.generator_model,
            evaluator_model=snapshot.evaluator_model,
            total_duration_ms=total_duration_ms,
            total_tokens=total_tokens,
            estimated_cost_usd=estimated_cost_usd,
            extra=dict(snapshot.metadata),
            created_at=snapshot.created_at,
            started_at=snapshot.started_at,
            completed_at=snapshot.completed_at,
            updated_at=utc_now(),
            iterations=iterations,
        )

        async with self._sessions() as session:
            async with session.begin():
                session.add(row)

        logger.info(
            "Execution persisted",
            execution_id=snapshot.id,
            status=snapshot.status.value,
            iterations=len(iterations),
        )

    async def get(self, execution_id: str, with_iterations: bool = False) -> ExecutionRow | None:
        stmt = select(ExecutionRow).where(ExecutionRow.id == execution_id)
        if with_iterations:
            stmt = stmt.options(selectinload(ExecutionRow.iterations))
        async with self._sessions() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def audit_logs(self, execution_id: str) -> list[AuditLogRow]:
        stmt = (
            select(AuditLogRow)
            .where(AuditLogRow.execution_id == execution_id)
            .order_by(AuditLogRow.id)
        )
        async with self._sessions() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def list(
        self,
        status: ExecutionStatus | None = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: Literal["created_at", "updated_at", "score"] = "created_at",
        sort_order: Literal["asc", "desc"] = "desc",
    ) -> ExecutionPage:
        """Paginated listing, optionally filtered by status."""
        stmt = select(ExecutionRow)
        count_stmt = select(func.count()).select_from(ExecutionRow)
        if status is not None:
            stmt = stmt.where(ExecutionRow.status == status.value)
            count_stmt = count_stmt.where(ExecutionRow.status == status.value)

        order = desc if sort_order == "desc" else asc
        stmt = (
            stmt.order_by(order(_SORT_COLUMNS[sort_by]), order(ExecutionRow.id))
            .limit(limit)
            .offset(offset)
        )

        async with self._sessions() as session:
            items = list((await session.execute(stmt)).scalars().all())
            total = (await session.execute(count_stmt)).scalar_one()

        return ExecutionPage(items=items, total=total, limit=limit, offset=offset)

    async def add_audit_log(
        self,
        action: str,
        execution_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        async with self._sessions() as session:
            async with session.begin():
                session.add(
                    AuditLogRow(execution_id=execution_id, action=action, details=details or {})
                )

    async def statistics(self) -> dict[str, Any]:
        """Status counts plus averages over completed executions."""
        async with self._sessions() as session:
            rows = await session.execute(
                select(ExecutionRow.status, func.count()).group_by(ExecutionRow.status)
            )
            by_status = {status: count for status, count in rows.all()}

            averages = (
                await session.execute(
                    select(
                        func.avg(ExecutionRow.total_iterations),
                        func.avg(ExecutionRow.total_duration_ms),
                        func.avg(ExecutionRow.final_score),
                    ).where(ExecutionRow.status == ExecutionStatus.COMPLETED.value)
                )
            ).one()

        avg_iterations, avg_duration_ms, avg_score = averages
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "avg_iterations": float(avg_iterations or 0),
            "avg_duration_ms": float(avg_duration_ms or 0),
            "avg_score": float(avg_score or 0),
        }

    async def delete(self, execution_id: str) -> bool:
        async with self._sessions() as session:
            async with session.begin():
                await session.execute(
                    delete(IterationRow).where(IterationRow.execution_id == execution_id)
                )
                result = await session.execute(
                    delete(ExecutionRow).where(ExecutionRow.id == execution_id)
                )
        return result.rowcount > 0
