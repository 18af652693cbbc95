"""SQLAlchemy ORM tables for the durable execution history."""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..schemas.execution import utc_now


class Base(DeclarativeBase):
    pass


class ExecutionRow(Base):
    """One terminal execution. Written once, after the loop ends."""

    __tablename__ = "executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), index=True)
    task: Mapped[str] = mapped_column(Text)
    criteria: Mapped[list[str]] = mapped_column(JSON)
    max_iterations: Mapped[int] = mapped_column(Integer)
    score_threshold: Mapped[float] = mapped_column(Float)

    final_output: Mapped[str | None] = mapped_column(Text, nullable=True)
    final_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_iterations: Mapped[int] = mapped_column(Integer, default=0)
    stop_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    stop_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    generator_model: Mapped[str] = mapped_column(String(100))
    evaluator_model: Mapped[str] = mapped_column(String(100))
    total_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    estimated_cost_usd: Mapped[float | None] = mapped_column(Float, nullable=True)
    extra: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    iterations: Mapped[list["IterationRow"]] = relationship(
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="IterationRow.number",
        lazy="raise",
    )

    def to_dict(self, include_iterations: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "status": self.status,
            "task": self.task,
            "criteria": list(self.criteria or []),
            "max_iterations": self.max_iterations,
            "score_threshold": self.score_threshold,
            "current_iteration": self.total_iterations,
            "final_output": self.final_output,
            "final_score": self.final_score,
            "stop_reason": self.stop_reason,
            "stop_message": self.stop_message,
            "error_message": self.error_message,
            "generator_model": self.generator_model,
            "evaluator_model": self.evaluator_model,
            "total_duration_ms": self.total_duration_ms,
            "total_tokens": self.total_tokens,
            "estimated_cost_usd": self.estimated_cost_usd,
            "metadata": dict(self.extra or {}),
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "updated_at": self.updated_at,
        }
        if include_iterations:
            data["iterations"] = [row.to_dict() for row in self.iterations]
        return data


class IterationRow(Base):
    __tablename__ = "iterations"
    __table_args__ = (UniqueConstraint("execution_id", "number", name="uq_iterations_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str] = mapped_column(
        ForeignKey("executions.id", ondelete="CASCADE"), index=True
    )
    number: Mapped[int] = mapped_column(Integer)
    output: Mapped[str] = mapped_column(Text)
    score: Mapped[float] = mapped_column(Float)
    passed: Mapped[bool] = mapped_column(Boolean)
    feedback: Mapped[dict[str, Any]] = mapped_column(JSON)
    duration_ms: Mapped[int] = mapped_column(Integer)
    generator_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    evaluator_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    execution: Mapped[ExecutionRow] = relationship(back_populates="iterations")

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "output": self.output,
            "score": self.score,
            "passed": self.passed,
            "feedback": self.feedback,
            "duration_ms": self.duration_ms,
            "generator_tokens": self.generator_tokens,
            "evaluator_tokens": self.evaluator_tokens,
            "timestamp": self.created_at,
        }


class AuditLogRow(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    execution_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(50), index=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
