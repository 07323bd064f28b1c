"""
SQLAlchemy ORM persistence models for period close orchestration and
event consumption.

Responsibility
--------------
``PeriodCloseRunModel`` tracks each close attempt generation with its four
step flags, failure details and the stored report.
``ProcessedEventModel`` is the idempotency ledger of consumed integration
events.

Architecture position
---------------------
**Services layer** -- ORM models consumed by ``PeriodCloseOrchestrator``
and ``EventConsumer``.  Inherits from ``TrackedBase`` (kernel db layer).

Invariants enforced
-------------------
* (fiscal_year, fiscal_period, plant_id, attempt) is unique.
* A run in a terminal status (COMPLETED, FAILED) is never modified; a
  retry opens the next attempt (see close_run_rules()).
* event_id is unique in the processed-event ledger.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import TrackedBase, UUIDString
from costing_kernel.db.immutability import ImmutabilityRule, status_in

# ---------------------------------------------------------------------------
# PeriodCloseRunModel
# ---------------------------------------------------------------------------


class PeriodCloseRunModel(TrackedBase):
    """
    Auditable record of a period close attempt generation.

    Maps to the ``PeriodCloseRun`` DTO in ``costing_services._close_types``.
    """

    __tablename__ = "costing_period_close_runs"

    __table_args__ = (
        UniqueConstraint(
            "fiscal_year", "fiscal_period", "plant_id", "attempt",
            name="uq_costing_close_run_attempt",
        ),
        Index("idx_costing_close_run_status", "status"),
    )

    plant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    fiscal_period: Mapped[int] = mapped_column(Integer, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")

    actual_cost_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    variances_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    wip_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    settlement_done: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    started_by: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    failed_step: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    report: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def to_dto(self):
        from costing_services._close_types import (
            CloseRunStatus,
            CloseStep,
            PeriodCloseReport,
            PeriodCloseRun,
        )

        return PeriodCloseRun(
            id=self.id,
            plant_id=self.plant_id,
            fiscal_year=self.fiscal_year,
            fiscal_period=self.fiscal_period,
            attempt=self.attempt,
            status=CloseRunStatus(self.status),
            actual_cost_done=self.actual_cost_done,
            variances_done=self.variances_done,
            wip_done=self.wip_done,
            settlement_done=self.settlement_done,
            started_by=self.started_by,
            started_at=self.started_at,
            completed_at=self.completed_at,
            failed_step=CloseStep(self.failed_step) if self.failed_step else None,
            error_code=self.error_code,
            error_message=self.error_message,
            report=PeriodCloseReport.from_payload(self.report) if self.report else None,
        )

    def __repr__(self) -> str:
        return (
            f"<PeriodCloseRunModel {self.plant_id} {self.fiscal_year}/"
            f"{self.fiscal_period:02d} #{self.attempt} [{self.status}]>"
        )


# ---------------------------------------------------------------------------
# ProcessedEventModel
# ---------------------------------------------------------------------------


class ProcessedEventModel(TrackedBase):
    """An integration event that has been consumed; replays are skipped."""

    __tablename__ = "costing_processed_events"

    event_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    result_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<ProcessedEvent {self.event_type} {self.event_id}>"


def close_run_rules() -> list[ImmutabilityRule]:
    return [
        ImmutabilityRule(
            model=PeriodCloseRunModel,
            entity_type="PeriodCloseRun",
            frozen_when=status_in("status", "completed", "failed"),
        ),
        ImmutabilityRule(
            model=ProcessedEventModel,
            entity_type="ProcessedEvent",
        ),
    ]
