"""
Module: costing_kernel.models.fiscal_period
Responsibility: ORM persistence for fiscal periods per plant -- controls
    which posting dates accept material movements.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - Only OPEN periods accept postings.  CLOSING is the lock set when a
      period-close run starts; CLOSED is final.
    - (plant_id, fiscal_year, period) is unique.

Failure modes:
    - PeriodLockedError when posting into a CLOSING or CLOSED period.
    - PeriodNotFoundError when no period covers the posting date.
"""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import Date, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from costing_kernel.db.base import TrackedBase, UUIDString


class PeriodStatus(str, Enum):
    """Transitions are OPEN -> CLOSING -> CLOSED; CLOSING may fall back to OPEN."""

    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class FiscalPeriod(TrackedBase):
    """Fiscal period of one plant."""

    __tablename__ = "costing_fiscal_periods"

    __table_args__ = (
        UniqueConstraint(
            "plant_id", "fiscal_year", "period", name="uq_costing_period_key"
        ),
        Index("idx_costing_period_dates", "plant_id", "start_date", "end_date"),
    )

    plant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    fiscal_year: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[int] = mapped_column(Integer, nullable=False)

    # Inclusive boundaries
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default=PeriodStatus.OPEN.value, nullable=False
    )

    # Close run holding the CLOSING lock
    closing_run_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    closed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<FiscalPeriod {self.plant_id} {self.fiscal_year}/{self.period:02d}: "
            f"{self.status}>"
        )

    @property
    def label(self) -> str:
        return f"{self.fiscal_year}/{self.period:02d}"

    @property
    def is_open(self) -> bool:
        return self.status == PeriodStatus.OPEN.value

    @property
    def is_closed(self) -> bool:
        return self.status == PeriodStatus.CLOSED.value

    def contains_date(self, check_date: date) -> bool:
        return self.start_date <= check_date <= self.end_date
