"""Frozen DTOs returned by kernel services (never ORM instances)."""

from dataclasses import dataclass
from datetime import date, datetime
from uuid import UUID


@dataclass(frozen=True)
class FiscalPeriodInfo:
    id: UUID
    plant_id: str
    fiscal_year: int
    period: int
    start_date: date
    end_date: date
    status: str
    closing_run_id: UUID | None = None
    closed_at: datetime | None = None

    @property
    def label(self) -> str:
        return f"{self.fiscal_year}/{self.period:02d}"

    @property
    def is_open(self) -> bool:
        return self.status == "open"
