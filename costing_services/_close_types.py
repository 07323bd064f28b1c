"""
costing_services._close_types -- Period close DTOs for the close orchestrator.

Responsibility:
    Frozen dataclasses for the period close lifecycle: run status, the four
    ordered close steps, the close run record and the close report.

Architecture position:
    Services -- these types live in costing_services/ because the
    orchestrator that produces and consumes them lives here.

Invariants enforced:
    - All DTOs are frozen dataclasses.
    - CLOSE_STEPS is the only order in which steps execute.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class CloseRunStatus(Enum):
    """Close run lifecycle: RUNNING -> COMPLETED | FAILED."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class CloseStep(Enum):
    ACTUAL_COST = "actual_cost"
    VARIANCES = "variances"
    WIP = "wip"
    SETTLEMENT = "settlement"


CLOSE_STEPS: tuple[CloseStep, ...] = (
    CloseStep.ACTUAL_COST,
    CloseStep.VARIANCES,
    CloseStep.WIP,
    CloseStep.SETTLEMENT,
)


@dataclass(frozen=True)
class PeriodCloseReport:
    """Outcome of a completed close, stored on the run."""
    plant_id: str
    fiscal_year: int
    fiscal_period: int
    currency: str
    materials_processed: int
    variance_count: int
    total_variance: Decimal
    favorable_total: Decimal
    unfavorable_total: Decimal
    wip_total: Decimal
    wip_positions: int
    settlement_instruction_count: int
    by_category: dict[str, Decimal] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "plant_id": self.plant_id,
            "fiscal_year": self.fiscal_year,
            "fiscal_period": self.fiscal_period,
            "currency": self.currency,
            "materials_processed": self.materials_processed,
            "variance_count": self.variance_count,
            "total_variance": str(self.total_variance),
            "favorable_total": str(self.favorable_total),
            "unfavorable_total": str(self.unfavorable_total),
            "wip_total": str(self.wip_total),
            "wip_positions": self.wip_positions,
            "settlement_instruction_count": self.settlement_instruction_count,
            "by_category": {k: str(v) for k, v in self.by_category.items()},
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PeriodCloseReport":
        return cls(
            plant_id=payload["plant_id"],
            fiscal_year=payload["fiscal_year"],
            fiscal_period=payload["fiscal_period"],
            currency=payload["currency"],
            materials_processed=payload["materials_processed"],
            variance_count=payload["variance_count"],
            total_variance=Decimal(payload["total_variance"]),
            favorable_total=Decimal(payload["favorable_total"]),
            unfavorable_total=Decimal(payload["unfavorable_total"]),
            wip_total=Decimal(payload["wip_total"]),
            wip_positions=payload["wip_positions"],
            settlement_instruction_count=payload["settlement_instruction_count"],
            by_category={
                k: Decimal(v) for k, v in payload.get("by_category", {}).items()
            },
        )


@dataclass(frozen=True)
class PeriodCloseRun:
    """One attempt generation of a period close."""
    id: UUID
    plant_id: str
    fiscal_year: int
    fiscal_period: int
    attempt: int
    status: CloseRunStatus
    actual_cost_done: bool
    variances_done: bool
    wip_done: bool
    settlement_done: bool
    started_by: UUID
    started_at: datetime
    completed_at: datetime | None = None
    failed_step: CloseStep | None = None
    error_code: str | None = None
    error_message: str | None = None
    report: PeriodCloseReport | None = None

    def step_done(self, step: CloseStep) -> bool:
        return getattr(self, f"{step.value}_done")

    @property
    def completed_steps(self) -> tuple[CloseStep, ...]:
        return tuple(s for s in CLOSE_STEPS if self.step_done(s))

    @property
    def next_step(self) -> CloseStep | None:
        for step in CLOSE_STEPS:
            if not self.step_done(step):
                return step
        return None

    @property
    def period_ref(self) -> str:
        return f"{self.plant_id}/{self.fiscal_year}/{self.fiscal_period:02d}"
