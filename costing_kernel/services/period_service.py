"""
PeriodService -- fiscal period lifecycle and posting-date validation.

Responsibility:
    Manages the per-plant fiscal period lifecycle (OPEN -> CLOSING -> CLOSED)
    and validates that material postings target an OPEN period.

Architecture position:
    Kernel > Services.  Called by the material ledger before every posting
    and by PeriodCloseOrchestrator to take and release the close lock.

Invariants enforced:
    - No posting into a CLOSING or CLOSED period.
    - Period rows are read with ``SELECT ... FOR UPDATE`` before lifecycle
      transitions so two close runs cannot both take the lock.
    - Flush-only: never commits or rolls back the session.

Failure modes:
    - PeriodNotFoundError: no period covers the date or key.
    - PeriodLockedError: period is CLOSING or CLOSED.
    - ValueError: start_date after end_date or overlapping ranges.
"""

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.domain.dtos import FiscalPeriodInfo
from costing_kernel.exceptions import PeriodLockedError, PeriodNotFoundError
from costing_kernel.logging_config import get_logger
from costing_kernel.models.fiscal_period import FiscalPeriod, PeriodStatus

logger = get_logger("services.period")


class PeriodService:
    """Fiscal period lifecycle for one session."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    @staticmethod
    def _to_dto(period: FiscalPeriod) -> FiscalPeriodInfo:
        return FiscalPeriodInfo(
            id=period.id,
            plant_id=period.plant_id,
            fiscal_year=period.fiscal_year,
            period=period.period,
            start_date=period.start_date,
            end_date=period.end_date,
            status=period.status,
            closing_run_id=period.closing_run_id,
            closed_at=period.closed_at,
        )

    def create_period(
        self,
        plant_id: str,
        fiscal_year: int,
        period: int,
        start_date: date,
        end_date: date,
        actor_id: UUID,
    ) -> FiscalPeriodInfo:
        if start_date > end_date:
            raise ValueError(
                f"start_date ({start_date}) cannot be after end_date ({end_date})"
            )

        overlapping = self._session.execute(
            select(FiscalPeriod).where(
                FiscalPeriod.plant_id == plant_id,
                FiscalPeriod.start_date <= end_date,
                FiscalPeriod.end_date >= start_date,
            )
        ).scalars().first()
        if overlapping is not None:
            raise ValueError(
                f"Period {fiscal_year}/{period:02d} overlaps {overlapping.label} "
                f"at plant {plant_id}"
            )

        row = FiscalPeriod(
            plant_id=plant_id,
            fiscal_year=fiscal_year,
            period=period,
            start_date=start_date,
            end_date=end_date,
            status=PeriodStatus.OPEN.value,
            created_by_id=actor_id,
        )
        self._session.add(row)
        self._session.flush()

        logger.info(
            "period_created",
            extra={
                "plant_id": plant_id,
                "fiscal_year": fiscal_year,
                "fiscal_period": period,
                "start_date": str(start_date),
                "end_date": str(end_date),
            },
        )
        return self._to_dto(row)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _get_orm(
        self, plant_id: str, fiscal_year: int, period: int, for_update: bool = False
    ) -> FiscalPeriod:
        stmt = select(FiscalPeriod).where(
            FiscalPeriod.plant_id == plant_id,
            FiscalPeriod.fiscal_year == fiscal_year,
            FiscalPeriod.period == period,
        )
        if for_update:
            stmt = stmt.with_for_update()
        row = self._session.execute(stmt).scalar_one_or_none()
        if row is None:
            raise PeriodNotFoundError(plant_id, f"{fiscal_year}/{period:02d}")
        return row

    def get_period(self, plant_id: str, fiscal_year: int, period: int) -> FiscalPeriodInfo:
        return self._to_dto(self._get_orm(plant_id, fiscal_year, period))

    def get_period_for_date(self, plant_id: str, posting_date: date) -> FiscalPeriodInfo:
        row = self._session.execute(
            select(FiscalPeriod).where(
                FiscalPeriod.plant_id == plant_id,
                FiscalPeriod.start_date <= posting_date,
                FiscalPeriod.end_date >= posting_date,
            )
        ).scalar_one_or_none()
        if row is None:
            raise PeriodNotFoundError(plant_id, str(posting_date))
        return self._to_dto(row)

    def get_previous_period(
        self, plant_id: str, fiscal_year: int, period: int
    ) -> FiscalPeriodInfo | None:
        """The period immediately before the given one at the same plant."""
        current = self._get_orm(plant_id, fiscal_year, period)
        row = self._session.execute(
            select(FiscalPeriod)
            .where(
                FiscalPeriod.plant_id == plant_id,
                FiscalPeriod.end_date < current.start_date,
            )
            .order_by(FiscalPeriod.end_date.desc())
            .limit(1)
        ).scalar_one_or_none()
        return self._to_dto(row) if row is not None else None

    def validate_posting_date(self, plant_id: str, posting_date: date) -> FiscalPeriodInfo:
        """Return the OPEN period covering the date, or raise."""
        info = self.get_period_for_date(plant_id, posting_date)
        if not info.is_open:
            logger.warning(
                "posting_rejected_period_locked",
                extra={
                    "plant_id": plant_id,
                    "posting_date": str(posting_date),
                    "fiscal_year": info.fiscal_year,
                    "fiscal_period": info.period,
                    "status": info.status,
                },
            )
            raise PeriodLockedError(plant_id, info.fiscal_year, info.period, info.status)
        return info

    # -------------------------------------------------------------------------
    # Close lock
    # -------------------------------------------------------------------------

    def begin_closing(
        self, plant_id: str, fiscal_year: int, period: int, run_id: UUID, actor_id: UUID
    ) -> FiscalPeriodInfo:
        """Take the close lock: OPEN -> CLOSING.  Re-entrant for the same run."""
        row = self._get_orm(plant_id, fiscal_year, period, for_update=True)
        if row.status == PeriodStatus.CLOSED.value:
            raise PeriodLockedError(plant_id, fiscal_year, period, row.status)
        if row.status == PeriodStatus.CLOSING.value and row.closing_run_id not in (None, run_id):
            raise PeriodLockedError(plant_id, fiscal_year, period, row.status)

        row.status = PeriodStatus.CLOSING.value
        row.closing_run_id = run_id
        row.updated_by_id = actor_id
        self._session.flush()
        logger.info(
            "period_closing_started",
            extra={"plant_id": plant_id, "period": row.label, "run_id": str(run_id)},
        )
        return self._to_dto(row)

    def cancel_closing(
        self, plant_id: str, fiscal_year: int, period: int, actor_id: UUID
    ) -> FiscalPeriodInfo:
        """Release the close lock after a failed run: CLOSING -> OPEN."""
        row = self._get_orm(plant_id, fiscal_year, period, for_update=True)
        if row.status == PeriodStatus.CLOSING.value:
            row.status = PeriodStatus.OPEN.value
            row.closing_run_id = None
            row.updated_by_id = actor_id
            self._session.flush()
            logger.info(
                "period_closing_released",
                extra={"plant_id": plant_id, "period": row.label},
            )
        return self._to_dto(row)

    def close_period(
        self, plant_id: str, fiscal_year: int, period: int, actor_id: UUID
    ) -> FiscalPeriodInfo:
        """CLOSING -> CLOSED."""
        row = self._get_orm(plant_id, fiscal_year, period, for_update=True)
        if row.status == PeriodStatus.CLOSED.value:
            raise PeriodLockedError(plant_id, fiscal_year, period, row.status)

        row.status = PeriodStatus.CLOSED.value
        row.closed_at = self._clock.now()
        row.closed_by_id = actor_id
        row.updated_by_id = actor_id
        self._session.flush()
        logger.info(
            "period_closed",
            extra={"plant_id": plant_id, "period": row.label, "actor_id": str(actor_id)},
        )
        return self._to_dto(row)
