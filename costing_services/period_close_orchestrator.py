"""
costing_services.period_close_orchestrator -- Resumable period close.

Responsibility:
    Run the four close steps of a (fiscal year, period, plant) in strict
    order: actual cost, variances, WIP, settlement.  All costing logic lives
    in the module services; the orchestrator adds sequencing, the period
    lock, per-step commits and the resumable run record.

Architecture position:
    Services -- stateful orchestration over costing_modules + kernel.
    Module services are built with ``auto_commit=False``; the orchestrator
    owns every commit.

Invariants enforced:
    - The period lock (CLOSING) is taken when a run starts, before the
      actual-cost step reads the ledger; no posting enters the period while
      a run holds it.
    - Each step commits on its own; a completed step is never re-executed.
    - A COMPLETED run is returned unchanged on re-invocation; a RUNNING run
      resumes; a FAILED run is terminal and a retry opens the next attempt
      generation, inheriting the completed step flags.
    - Period N+1 cannot start closing while period N (same plant) is not
      CLOSED.

Failure modes:
    - PeriodSequenceError when the previous period is not closed.
    - PeriodLockedError when the period is CLOSED or locked by another run.
    - StepFailureError when a step fails: its own work is rolled back, the
      run is FAILED with the step name and cause, and the lock released.
    - ConcurrencyConflictError when two callers open the same attempt.
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Callable
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from costing_config import CostingConfig, get_active_config
from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.exceptions import (
    CloseRunNotFoundError,
    ConcurrencyConflictError,
    PeriodSequenceError,
    StepFailureError,
)
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.models.fiscal_period import PeriodStatus
from costing_kernel.services.period_service import PeriodService
from costing_kernel.utils.idempotency import deterministic_id
from costing_modules._service_helpers import transaction_boundary
from costing_modules.ledger.models import MessagePublisher
from costing_modules.ledger.service import MaterialLedgerService
from costing_modules.variance.service import VarianceAnalyzer
from costing_modules.wip.service import WipService
from costing_services._close_types import (
    CLOSE_STEPS,
    CloseRunStatus,
    CloseStep,
    PeriodCloseReport,
    PeriodCloseRun,
)
from costing_services.orm import PeriodCloseRunModel
from costing_services.settlement import (
    RecordingSettlementLedger,
    SettlementInstruction,
    SettlementLedger,
)

logger = get_logger("services.period_close")

_ZERO = Decimal("0")


class PeriodCloseOrchestrator:
    """
    Sequences the close steps of one plant's fiscal period.

    Contract:
        Injected module services must share the session and be built with
        ``auto_commit=False``; defaults are built that way.
    Guarantees:
        - ``close`` is safe to call repeatedly for the same period.
        - Cancellation (``should_cancel`` returning True) is honoured only
          between steps; the run stays RUNNING with the period locked and
          the next ``close`` resumes it.
    """

    def __init__(
        self,
        session: Session,
        config: CostingConfig | None = None,
        clock: Clock | None = None,
        settlement_ledger: SettlementLedger | None = None,
        publisher: MessagePublisher | None = None,
        ledger: MaterialLedgerService | None = None,
        variances: VarianceAnalyzer | None = None,
        wip: WipService | None = None,
    ) -> None:
        self._session = session
        self._config = config or get_active_config()
        self._clock = clock or SystemClock()
        self._settlement_ledger = settlement_ledger or RecordingSettlementLedger()
        self._periods = PeriodService(session, self._clock)
        self._ledger = ledger or MaterialLedgerService(
            session, config=self._config, clock=self._clock,
            publisher=publisher, auto_commit=False,
        )
        self._variances = variances or VarianceAnalyzer(
            session, config=self._config, clock=self._clock, auto_commit=False
        )
        self._wip = wip or WipService(
            session, config=self._config, clock=self._clock, auto_commit=False
        )

    @property
    def settlement_ledger(self) -> SettlementLedger:
        return self._settlement_ledger

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    def close(
        self,
        fiscal_year: int,
        period: int,
        plant_id: str,
        actor_id: UUID,
        should_cancel: Callable[[], bool] | None = None,
    ) -> PeriodCloseRun:
        """
        Close (or continue closing) a period.

        Returns the run record: COMPLETED with its report, or RUNNING when
        cancelled between steps.  Raises StepFailureError after recording a
        failed step on the run.
        """
        with LogContext.bind(plant_id=plant_id, actor_id=str(actor_id)):
            row = self._start_or_resume(fiscal_year, period, plant_id, actor_id)
            if row.status == CloseRunStatus.COMPLETED.value:
                logger.info(
                    "period_close_already_completed",
                    extra={"run_id": str(row.id), "attempt": row.attempt},
                )
                return row.to_dto()

            with LogContext.bind(run_id=str(row.id)):
                for step in CLOSE_STEPS:
                    if getattr(row, f"{step.value}_done"):
                        continue
                    if should_cancel is not None and should_cancel():
                        logger.warning(
                            "period_close_cancelled",
                            extra={"next_step": step.value, "attempt": row.attempt},
                        )
                        return row.to_dto()
                    self._run_step(row, step, actor_id)

                dto = row.to_dto()
                logger.info(
                    "period_close_completed",
                    extra={
                        "attempt": dto.attempt,
                        "materials_processed": dto.report.materials_processed,
                        "total_variance": str(dto.report.total_variance),
                        "settlement_instructions": dto.report.settlement_instruction_count,
                    },
                )
                return dto

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_run(self, run_id: UUID) -> PeriodCloseRun:
        row = self._session.get(PeriodCloseRunModel, run_id)
        if row is None:
            raise CloseRunNotFoundError(str(run_id))
        return row.to_dto()

    def latest_run(
        self, fiscal_year: int, period: int, plant_id: str
    ) -> PeriodCloseRun | None:
        row = self._latest_row(fiscal_year, period, plant_id)
        return row.to_dto() if row is not None else None

    def runs_for_period(
        self, fiscal_year: int, period: int, plant_id: str
    ) -> list[PeriodCloseRun]:
        rows = self._session.execute(
            select(PeriodCloseRunModel)
            .where(
                PeriodCloseRunModel.plant_id == plant_id,
                PeriodCloseRunModel.fiscal_year == fiscal_year,
                PeriodCloseRunModel.fiscal_period == period,
            )
            .order_by(PeriodCloseRunModel.attempt)
        ).scalars()
        return [r.to_dto() for r in rows]

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _latest_row(
        self, fiscal_year: int, period: int, plant_id: str
    ) -> PeriodCloseRunModel | None:
        return self._session.execute(
            select(PeriodCloseRunModel)
            .where(
                PeriodCloseRunModel.plant_id == plant_id,
                PeriodCloseRunModel.fiscal_year == fiscal_year,
                PeriodCloseRunModel.fiscal_period == period,
            )
            .order_by(PeriodCloseRunModel.attempt.desc())
            .limit(1)
        ).scalar_one_or_none()

    def _start_or_resume(
        self, fiscal_year: int, period: int, plant_id: str, actor_id: UUID
    ) -> PeriodCloseRunModel:
        with transaction_boundary(
            self._session, True, logger, "period_close_start",
            plant_id=plant_id, fiscal_year=fiscal_year, fiscal_period=period,
        ):
            latest = self._latest_row(fiscal_year, period, plant_id)
            if latest is not None and latest.status == CloseRunStatus.COMPLETED.value:
                return latest
            if latest is not None and latest.status == CloseRunStatus.RUNNING.value:
                self._periods.begin_closing(plant_id, fiscal_year, period, latest.id, actor_id)
                logger.info(
                    "period_close_resumed",
                    extra={"run_id": str(latest.id), "attempt": latest.attempt},
                )
                return latest

            self._check_sequence(fiscal_year, period, plant_id)
            row = PeriodCloseRunModel(
                plant_id=plant_id,
                fiscal_year=fiscal_year,
                fiscal_period=period,
                attempt=latest.attempt + 1 if latest is not None else 1,
                status=CloseRunStatus.RUNNING.value,
                started_by=actor_id,
                started_at=self._clock.now(),
                created_by_id=actor_id,
            )
            for step in CLOSE_STEPS:
                inherited = latest is not None and getattr(latest, f"{step.value}_done")
                setattr(row, f"{step.value}_done", inherited)
            self._session.add(row)
            try:
                self._session.flush()
            except IntegrityError as exc:
                raise ConcurrencyConflictError(
                    "PeriodCloseRun", f"{plant_id}/{fiscal_year}/{period:02d}#{row.attempt}"
                ) from exc

            self._periods.begin_closing(plant_id, fiscal_year, period, row.id, actor_id)
            logger.info(
                "period_close_started",
                extra={
                    "run_id": str(row.id),
                    "attempt": row.attempt,
                    "inherited_steps": [
                        s.value for s in CLOSE_STEPS if getattr(row, f"{s.value}_done")
                    ],
                },
            )
        return row

    def _check_sequence(self, fiscal_year: int, period: int, plant_id: str) -> None:
        previous = self._periods.get_previous_period(plant_id, fiscal_year, period)
        if previous is not None and previous.status != PeriodStatus.CLOSED.value:
            logger.warning(
                "period_close_out_of_sequence",
                extra={"requested": f"{fiscal_year}/{period:02d}", "blocking": previous.label},
            )
            raise PeriodSequenceError(plant_id, f"{fiscal_year}/{period:02d}", previous.label)

    def _run_step(self, row: PeriodCloseRunModel, step: CloseStep, actor_id: UUID) -> None:
        run_id = row.id
        t0 = time.monotonic()
        logger.info("period_close_step_started", extra={"step": step.value})
        try:
            with transaction_boundary(
                self._session, True, logger, f"period_close_{step.value}", run_id=run_id,
            ):
                detail = self._execute(step, row, actor_id)
                setattr(row, f"{step.value}_done", True)
                row.updated_by_id = actor_id
                self._session.flush()
        except Exception as exc:
            self._record_failure(run_id, step, exc, actor_id)
            raise StepFailureError(step.value, exc) from exc

        logger.info(
            "period_close_step_completed",
            extra={
                "step": step.value,
                "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                **detail,
            },
        )

    def _record_failure(
        self, run_id: UUID, step: CloseStep, exc: Exception, actor_id: UUID
    ) -> None:
        failure = StepFailureError(step.value, exc)
        with transaction_boundary(
            self._session, True, logger, "period_close_failure_record", run_id=run_id,
        ):
            row = self._session.get(PeriodCloseRunModel, run_id)
            row.status = CloseRunStatus.FAILED.value
            row.failed_step = step.value
            row.error_code = failure.cause_code or failure.cause_type
            row.error_message = str(failure)
            row.completed_at = self._clock.now()
            row.updated_by_id = actor_id
            self._session.flush()
            self._periods.cancel_closing(
                row.plant_id, row.fiscal_year, row.fiscal_period, actor_id
            )
        logger.error(
            "period_close_step_failed",
            extra={
                "step": step.value,
                "error_code": row.error_code,
                "error": failure.cause_message,
            },
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _execute(
        self, step: CloseStep, row: PeriodCloseRunModel, actor_id: UUID
    ) -> dict[str, object]:
        key = (row.plant_id, row.fiscal_year, row.fiscal_period)
        if step is CloseStep.ACTUAL_COST:
            records = self._ledger.record_actual_costs(*key, actor_id, run_id=row.id)
            return {"materials": len(records)}
        if step is CloseStep.VARIANCES:
            created = self._variances.analyze_period(*key, actor_id, run_id=row.id)
            return {"variances_created": len(created)}
        if step is CloseStep.WIP:
            positions = self._wip.calculate_positions(*key, actor_id, run_id=row.id)
            return {"wip_positions": len(positions)}
        return self._settle(row, actor_id)

    def _settle(self, row: PeriodCloseRunModel, actor_id: UUID) -> dict[str, object]:
        plant_id, year, period = row.plant_id, row.fiscal_year, row.fiscal_period
        currency = self._config.currency
        period_ref = f"{plant_id}/{year}/{period:02d}"

        variance_report = self._variances.build_report(plant_id, year, period)
        unsettled = [
            v for v in self._variances.variances_for_period(plant_id, year, period)
            if not v.settled
        ]
        positions = [
            p for p in self._wip.positions_for_period(plant_id, year, period)
            if not p.settled
        ]

        totals: dict[str, Decimal] = defaultdict(lambda: _ZERO)
        for v in unsettled:
            category = v.category.value
            totals[f"{category}.price"] += v.price_variance + v.rounding_difference
            totals[f"{category}.{v.quantity_kind.value}"] += v.quantity_variance
        wip_total = sum((p.balance for p in positions), _ZERO)
        totals["wip"] += wip_total

        instructions = [
            SettlementInstruction(
                instruction_id=deterministic_id("settlement", period_ref, key),
                account=self._config.settlement_accounts.account_for(key),
                amount=amount,
                currency=currency,
                period_ref=period_ref,
                source=key,
            )
            for key, amount in sorted(totals.items())
            if amount != _ZERO
        ]
        # Sent before the step commits.  If the step then fails, the ledger
        # already holds these ids and the next attempt re-sends the same ones.
        for instruction in instructions:
            self._settlement_ledger.post(instruction)

        settlement_ref = f"{period_ref}#{row.attempt}"
        self._variances.settle_period(plant_id, year, period, settlement_ref, actor_id)
        self._wip.settle_positions(plant_id, year, period, settlement_ref, actor_id)
        self._periods.close_period(plant_id, year, period, actor_id)

        report = PeriodCloseReport(
            plant_id=plant_id,
            fiscal_year=year,
            fiscal_period=period,
            currency=currency,
            materials_processed=len(
                self._ledger.actual_cost_records(plant_id, year, period)
            ),
            variance_count=variance_report.variance_count,
            total_variance=variance_report.total_variance,
            favorable_total=variance_report.favorable_total,
            unfavorable_total=variance_report.unfavorable_total,
            wip_total=wip_total,
            wip_positions=len(positions),
            settlement_instruction_count=len(instructions),
            by_category=dict(variance_report.by_category),
        )
        row.status = CloseRunStatus.COMPLETED.value
        row.completed_at = self._clock.now()
        row.report = report.to_payload()
        return {"settlement_instructions": len(instructions), "settlement_ref": settlement_ref}
