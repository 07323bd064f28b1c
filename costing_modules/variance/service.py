"""
Variance Analyzer (``costing_modules.variance.service``).

Responsibility
--------------
Materializes one CostVariance per variance-bearing movement of a period
and reports on them:

* receipts of standard-priced materials -> price variance
* production consumption with a standard quantity -> quantity variance
  at standard price (the price deviation belongs to the receipt)
* invoice differences and landed cost on standard-priced materials -> price
  variance (value-only, no quantity)
* labor and machine confirmations with standard hours -> efficiency
  variance
* reversals -> the negated variance of the entry they reverse

Architecture
------------
Layer: **Modules**.  Reads the period through ``MaterialLedgerService``
and ``WipService`` queries; the arithmetic is
``costing_engines.variance.VarianceCalculator``.

Invariants
----------
- One variance per source (unique (source_type, source_id)); re-running
  the analysis for a period adds nothing.
- price + quantity + rounding_difference == total for every record.
- ``settle()`` stamps a variance exactly once.

Failure Modes
-------------
- VarianceNotFoundError for an unknown id.
- AlreadySettledError on a second ``settle()``.
- ConcurrencyConflictError on a stale ``expected_version`` or a
  concurrent settle.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import replace
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_config import CostingConfig, get_active_config
from costing_engines.variance import (
    VarianceCalculator,
    VarianceClassification,
    VarianceDecomposition,
    VarianceKind,
)
from costing_kernel.db.versioning import check_expected_version, stale_data_as_conflict
from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.domain.values import Money
from costing_kernel.exceptions import AlreadySettledError, VarianceNotFoundError
from costing_kernel.logging_config import get_logger
from costing_modules._service_helpers import transaction_boundary
from costing_modules.ledger.models import (
    ADJUSTMENT_TYPES,
    ISSUE_TYPES,
    RECEIPT_TYPES,
    MaterialLedgerEntry,
    TransactionType,
)
from costing_modules.ledger.service import MaterialLedgerService
from costing_modules.variance.models import (
    CostVariance,
    MaterialVarianceSummary,
    VarianceCategory,
    VarianceReport,
    VarianceSource,
)
from costing_modules.variance.orm import CostVarianceModel
from costing_modules.wip.models import WipCostEntry, WipCostType
from costing_modules.wip.service import WipService

logger = get_logger("modules.variance.service")

_ZERO = Decimal("0")


class VarianceAnalyzer:
    """
    Period variance materialization, reporting and settlement.

    Contract
    --------
    Public methods return frozen DTOs and own their transaction unless the
    analyzer was built with ``auto_commit=False``.
    """

    def __init__(
        self,
        session: Session,
        config: CostingConfig | None = None,
        clock: Clock | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._config = config or get_active_config()
        self._clock = clock or SystemClock()
        self._auto_commit = auto_commit
        self._calculator = VarianceCalculator()
        self._currency = self._config.currency
        self._ledger = MaterialLedgerService(
            session, config=self._config, clock=self._clock, auto_commit=False
        )
        self._wip = WipService(
            session, config=self._config, clock=self._clock, auto_commit=False
        )

    # =========================================================================
    # Analysis
    # =========================================================================

    def analyze_period(
        self,
        plant_id: str,
        fiscal_year: int,
        fiscal_period: int,
        actor_id: UUID,
        run_id: UUID | None = None,
    ) -> list[CostVariance]:
        """Materialize the variances of a period; returns all of them."""
        logger.info(
            "variance_analysis_started",
            extra={
                "plant_id": plant_id,
                "fiscal_year": fiscal_year,
                "fiscal_period": fiscal_period,
            },
        )
        with transaction_boundary(
            self._session, self._auto_commit, logger, "variance_analysis",
            plant_id=plant_id, fiscal_year=fiscal_year, fiscal_period=fiscal_period,
        ):
            existing = {
                (r.source_type, r.source_id)
                for r in self._period_rows(plant_id, fiscal_year, fiscal_period)
            }
            created = 0

            for entry in self._ledger.entries_for_period(plant_id, fiscal_year, fiscal_period):
                if (VarianceSource.LEDGER_ENTRY.value, entry.id) in existing:
                    continue
                row = self._from_ledger_entry(entry, actor_id, run_id)
                if row is not None:
                    self._session.add(row)
                    created += 1

            for wip_entry in self._wip.entries_for_period(plant_id, fiscal_year, fiscal_period):
                if not wip_entry.bears_efficiency_variance:
                    continue
                if (VarianceSource.WIP_ENTRY.value, wip_entry.id) in existing:
                    continue
                row = self._from_wip_entry(wip_entry, actor_id, run_id)
                if row is not None:
                    self._session.add(row)
                    created += 1

            self._session.flush()
            variances = self.variances_for_period(plant_id, fiscal_year, fiscal_period)

        logger.info(
            "variance_analysis_completed",
            extra={
                "plant_id": plant_id,
                "fiscal_year": fiscal_year,
                "fiscal_period": fiscal_period,
                "variances_created": created,
                "total": len(variances),
            },
        )
        return variances

    # =========================================================================
    # Reporting
    # =========================================================================

    def build_report(
        self,
        plant_id: str,
        fiscal_year: int,
        fiscal_period: int,
        top_n: int | None = None,
    ) -> VarianceReport:
        """Aggregate a period's variances per material and category."""
        top_n = self._config.variance_top_n if top_n is None else top_n
        variances = self.variances_for_period(plant_id, fiscal_year, fiscal_period)

        by_category: dict[str, Decimal] = {c.value: _ZERO for c in VarianceCategory}
        per_material: dict[str, list[CostVariance]] = defaultdict(list)
        favorable = unfavorable = _ZERO
        for v in variances:
            by_category[v.category.value] += v.total_variance
            per_material[v.material_id].append(v)
            if v.total_variance < 0:
                favorable += v.total_variance
            else:
                unfavorable += v.total_variance

        summaries = []
        for material_id in sorted(per_material):
            items = per_material[material_id]
            total = sum((v.total_variance for v in items), _ZERO)
            summaries.append(
                MaterialVarianceSummary(
                    material_id=material_id,
                    price_variance=sum((v.price_variance for v in items), _ZERO),
                    quantity_variance=sum((v.quantity_variance for v in items), _ZERO),
                    total_variance=total,
                    variance_count=len(items),
                    classification=VarianceClassification.of(Money.of(total, self._currency)),
                )
            )

        top_favorable, top_unfavorable = self._calculator.rank_contributors(
            ((v.material_id, Money.of(v.total_variance, self._currency)) for v in variances),
            self._currency,
            top_n,
        )

        report = VarianceReport(
            plant_id=plant_id,
            fiscal_year=fiscal_year,
            fiscal_period=fiscal_period,
            currency=self._currency,
            variance_count=len(variances),
            total_variance=favorable + unfavorable,
            favorable_total=favorable,
            unfavorable_total=unfavorable,
            by_category=by_category,
            by_material=tuple(summaries),
            top_favorable=tuple(top_favorable),
            top_unfavorable=tuple(top_unfavorable),
        )
        logger.info(
            "variance_report_built",
            extra={
                "plant_id": plant_id,
                "fiscal_year": fiscal_year,
                "fiscal_period": fiscal_period,
                "variance_count": report.variance_count,
                "total_variance": str(report.total_variance),
            },
        )
        return report

    # =========================================================================
    # Settlement
    # =========================================================================

    def settle(
        self,
        variance_id: UUID,
        settlement_ref: str,
        actor_id: UUID,
        expected_version: int | None = None,
    ) -> CostVariance:
        """Stamp a variance with its settlement reference and time."""
        with transaction_boundary(
            self._session, self._auto_commit, logger, "variance_settlement",
            variance_id=variance_id,
        ):
            row = self._get_orm(variance_id)
            check_expected_version("CostVariance", variance_id, row.version, expected_version)
            self._stamp(row, settlement_ref, actor_id)
            with stale_data_as_conflict("CostVariance", variance_id):
                self._session.flush()
            dto = row.to_dto()

        logger.info(
            "variance_settled",
            extra={"variance_id": str(variance_id), "settlement_ref": settlement_ref},
        )
        return dto

    def settle_period(
        self,
        plant_id: str,
        fiscal_year: int,
        fiscal_period: int,
        settlement_ref: str,
        actor_id: UUID,
    ) -> list[CostVariance]:
        """Settle every unsettled variance of a period."""
        with transaction_boundary(
            self._session, self._auto_commit, logger, "variance_period_settlement",
            plant_id=plant_id, settlement_ref=settlement_ref,
        ):
            rows = [
                r for r in self._period_rows(plant_id, fiscal_year, fiscal_period)
                if not r.settled
            ]
            for row in rows:
                self._stamp(row, settlement_ref, actor_id)
            with stale_data_as_conflict("CostVariance", f"{plant_id}/{fiscal_year}/{fiscal_period}"):
                self._session.flush()
            result = [r.to_dto() for r in rows]

        logger.info(
            "variances_settled",
            extra={"settlement_ref": settlement_ref, "variances": len(result)},
        )
        return result

    # =========================================================================
    # Queries
    # =========================================================================

    def get_variance(self, variance_id: UUID) -> CostVariance:
        return self._get_orm(variance_id).to_dto()

    def variances_for_period(
        self, plant_id: str, fiscal_year: int, fiscal_period: int
    ) -> list[CostVariance]:
        return [r.to_dto() for r in self._period_rows(plant_id, fiscal_year, fiscal_period)]

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_orm(self, variance_id: UUID) -> CostVarianceModel:
        row = self._session.get(CostVarianceModel, variance_id)
        if row is None:
            raise VarianceNotFoundError(str(variance_id))
        return row

    def _stamp(self, row: CostVarianceModel, settlement_ref: str, actor_id: UUID) -> None:
        if row.settled:
            logger.warning(
                "variance_already_settled",
                extra={"variance_id": str(row.id), "settlement_ref": row.settlement_ref},
            )
            raise AlreadySettledError(str(row.id), row.settlement_ref or "")
        row.settled = True
        row.settlement_ref = settlement_ref
        row.settled_at = self._clock.now()
        row.updated_by_id = actor_id

    def _period_rows(self, plant_id: str, fiscal_year: int, fiscal_period: int):
        return list(
            self._session.execute(
                select(CostVarianceModel)
                .where(
                    CostVarianceModel.plant_id == plant_id,
                    CostVarianceModel.fiscal_year == fiscal_year,
                    CostVarianceModel.fiscal_period == fiscal_period,
                )
                .order_by(CostVarianceModel.material_id, CostVarianceModel.created_at)
            ).scalars()
        )

    def _from_ledger_entry(
        self, entry: MaterialLedgerEntry, actor_id: UUID, run_id: UUID | None
    ) -> CostVarianceModel | None:
        base, sign = entry, 1
        if entry.transaction_type is TransactionType.REVERSAL:
            base, sign = self._ledger.get_entry(entry.reversal_of_id), -1
        if base.standard_price is None:
            return None

        kind = base.transaction_type
        standard_price = Money.of(base.standard_price, self._currency)
        actual_price = Money.of(base.actual_unit_price, self._currency)
        if kind in RECEIPT_TYPES:
            decomposition = self._calculator.decompose(
                standard_price=standard_price,
                actual_price=actual_price,
                standard_quantity=base.quantity,
                actual_quantity=base.quantity,
            )
        elif kind in ISSUE_TYPES and base.standard_quantity is not None:
            # The price deviation was booked at receipt; stock leaves at standard.
            actual_price = standard_price
            decomposition = self._calculator.decompose(
                standard_price=standard_price,
                actual_price=actual_price,
                standard_quantity=base.standard_quantity,
                actual_quantity=base.quantity,
            )
        elif kind in ADJUSTMENT_TYPES and base.price_variance != 0:
            decomposition = self._value_only(base.price_variance)
        else:
            return None

        if sign < 0:
            decomposition = _negated(decomposition)
        if _is_zero(decomposition):
            return None

        return self._build_row(
            VarianceSource.LEDGER_ENTRY, entry.id, entry.material_id, entry.plant_id,
            entry.fiscal_year, entry.fiscal_period, VarianceCategory.MATERIAL,
            decomposition, standard_price.amount, actual_price.amount,
            base.standard_quantity if kind in ISSUE_TYPES else base.quantity,
            base.quantity, entry.consuming_order_id, actor_id, run_id,
        )

    def _from_wip_entry(
        self, entry: WipCostEntry, actor_id: UUID, run_id: UUID | None
    ) -> CostVarianceModel | None:
        rate = Money.of(entry.unit_rate, entry.currency)
        decomposition = self._calculator.decompose(
            standard_price=rate,
            actual_price=rate,
            standard_quantity=entry.standard_quantity,
            actual_quantity=entry.actual_quantity,
            quantity_kind=VarianceKind.EFFICIENCY,
        )
        if _is_zero(decomposition):
            return None
        category = (
            VarianceCategory.LABOR if entry.cost_type is WipCostType.LABOR
            else VarianceCategory.OVERHEAD
        )
        return self._build_row(
            VarianceSource.WIP_ENTRY, entry.id, entry.material_id or entry.order_id,
            entry.plant_id, entry.fiscal_year, entry.fiscal_period, category,
            decomposition, entry.unit_rate, entry.unit_rate,
            entry.standard_quantity, entry.actual_quantity, entry.order_id,
            actor_id, run_id,
        )

    def _value_only(self, amount: Decimal) -> VarianceDecomposition:
        zero = Money.zero(self._currency)
        variance = Money.of(amount, self._currency)
        return VarianceDecomposition(
            standard_cost=zero,
            actual_cost=variance,
            price_variance=variance,
            quantity_variance=zero,
            total_variance=variance,
            rounding_difference=zero,
        )

    def _build_row(
        self,
        source_type: VarianceSource,
        source_id: UUID,
        material_id: str,
        plant_id: str,
        fiscal_year: int,
        fiscal_period: int,
        category: VarianceCategory,
        d: VarianceDecomposition,
        standard_price: Decimal,
        actual_price: Decimal,
        standard_quantity: Decimal,
        actual_quantity: Decimal,
        order_id: str | None,
        actor_id: UUID,
        run_id: UUID | None,
    ) -> CostVarianceModel:
        logger.debug(
            "variance_materialized",
            extra={
                "source_type": source_type.value,
                "source_id": str(source_id),
                "material_id": material_id,
                "total_variance": str(d.total_variance.amount),
            },
        )
        return CostVarianceModel(
            source_type=source_type.value,
            source_id=source_id,
            material_id=material_id,
            plant_id=plant_id,
            fiscal_year=fiscal_year,
            fiscal_period=fiscal_period,
            category=category.value,
            order_id=order_id,
            currency=d.total_variance.currency.code,
            standard_quantity=standard_quantity,
            actual_quantity=actual_quantity,
            standard_price=standard_price,
            actual_price=actual_price,
            standard_cost=d.standard_cost.amount,
            actual_cost=d.actual_cost.amount,
            price_variance=d.price_variance.amount,
            quantity_variance=d.quantity_variance.amount,
            quantity_kind=d.quantity_kind.value,
            total_variance=d.total_variance.amount,
            rounding_difference=d.rounding_difference.amount,
            price_classification=d.price_classification.value,
            quantity_classification=d.quantity_classification.value,
            classification=d.classification.value,
            run_id=run_id,
            settled=False,
            created_by_id=actor_id,
        )


def _negated(d: VarianceDecomposition) -> VarianceDecomposition:
    return replace(
        d,
        standard_cost=-d.standard_cost,
        actual_cost=-d.actual_cost,
        price_variance=-d.price_variance,
        quantity_variance=-d.quantity_variance,
        total_variance=-d.total_variance,
        rounding_difference=-d.rounding_difference,
    )


def _is_zero(d: VarianceDecomposition) -> bool:
    return d.total_variance.is_zero and d.price_variance.is_zero and d.quantity_variance.is_zero
