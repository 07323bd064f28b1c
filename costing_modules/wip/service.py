"""
WIP Service (``costing_modules.wip.service``).

Responsibility
--------------
Accumulates the cost of production orders: material consumed from the
ledger, labor and machine hours confirmed on the shop floor, overhead
applied to the order and output delivered back to stock.  At period close
it rolls the period's entries up into one WIPPosition per order, and
marks those positions settled once the close has posted them.

Architecture
------------
Layer: **Modules**.  Reads ledger movements through
``MaterialLedgerService`` queries and routings through the
``StructureResolver`` protocol; owns WipCostEntry and WIPPosition.

Invariants
----------
- A ledger movement is charged to WIP at most once (unique source entry).
- A confirmation event books each activity at most once.
- A position is built once per order and period and settled once.

Failure Modes
-------------
- MissingActivityRateError when no labor/machine rate is configured.
- InvalidQuantityError for a non-positive confirmed quantity.
- PeriodLockedError / PeriodNotFoundError for confirmations outside an
  open period.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from costing_config import CostingConfig, get_active_config
from costing_engines.rollup import ActivityType
from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.domain.values import Money
from costing_kernel.exceptions import (
    InvalidQuantityError,
    MissingActivityRateError,
    ValidationError,
)
from costing_kernel.logging_config import LogContext, get_logger
from costing_kernel.services.period_service import PeriodService
from costing_modules._service_helpers import transaction_boundary
from costing_modules.estimation.models import StructureResolver
from costing_modules.ledger.models import Direction, MaterialLedgerEntry, TransactionType
from costing_modules.ledger.service import MaterialLedgerService
from costing_modules.wip.models import WipCostEntry, WipCostType, WIPPosition
from costing_modules.wip.orm import WipCostEntryModel, WIPPositionModel

logger = get_logger("modules.wip.service")

_ZERO = Decimal("0")

_ORDER_TYPES = frozenset({
    TransactionType.PRODUCTION_CONSUMPTION,
    TransactionType.PRODUCTION_RECEIPT,
    TransactionType.REVERSAL,
})


class WipService:
    """
    Production-order cost accumulation.

    Contract
    --------
    Public methods return frozen DTOs and own their transaction unless the
    service was built with ``auto_commit=False``.
    """

    def __init__(
        self,
        session: Session,
        config: CostingConfig | None = None,
        clock: Clock | None = None,
        resolver: StructureResolver | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._config = config or get_active_config()
        self._clock = clock or SystemClock()
        self._resolver = resolver
        self._auto_commit = auto_commit
        self._periods = PeriodService(session, self._clock)
        self._currency = self._config.currency

    # =========================================================================
    # Recording
    # =========================================================================

    def record_consumption(
        self, entry: MaterialLedgerEntry, actor_id: UUID
    ) -> WipCostEntry:
        """Charge a ledger movement for a production order to that order."""
        with transaction_boundary(
            self._session, self._auto_commit, logger, "wip_consumption",
            entry_id=entry.id,
        ):
            row = self._record_ledger_entry(entry, actor_id)
            dto = row.to_dto()
        return dto

    def record_confirmation(
        self,
        order_id: str,
        material_id: str,
        plant_id: str,
        confirmed_quantity: Decimal,
        labor_hours: Decimal,
        machine_hours: Decimal,
        posting_date: date,
        actor_id: UUID,
        standard_labor_hours: Decimal | None = None,
        standard_machine_hours: Decimal | None = None,
        event_id: UUID | None = None,
    ) -> list[WipCostEntry]:
        """
        Book confirmed labor and machine hours at the plant's activity rates.

        Standard hours default to the routing's per-unit durations times the
        confirmed quantity when a structure resolver is wired; without
        either, the entry carries no standard and bears no variance.
        """
        if confirmed_quantity <= 0:
            raise InvalidQuantityError(material_id, confirmed_quantity)
        if labor_hours < 0 or machine_hours < 0:
            raise ValidationError(f"Confirmed hours for order {order_id} cannot be negative")
        rates = self._config.activity_rate(plant_id)
        if rates is None:
            raise MissingActivityRateError(plant_id)

        if event_id is not None:
            existing = self._entries_for_event(event_id)
            if existing:
                logger.info(
                    "wip_confirmation_duplicate_event",
                    extra={"event_id": str(event_id), "order_id": order_id},
                )
                return existing

        routing_labor, routing_machine = self._routing_hours(material_id, confirmed_quantity)
        if standard_labor_hours is None:
            standard_labor_hours = routing_labor
        if standard_machine_hours is None:
            standard_machine_hours = routing_machine

        with LogContext.bind(plant_id=plant_id, material_id=material_id):
            with transaction_boundary(
                self._session, self._auto_commit, logger, "wip_confirmation",
                order_id=order_id,
            ):
                period = self._periods.validate_posting_date(plant_id, posting_date)
                rows = []
                for cost_type, hours, standard, rate in (
                    (WipCostType.LABOR, labor_hours, standard_labor_hours, rates.labor_rate),
                    (WipCostType.MACHINE, machine_hours, standard_machine_hours, rates.machine_rate),
                ):
                    if hours == 0 and not standard:
                        continue
                    row = WipCostEntryModel(
                        order_id=order_id,
                        plant_id=plant_id,
                        cost_type=cost_type.value,
                        posting_date=posting_date,
                        fiscal_year=period.fiscal_year,
                        fiscal_period=period.period,
                        currency=self._currency,
                        actual_quantity=hours,
                        standard_quantity=standard,
                        unit_rate=rate,
                        amount=Money.of(hours * rate, self._currency).round().amount,
                        material_id=material_id,
                        event_id=event_id,
                        created_by_id=actor_id,
                    )
                    self._session.add(row)
                    rows.append(row)
                self._session.flush()
                result = [r.to_dto() for r in rows]

        logger.info(
            "wip_confirmation_recorded",
            extra={
                "order_id": order_id,
                "confirmed_quantity": str(confirmed_quantity),
                "labor_hours": str(labor_hours),
                "machine_hours": str(machine_hours),
                "entries": len(result),
            },
        )
        return result

    def record_overhead(
        self,
        order_id: str,
        plant_id: str,
        amount: Money,
        posting_date: date,
        actor_id: UUID,
        material_id: str | None = None,
    ) -> WipCostEntry:
        """Apply an overhead amount to a production order."""
        with transaction_boundary(
            self._session, self._auto_commit, logger, "wip_overhead",
            order_id=order_id,
        ):
            period = self._periods.validate_posting_date(plant_id, posting_date)
            row = WipCostEntryModel(
                order_id=order_id,
                plant_id=plant_id,
                cost_type=WipCostType.OVERHEAD.value,
                posting_date=posting_date,
                fiscal_year=period.fiscal_year,
                fiscal_period=period.period,
                currency=amount.currency.code,
                actual_quantity=_ZERO,
                unit_rate=_ZERO,
                amount=amount.round().amount,
                material_id=material_id,
                created_by_id=actor_id,
            )
            self._session.add(row)
            self._session.flush()
            dto = row.to_dto()

        logger.info(
            "wip_overhead_recorded",
            extra={"order_id": order_id, "amount": str(dto.amount)},
        )
        return dto

    # =========================================================================
    # Queries
    # =========================================================================

    def entries_for_order(self, order_id: str) -> list[WipCostEntry]:
        rows = self._session.execute(
            select(WipCostEntryModel)
            .where(WipCostEntryModel.order_id == order_id)
            .order_by(WipCostEntryModel.posting_date, WipCostEntryModel.created_at)
        ).scalars()
        return [r.to_dto() for r in rows]

    def entries_for_period(
        self, plant_id: str, fiscal_year: int, fiscal_period: int
    ) -> list[WipCostEntry]:
        return [
            r.to_dto() for r in self._period_entries(plant_id, fiscal_year, fiscal_period)
        ]

    def positions_for_period(
        self, plant_id: str, fiscal_year: int, fiscal_period: int
    ) -> list[WIPPosition]:
        return [
            r.to_dto() for r in self._period_positions(plant_id, fiscal_year, fiscal_period)
        ]

    def get_position(
        self, order_id: str, plant_id: str, fiscal_year: int, fiscal_period: int
    ) -> WIPPosition | None:
        row = self._session.execute(
            select(WIPPositionModel).where(
                WIPPositionModel.order_id == order_id,
                WIPPositionModel.plant_id == plant_id,
                WIPPositionModel.fiscal_year == fiscal_year,
                WIPPositionModel.fiscal_period == fiscal_period,
            )
        ).scalar_one_or_none()
        return row.to_dto() if row is not None else None

    # =========================================================================
    # Period close
    # =========================================================================

    def calculate_positions(
        self,
        plant_id: str,
        fiscal_year: int,
        fiscal_period: int,
        actor_id: UUID,
        run_id: UUID | None = None,
    ) -> list[WIPPosition]:
        """
        Build the period's WIP positions.

        Production-order movements in the ledger that were not charged yet
        are picked up first, so the positions cover every consumption and
        delivery of the period.  Orders that already have a position for
        the period keep it.
        """
        with transaction_boundary(
            self._session, self._auto_commit, logger, "wip_calculation",
            plant_id=plant_id, fiscal_year=fiscal_year, fiscal_period=fiscal_period,
        ):
            swept = self._sweep_ledger(plant_id, fiscal_year, fiscal_period, actor_id)

            existing = {
                r.order_id for r in self._period_positions(plant_id, fiscal_year, fiscal_period)
            }
            by_order: dict[str, list[WipCostEntryModel]] = defaultdict(list)
            for row in self._period_entries(plant_id, fiscal_year, fiscal_period):
                by_order[row.order_id].append(row)

            created = 0
            for order_id in sorted(by_order):
                if order_id in existing:
                    continue
                self._session.add(
                    self._build_position(
                        order_id, plant_id, fiscal_year, fiscal_period,
                        by_order[order_id], actor_id, run_id,
                    )
                )
                created += 1
            self._session.flush()
            positions = self.positions_for_period(plant_id, fiscal_year, fiscal_period)

        logger.info(
            "wip_positions_calculated",
            extra={
                "plant_id": plant_id,
                "fiscal_year": fiscal_year,
                "fiscal_period": fiscal_period,
                "ledger_entries_swept": swept,
                "positions_created": created,
                "positions_total": len(positions),
            },
        )
        return positions

    def settle_positions(
        self,
        plant_id: str,
        fiscal_year: int,
        fiscal_period: int,
        settlement_ref: str,
        actor_id: UUID,
    ) -> list[WIPPosition]:
        """Mark every unsettled position of the period settled."""
        with transaction_boundary(
            self._session, self._auto_commit, logger, "wip_settlement",
            plant_id=plant_id, settlement_ref=settlement_ref,
        ):
            settled = []
            now = self._clock.now()
            for row in self._period_positions(plant_id, fiscal_year, fiscal_period):
                if row.settled:
                    continue
                row.settled = True
                row.settlement_ref = settlement_ref
                row.settled_at = now
                row.updated_by_id = actor_id
                settled.append(row)
            self._session.flush()
            result = [r.to_dto() for r in settled]

        logger.info(
            "wip_positions_settled",
            extra={"settlement_ref": settlement_ref, "positions": len(result)},
        )
        return result

    # =========================================================================
    # Internals
    # =========================================================================

    def _record_ledger_entry(
        self, entry: MaterialLedgerEntry, actor_id: UUID
    ) -> WipCostEntryModel:
        if entry.consuming_order_id is None:
            raise ValidationError(
                f"Ledger entry {entry.id} is not assigned to a production order"
            )
        existing = self._session.execute(
            select(WipCostEntryModel).where(WipCostEntryModel.source_entry_id == entry.id)
        ).scalar_one_or_none()
        if existing is not None:
            return existing

        valuation = entry.valuation(self._config.primary_view.view)
        if valuation is None:
            raise ValidationError(f"Ledger entry {entry.id} has no primary valuation")

        # A reversal moving stock back in undoes a consumption
        if entry.transaction_type is TransactionType.REVERSAL:
            is_delivery = entry.direction is Direction.OUT
        else:
            is_delivery = entry.transaction_type is TransactionType.PRODUCTION_RECEIPT
        cost_type = WipCostType.DELIVERY if is_delivery else WipCostType.MATERIAL

        row = WipCostEntryModel(
            order_id=entry.consuming_order_id,
            plant_id=entry.plant_id,
            cost_type=cost_type.value,
            posting_date=entry.posting_date,
            fiscal_year=entry.fiscal_year,
            fiscal_period=entry.fiscal_period,
            currency=entry.currency,
            actual_quantity=-entry.signed_quantity,
            standard_quantity=entry.standard_quantity,
            unit_rate=valuation.unit_price,
            amount=-valuation.amount,
            material_id=entry.material_id if is_delivery else None,
            component_id=None if is_delivery else entry.material_id,
            source_entry_id=entry.id,
            created_by_id=actor_id,
        )
        self._session.add(row)
        self._session.flush()
        logger.debug(
            "wip_ledger_entry_recorded",
            extra={
                "order_id": row.order_id,
                "entry_id": str(entry.id),
                "cost_type": cost_type.value,
                "amount": str(row.amount),
            },
        )
        return row

    def _sweep_ledger(
        self, plant_id: str, fiscal_year: int, fiscal_period: int, actor_id: UUID
    ) -> int:
        ledger = MaterialLedgerService(
            self._session, config=self._config, clock=self._clock, auto_commit=False
        )
        charged = set(
            self._session.execute(
                select(WipCostEntryModel.source_entry_id).where(
                    WipCostEntryModel.plant_id == plant_id,
                    WipCostEntryModel.fiscal_year == fiscal_year,
                    WipCostEntryModel.fiscal_period == fiscal_period,
                    WipCostEntryModel.source_entry_id.is_not(None),
                )
            ).scalars()
        )
        swept = 0
        for entry in ledger.entries_for_period(plant_id, fiscal_year, fiscal_period):
            if (
                entry.consuming_order_id is None
                or entry.transaction_type not in _ORDER_TYPES
                or entry.direction is Direction.NONE
                or entry.id in charged
            ):
                continue
            self._record_ledger_entry(entry, actor_id)
            swept += 1
        return swept

    def _build_position(
        self,
        order_id: str,
        plant_id: str,
        fiscal_year: int,
        fiscal_period: int,
        rows: list[WipCostEntryModel],
        actor_id: UUID,
        run_id: UUID | None,
    ) -> WIPPositionModel:
        totals: dict[str, Decimal] = defaultdict(lambda: _ZERO)
        for row in rows:
            totals[row.cost_type] += row.amount
        material = totals[WipCostType.MATERIAL.value]
        labor = totals[WipCostType.LABOR.value]
        machine = totals[WipCostType.MACHINE.value]
        overhead = totals[WipCostType.OVERHEAD.value]
        delivered = -totals[WipCostType.DELIVERY.value]
        total = material + labor + machine + overhead

        return WIPPositionModel(
            order_id=order_id,
            plant_id=plant_id,
            fiscal_year=fiscal_year,
            fiscal_period=fiscal_period,
            currency=self._currency,
            material_id=next((r.material_id for r in rows if r.material_id), None),
            material_cost=material,
            labor_cost=labor,
            machine_cost=machine,
            overhead_cost=overhead,
            delivered_value=delivered,
            total_cost=total,
            balance=total - delivered,
            entry_count=len(rows),
            settled=False,
            run_id=run_id,
            created_by_id=actor_id,
        )

    def _routing_hours(
        self, material_id: str, confirmed_quantity: Decimal
    ) -> tuple[Decimal | None, Decimal | None]:
        if self._resolver is None:
            return None, None
        routing = self._resolver.resolve_routing(material_id)
        if routing is None:
            return None, None
        labor = machine = _ZERO
        for operation in routing.operations:
            for activity in operation.activities:
                if activity.activity_type is ActivityType.LABOR:
                    labor += activity.duration * confirmed_quantity
                elif activity.activity_type is ActivityType.MACHINE:
                    machine += activity.duration * confirmed_quantity
        return labor, machine

    def _entries_for_event(self, event_id: UUID) -> list[WipCostEntry]:
        rows = self._session.execute(
            select(WipCostEntryModel)
            .where(WipCostEntryModel.event_id == event_id)
            .order_by(WipCostEntryModel.cost_type)
        ).scalars()
        return [r.to_dto() for r in rows]

    def _period_entries(self, plant_id: str, fiscal_year: int, fiscal_period: int):
        return self._session.execute(
            select(WipCostEntryModel)
            .where(
                WipCostEntryModel.plant_id == plant_id,
                WipCostEntryModel.fiscal_year == fiscal_year,
                WipCostEntryModel.fiscal_period == fiscal_period,
            )
            .order_by(WipCostEntryModel.order_id, WipCostEntryModel.posting_date)
        ).scalars()

    def _period_positions(self, plant_id: str, fiscal_year: int, fiscal_period: int):
        return self._session.execute(
            select(WIPPositionModel)
            .where(
                WIPPositionModel.plant_id == plant_id,
                WIPPositionModel.fiscal_year == fiscal_year,
                WIPPositionModel.fiscal_period == fiscal_period,
            )
            .order_by(WIPPositionModel.order_id)
        ).scalars()
