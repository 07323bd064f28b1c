"""
Tests for CostEstimateService.

Verifies:
- Multi-level roll-up (standards, sub-assemblies, current prices)
- Costing-sheet overhead through configuration
- Missing reference data and cyclic structures are rejected with nothing written
- DRAFT -> RELEASED -> STANDARD -> ARCHIVED lifecycle
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from costing_engines.rollup import CostComponentType, RoutingOperation
from costing_kernel.domain.extensions import AttributeDef, AttributeType, ExtensionSchemaRegistry
from costing_kernel.domain.values import Money
from costing_kernel.exceptions import (
    ConcurrencyConflictError,
    CyclicStructureError,
    EstimateNotFoundError,
    ExtensionAttributeError,
    InvalidLotSizeError,
    InvalidStatusTransitionError,
    MissingBOMError,
    MissingCostingSheetError,
    MissingRoutingError,
    MissingStandardCostError,
    NoCostComponentsError,
    ValidationError,
)
from costing_modules.estimation.models import (
    BillOfMaterials,
    BomComponent,
    ComponentOrigin,
    EstimateStatus,
    InMemoryStructureResolver,
    Routing,
)
from costing_modules.estimation.orm import CostEstimateModel
from costing_modules.estimation.service import CostEstimateService

PLANT = "P1"
VALID_FROM = date(2024, 1, 1)


class FixedPrices:
    """Component price source backed by a dict."""

    def __init__(self, prices):
        self._prices = prices

    def current_price(self, material_id, plant_id):
        price = self._prices.get(material_id)
        return Money.of(price, "USD") if price is not None else None


def _resolver():
    """FG1 <- 2 x SA1 + 1 x C1; SA1 <- 3 x C2; FG1 routing 0.1h labor at $45."""
    return InMemoryStructureResolver(
        boms=[
            BillOfMaterials("FG1", "1", (
                BomComponent("SA1", Decimal("2")),
                BomComponent("C1", Decimal("1")),
            )),
            BillOfMaterials("SA1", "1", (BomComponent("C2", Decimal("3")),)),
        ],
        routings=[
            Routing("FG1", "1", (
                RoutingOperation.simple("OP10", Money.of("45", "USD"), Decimal("0.1")),
            )),
        ],
    )


@pytest.fixture
def service(session, config, clock):
    return CostEstimateService(
        session,
        _resolver(),
        config=config,
        clock=clock,
        price_source=FixedPrices({"C1": "5.00", "C2": "1.50"}),
    )


class TestRollUp:
    """Estimate creation."""

    def test_multi_level(self, service, actor_id):
        estimate = service.create_estimate("FG1", PLANT, Decimal("10"), VALID_FROM, actor_id)

        assert estimate.status is EstimateStatus.DRAFT
        assert estimate.component_total(CostComponentType.MATERIAL) == Decimal("140.00")
        assert estimate.component_total(CostComponentType.LABOR) == Decimal("45.00")
        assert estimate.total_cost == Decimal("185.00")
        assert estimate.unit_cost == Decimal("18.5")
        assert estimate.bom_version == "1"
        assert sum(c.amount for c in estimate.components) == estimate.total_cost

    def test_costing_sheet_applies_at_every_level(self, service, actor_id):
        estimate = service.create_estimate(
            "FG1", PLANT, Decimal("10"), VALID_FROM, actor_id, costing_sheet="STD-DIRECT"
        )
        # SA1 = 4.50 + 20% = 5.40; material 108 + 50, labor 45, overhead 20% of 203
        assert estimate.component_total(CostComponentType.MATERIAL) == Decimal("158.00")
        assert estimate.component_total(CostComponentType.OVERHEAD) == Decimal("40.60")
        assert estimate.total_cost == Decimal("243.60")
        assert estimate.unit_cost == Decimal("24.36")

    def test_standard_preferred_over_sub_assembly(self, service, make_standard, actor_id):
        make_standard("SA1", "4.00")
        estimate = service.create_estimate("FG1", PLANT, Decimal("10"), VALID_FROM, actor_id)
        assert estimate.component_total(CostComponentType.MATERIAL) == Decimal("130.00")

    def test_unknown_sheet(self, service, actor_id):
        with pytest.raises(MissingCostingSheetError):
            service.create_estimate(
                "FG1", PLANT, Decimal("10"), VALID_FROM, actor_id, costing_sheet="NOPE"
            )

    def test_invalid_lot_size(self, service, actor_id):
        with pytest.raises(InvalidLotSizeError):
            service.create_estimate("FG1", PLANT, Decimal("0"), VALID_FROM, actor_id)

    def test_missing_bom(self, service, actor_id):
        with pytest.raises(MissingBOMError):
            service.create_estimate("NOBOM", PLANT, Decimal("1"), VALID_FROM, actor_id)

    def test_missing_routing(self, service, actor_id):
        with pytest.raises(MissingRoutingError):
            service.create_estimate("SA1", PLANT, Decimal("1"), VALID_FROM, actor_id)

    def test_missing_component_price_writes_nothing(self, session, config, clock, actor_id):
        service = CostEstimateService(session, _resolver(), config=config, clock=clock)
        with pytest.raises(MissingStandardCostError):
            service.create_estimate("FG1", PLANT, Decimal("10"), VALID_FROM, actor_id)
        count = session.execute(select(func.count()).select_from(CostEstimateModel)).scalar()
        assert count == 0

    def test_cycle_detected(self, session, config, clock, actor_id):
        resolver = InMemoryStructureResolver(
            boms=[
                BillOfMaterials("A", "1", (BomComponent("B", Decimal("1")),)),
                BillOfMaterials("B", "1", (BomComponent("A", Decimal("1")),)),
            ],
            routings=[Routing("A", "1", ())],
        )
        service = CostEstimateService(session, resolver, config=config, clock=clock)
        with pytest.raises(CyclicStructureError):
            service.create_estimate("A", PLANT, Decimal("1"), VALID_FROM, actor_id)

    def test_extension_attributes(self, session, config, clock, actor_id):
        registry = ExtensionSchemaRegistry()
        registry.register("*", "CostEstimate", [AttributeDef("project", AttributeType.STRING)])
        service = CostEstimateService(
            session, _resolver(), config=config, clock=clock,
            price_source=FixedPrices({"C1": "5", "C2": "1"}), extensions=registry,
        )
        estimate = service.create_estimate(
            "FG1", PLANT, Decimal("1"), VALID_FROM, actor_id,
            extension_attributes={"project": "X-7"},
        )
        assert estimate.extension_attributes == {"project": "X-7"}

        with pytest.raises(ExtensionAttributeError):
            service.create_estimate(
                "FG1", PLANT, Decimal("1"), date(2024, 2, 1), actor_id,
                extension_attributes={"unknown": 1},
            )


class TestManualComponents:
    def test_manual_component_survives_recalculate(self, service, actor_id):
        estimate = service.create_estimate("FG1", PLANT, Decimal("10"), VALID_FROM, actor_id)
        service.add_manual_component(
            estimate.id, CostComponentType.OTHER, Decimal("15.00"), actor_id
        )
        recalculated = service.recalculate(estimate.id, actor_id)

        manual = [c for c in recalculated.components if c.origin is ComponentOrigin.MANUAL]
        assert len(manual) == 1
        assert recalculated.total_cost == Decimal("200.00")
        assert recalculated.unit_cost == Decimal("20")

    def test_fixed_share_cannot_exceed_amount(self, service, actor_id):
        estimate = service.create_estimate("FG1", PLANT, Decimal("10"), VALID_FROM, actor_id)
        with pytest.raises(ValidationError):
            service.add_manual_component(
                estimate.id, CostComponentType.OTHER, Decimal("10"), actor_id,
                fixed_amount=Decimal("11"),
            )


class TestLifecycle:
    def test_release_and_mark_standard(self, service, actor_id):
        estimate = service.create_estimate("FG1", PLANT, Decimal("10"), VALID_FROM, actor_id)
        released = service.release(estimate.id, actor_id)
        assert released.status is EstimateStatus.RELEASED

        standard = service.mark_standard(estimate.id, actor_id)
        assert standard.status is EstimateStatus.STANDARD
        assert service.get_active_standard("FG1", PLANT).id == estimate.id
        assert service.get_standard_unit_cost("FG1", PLANT) == Money.of("18.5", "USD")

    def test_new_standard_archives_previous(self, service, actor_id):
        first = service.create_estimate("FG1", PLANT, Decimal("10"), VALID_FROM, actor_id)
        service.release(first.id, actor_id)
        service.mark_standard(first.id, actor_id)

        second = service.create_estimate(
            "FG1", PLANT, Decimal("20"), VALID_FROM, actor_id, costing_version=2
        )
        service.release(second.id, actor_id)
        service.mark_standard(second.id, actor_id)

        assert service.get_estimate(first.id).status is EstimateStatus.ARCHIVED
        assert service.get_active_standard("FG1", PLANT).id == second.id
        assert [e.costing_version for e in service.list_estimates("FG1", PLANT)] == [1, 2]

    def test_released_estimate_is_frozen(self, service, actor_id):
        estimate = service.create_estimate("FG1", PLANT, Decimal("10"), VALID_FROM, actor_id)
        service.release(estimate.id, actor_id)
        with pytest.raises(InvalidStatusTransitionError):
            service.recalculate(estimate.id, actor_id)
        with pytest.raises(InvalidStatusTransitionError):
            service.add_manual_component(
                estimate.id, CostComponentType.OTHER, Decimal("1"), actor_id
            )

    def test_draft_cannot_become_standard(self, service, actor_id):
        estimate = service.create_estimate("FG1", PLANT, Decimal("10"), VALID_FROM, actor_id)
        with pytest.raises(InvalidStatusTransitionError):
            service.mark_standard(estimate.id, actor_id)

    def test_archived_is_terminal(self, service, actor_id):
        estimate = service.create_estimate("FG1", PLANT, Decimal("10"), VALID_FROM, actor_id)
        service.release(estimate.id, actor_id)
        service.archive(estimate.id, actor_id)
        with pytest.raises(InvalidStatusTransitionError):
            service.mark_standard(estimate.id, actor_id)

    def test_empty_estimate_cannot_be_released(self, session, config, clock, actor_id):
        resolver = InMemoryStructureResolver(
            boms=[BillOfMaterials("E1", "1", ())], routings=[Routing("E1", "1", ())]
        )
        service = CostEstimateService(session, resolver, config=config, clock=clock)
        estimate = service.create_estimate("E1", PLANT, Decimal("1"), VALID_FROM, actor_id)
        with pytest.raises(NoCostComponentsError):
            service.release(estimate.id, actor_id)

    def test_stale_version(self, service, actor_id):
        estimate = service.create_estimate("FG1", PLANT, Decimal("10"), VALID_FROM, actor_id)
        with pytest.raises(ConcurrencyConflictError):
            service.release(estimate.id, actor_id, expected_version=estimate.version + 5)

    def test_not_found(self, service):
        with pytest.raises(EstimateNotFoundError):
            service.get_estimate(uuid4())
