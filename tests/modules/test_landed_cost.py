"""
Tests for landed cost documents.

Verifies:
- Document lifecycle DRAFT -> CALCULATED -> POSTED
- Charges split exactly over the lines by value, quantity and manual amounts
- Landed unit cost per line
- Price-update publication and capitalization into the valuation store
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from costing_engines.allocation import AllocationBasis
from costing_kernel.domain.values import Money
from costing_kernel.exceptions import (
    CurrencyMismatchError,
    DocumentNotFoundError,
    EmptyDocumentError,
    InvalidQuantityError,
    InvalidStatusTransitionError,
    ManualAllocationMismatchError,
    PeriodLockedError,
    ValidationError,
)
from costing_modules.landed_cost.models import DocumentStatus, LandedCostType
from costing_modules.landed_cost.service import LandedCostService
from costing_modules.ledger.models import PRICE_UPDATE_TOPIC, TransactionType

PLANT = "P1"
JAN_5 = date(2024, 1, 5)
JAN_10 = date(2024, 1, 10)


def usd(amount):
    return Money.of(amount, "USD")


@pytest.fixture
def landed(session, config, clock, bus):
    return LandedCostService(session, config=config, clock=clock, publisher=bus)


@pytest.fixture
def shipment(landed, actor_id):
    """M1 100 x 10.00 and M2 50 x 60.00, freight by value and duty by quantity."""
    doc = landed.create_document(PLANT, actor_id, vendor_reference="BL-778")
    landed.add_line(doc.id, "M1", Decimal("100"), usd("10"), actor_id)
    landed.add_line(doc.id, "M2", Decimal("50"), usd("60"), actor_id)
    landed.add_charge(doc.id, LandedCostType.FREIGHT, usd("400"), AllocationBasis.VALUE, actor_id)
    landed.add_charge(doc.id, LandedCostType.DUTY, usd("90"), AllocationBasis.QUANTITY, actor_id)
    return doc


class TestDocumentCapture:
    def test_numbering(self, landed, actor_id):
        first = landed.create_document(PLANT, actor_id)
        second = landed.create_document(PLANT, actor_id)

        assert first.document_number == "LC-000001"
        assert second.document_number == "LC-000002"
        assert first.status is DocumentStatus.DRAFT
        assert first.currency == "USD"

    def test_lines_are_numbered(self, landed, shipment):
        doc = landed.get_document(shipment.id)
        assert [line.line_number for line in doc.lines] == [1, 2]
        assert doc.lines[1].total_landed_cost == Decimal("3000")
        assert doc.total_charges == Decimal("490")

    @pytest.mark.parametrize("quantity", ["0", "-1"])
    def test_invalid_line_quantity(self, landed, actor_id, quantity):
        doc = landed.create_document(PLANT, actor_id)
        with pytest.raises(InvalidQuantityError):
            landed.add_line(doc.id, "M1", Decimal(quantity), usd("10"), actor_id)

    def test_negative_weight(self, landed, actor_id):
        doc = landed.create_document(PLANT, actor_id)
        with pytest.raises(ValidationError):
            landed.add_line(doc.id, "M1", Decimal("1"), usd("10"), actor_id, weight=Decimal("-2"))

    def test_foreign_currency_line(self, landed, actor_id):
        doc = landed.create_document(PLANT, actor_id)
        with pytest.raises(CurrencyMismatchError):
            landed.add_line(doc.id, "M1", Decimal("1"), Money.of("10", "EUR"), actor_id)

    def test_zero_charge(self, landed, shipment, actor_id):
        with pytest.raises(ValidationError):
            landed.add_charge(
                shipment.id, LandedCostType.HANDLING, usd("0"), AllocationBasis.VALUE, actor_id
            )

    def test_manual_amounts_need_manual_basis(self, landed, shipment, actor_id):
        with pytest.raises(ValidationError):
            landed.add_charge(
                shipment.id, LandedCostType.HANDLING, usd("10"), AllocationBasis.VALUE,
                actor_id, manual_amounts={1: usd("10")},
            )

    def test_unknown_document(self, landed, actor_id):
        with pytest.raises(DocumentNotFoundError):
            landed.add_line(uuid4(), "M1", Decimal("1"), usd("1"), actor_id)


class TestCalculate:
    def test_allocation(self, landed, shipment, actor_id):
        doc = landed.calculate(shipment.id, actor_id)

        assert doc.status is DocumentStatus.CALCULATED
        m1, m2 = doc.lines
        assert m1.total_allocated_cost == Decimal("160")
        assert m1.total_landed_cost == Decimal("1160")
        assert m1.landed_cost_per_unit == Decimal("11.6")
        assert m2.total_allocated_cost == Decimal("330")
        assert m2.total_landed_cost == Decimal("3330")
        assert m2.landed_cost_per_unit == Decimal("66.6")
        assert doc.total_allocated == doc.total_charges

    def test_one_allocation_per_charge_and_line(self, landed, shipment, actor_id):
        doc = landed.calculate(shipment.id, actor_id)

        assert len(doc.allocations) == 4
        for charge in doc.charges:
            shares = [a.amount for a in doc.allocations if a.charge_id == charge.id]
            assert sum(shares) == charge.amount

    def test_uneven_split_is_exact(self, landed, actor_id):
        doc = landed.create_document(PLANT, actor_id)
        for material_id in ("M1", "M2", "M3"):
            landed.add_line(doc.id, material_id, Decimal("1"), usd("10"), actor_id)
        landed.add_charge(doc.id, LandedCostType.FREIGHT, usd("100"), AllocationBasis.QUANTITY, actor_id)

        doc = landed.calculate(doc.id, actor_id)

        assert [line.total_allocated_cost for line in doc.lines] == [
            Decimal("33.34"), Decimal("33.33"), Decimal("33.33"),
        ]

    def test_manual_basis(self, landed, actor_id):
        doc = landed.create_document(PLANT, actor_id)
        landed.add_line(doc.id, "M1", Decimal("10"), usd("10"), actor_id)
        landed.add_line(doc.id, "M2", Decimal("10"), usd("10"), actor_id)
        landed.add_charge(
            doc.id, LandedCostType.INSURANCE, usd("100"), AllocationBasis.MANUAL, actor_id,
            manual_amounts={1: usd("70"), 2: usd("30")},
        )

        doc = landed.calculate(doc.id, actor_id)

        assert [line.total_allocated_cost for line in doc.lines] == [Decimal("70"), Decimal("30")]

    def test_manual_mismatch(self, landed, actor_id):
        doc = landed.create_document(PLANT, actor_id)
        landed.add_line(doc.id, "M1", Decimal("10"), usd("10"), actor_id)
        landed.add_line(doc.id, "M2", Decimal("10"), usd("10"), actor_id)
        landed.add_charge(
            doc.id, LandedCostType.INSURANCE, usd("100"), AllocationBasis.MANUAL, actor_id,
            manual_amounts={1: usd("70"), 2: usd("20")},
        )
        with pytest.raises(ManualAllocationMismatchError):
            landed.calculate(doc.id, actor_id)
        assert landed.get_document(doc.id).status is DocumentStatus.DRAFT

    def test_empty_document(self, landed, actor_id):
        doc = landed.create_document(PLANT, actor_id)
        with pytest.raises(EmptyDocumentError):
            landed.calculate(doc.id, actor_id)

    def test_lines_frozen_after_calculation(self, landed, shipment, actor_id):
        landed.calculate(shipment.id, actor_id)
        with pytest.raises(InvalidStatusTransitionError):
            landed.add_line(shipment.id, "M3", Decimal("1"), usd("1"), actor_id)

    def test_calculate_once(self, landed, shipment, actor_id):
        landed.calculate(shipment.id, actor_id)
        with pytest.raises(InvalidStatusTransitionError):
            landed.calculate(shipment.id, actor_id)


class TestPost:
    def test_post_publishes_landed_prices(self, landed, shipment, bus, actor_id):
        landed.calculate(shipment.id, actor_id)

        doc = landed.post(shipment.id, actor_id, posting_date=JAN_10)

        assert doc.status is DocumentStatus.POSTED
        assert doc.posting_date == JAN_10
        m1, m2 = bus.published(PRICE_UPDATE_TOPIC)
        assert m1.material_id == "M1"
        assert m1.old_price == Decimal("10")
        assert m1.new_price == Decimal("11.6")
        assert m1.source == "landed_cost"
        assert m1.source_id == shipment.id
        assert m1.view == "legal"
        assert m2.new_price == Decimal("66.6")

    def test_post_requires_calculation(self, landed, shipment, actor_id):
        with pytest.raises(InvalidStatusTransitionError):
            landed.post(shipment.id, actor_id, posting_date=JAN_10)

    def test_posted_is_final(self, landed, shipment, actor_id):
        landed.calculate(shipment.id, actor_id)
        landed.post(shipment.id, actor_id, posting_date=JAN_10)
        with pytest.raises(InvalidStatusTransitionError):
            landed.post(shipment.id, actor_id, posting_date=JAN_10)
        with pytest.raises(InvalidStatusTransitionError):
            landed.add_charge(
                shipment.id, LandedCostType.OTHER, usd("5"), AllocationBasis.VALUE, actor_id
            )


class TestLedgerPosting:
    @pytest.fixture
    def capitalizing(self, session, config, clock, bus):
        return LandedCostService(
            session, config=config, clock=clock, publisher=bus, post_to_ledger=True
        )

    @pytest.fixture
    def stocked(self, ledger, open_period, actor_id):
        ledger.post_goods_receipt("M1", PLANT, Decimal("100"), usd("10"), JAN_5, actor_id)
        ledger.post_goods_receipt("M2", PLANT, Decimal("50"), usd("60"), JAN_5, actor_id)

    def test_capitalizes_into_stock(self, capitalizing, ledger, stocked, actor_id):
        doc = capitalizing.create_document(PLANT, actor_id)
        capitalizing.add_line(doc.id, "M1", Decimal("100"), usd("10"), actor_id)
        capitalizing.add_line(doc.id, "M2", Decimal("50"), usd("60"), actor_id)
        capitalizing.add_charge(doc.id, LandedCostType.FREIGHT, usd("400"), AllocationBasis.VALUE, actor_id)
        capitalizing.add_charge(doc.id, LandedCostType.DUTY, usd("90"), AllocationBasis.QUANTITY, actor_id)
        capitalizing.calculate(doc.id, actor_id)

        capitalizing.post(doc.id, actor_id, posting_date=JAN_10)

        entries = [
            e for e in ledger.entries_for_period(PLANT, 2024, 1)
            if e.transaction_type is TransactionType.LANDED_COST
        ]
        assert sorted((e.material_id, e.value_adjustment) for e in entries) == [
            ("M1", Decimal("160")),
            ("M2", Decimal("330")),
        ]
        assert all(e.reference == doc.document_number for e in entries)
        assert ledger.get_price("M1", PLANT).unit_price == Decimal("11.6")
        assert ledger.get_price("M2", PLANT).unit_price == Decimal("66.6")

    def test_locked_period_keeps_document_calculated(
        self, capitalizing, session, period_service, stocked, actor_id
    ):
        doc = capitalizing.create_document(PLANT, actor_id)
        capitalizing.add_line(doc.id, "M1", Decimal("100"), usd("10"), actor_id)
        capitalizing.add_charge(doc.id, LandedCostType.FREIGHT, usd("50"), AllocationBasis.VALUE, actor_id)
        capitalizing.calculate(doc.id, actor_id)
        period_service.close_period(PLANT, 2024, 1, actor_id)
        session.commit()

        with pytest.raises(PeriodLockedError):
            capitalizing.post(doc.id, actor_id, posting_date=JAN_10)
        assert capitalizing.get_document(doc.id).status is DocumentStatus.CALCULATED
