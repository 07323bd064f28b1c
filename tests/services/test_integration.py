"""
Tests for inbound event consumption.

Verifies:
- Each event type lands in the ledger or WIP
- Redelivered events are consumed once
- Events arriving through the bus and price updates leaving through it
- A failed event stays unprocessed so it can be redelivered
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from costing_kernel.exceptions import NegativeBalanceError, ValidationError
from costing_modules.ledger.models import PRICE_UPDATE_TOPIC, TransactionType
from costing_modules.ledger.service import MaterialLedgerService
from costing_modules.wip.models import WipCostType
from costing_modules.wip.service import WipService
from costing_services.events import (
    GOODS_RECEIPT_TOPIC,
    GoodsIssueEvent,
    GoodsReceiptEvent,
    InvoiceReceivedEvent,
    ProductionConfirmedEvent,
)
from costing_services.integration import EventConsumer, InMemoryMessageBus

PLANT = "P1"
JAN_5 = date(2024, 1, 5)
JAN_10 = date(2024, 1, 10)


def receipt_event(quantity="100", price="10.00", **kwargs):
    return GoodsReceiptEvent(
        event_id=uuid4(),
        material_id=kwargs.pop("material_id", "M1"),
        plant_id=PLANT,
        quantity=Decimal(quantity),
        unit_price=Decimal(price),
        currency="USD",
        posting_date=JAN_5,
        **kwargs,
    )


@pytest.fixture
def bus():
    return InMemoryMessageBus()


@pytest.fixture
def consumer(session, config, clock, bus):
    return EventConsumer(session, config=config, clock=clock, bus=bus)


@pytest.fixture
def ledger(session, config, clock):
    return MaterialLedgerService(session, config=config, clock=clock)


@pytest.fixture
def wip(session, config, clock):
    return WipService(session, config=config, clock=clock)


class TestConsume:
    def test_goods_receipt(self, consumer, ledger, open_period):
        event = receipt_event()

        result = consumer.handle(event)

        assert not result.duplicate
        entry = ledger.get_entry(result.result_ids[0])
        assert entry.transaction_type is TransactionType.GOODS_RECEIPT
        assert entry.event_id == event.event_id
        assert consumer.is_processed(event.event_id)
        assert ledger.get_balance("M1", PLANT).quantity_on_hand == Decimal("100")

    def test_redelivery_is_skipped(self, consumer, ledger, open_period):
        event = receipt_event()
        consumer.handle(event)

        again = consumer.handle(event)

        assert again.duplicate
        assert again.result_ids == ()
        assert ledger.get_balance("M1", PLANT).quantity_on_hand == Decimal("100")

    def test_goods_issue_to_order(self, consumer, wip, open_period):
        consumer.handle(receipt_event())
        issue = GoodsIssueEvent(
            event_id=uuid4(), material_id="M1", plant_id=PLANT, quantity=Decimal("30"),
            posting_date=JAN_10, production_order_id="PO-7", standard_quantity=Decimal("28"),
        )

        consumer.handle(issue)

        [charged] = wip.entries_for_order("PO-7")
        assert charged.cost_type is WipCostType.MATERIAL
        assert charged.amount == Decimal("300")
        assert charged.standard_quantity == Decimal("28")

    def test_plain_goods_issue(self, consumer, ledger, wip, open_period):
        consumer.handle(receipt_event())
        result = consumer.handle(
            GoodsIssueEvent(
                event_id=uuid4(), material_id="M1", plant_id=PLANT,
                quantity=Decimal("30"), posting_date=JAN_10,
            )
        )
        assert ledger.get_entry(result.result_ids[0]).transaction_type is TransactionType.GOODS_ISSUE

    def test_production_output(self, consumer, wip, open_period):
        consumer.handle(receipt_event(material_id="FG1", price="40", production_order_id="PO-7"))

        [delivery] = wip.entries_for_order("PO-7")
        assert delivery.cost_type is WipCostType.DELIVERY
        assert delivery.amount == Decimal("-4000")

    def test_invoice(self, consumer, ledger, open_period):
        consumer.handle(receipt_event())
        result = consumer.handle(
            InvoiceReceivedEvent(
                event_id=uuid4(), material_id="M1", plant_id=PLANT, quantity=Decimal("100"),
                invoice_price=Decimal("10.50"), currency="USD", posting_date=JAN_10,
                invoice_ref="INV-1",
            )
        )

        entry = ledger.get_entry(result.result_ids[0])
        assert entry.transaction_type is TransactionType.INVOICE_RECEIPT
        assert entry.value_adjustment == Decimal("50")
        assert entry.reference == "INV-1"

    def test_production_confirmation(self, consumer, wip, open_period):
        event = ProductionConfirmedEvent(
            event_id=uuid4(), order_id="PO-7", material_id="FG1", plant_id=PLANT,
            confirmed_quantity=Decimal("10"), labor_hours=Decimal("2"),
            machine_hours=Decimal("1"), posting_date=JAN_10,
        )

        result = consumer.handle(event)
        consumer.handle(event)

        assert len(result.result_ids) == 2
        assert {e.cost_type for e in wip.entries_for_order("PO-7")} == {
            WipCostType.LABOR, WipCostType.MACHINE,
        }

    def test_unsupported_event(self, consumer):
        with pytest.raises(ValidationError):
            consumer.handle(object())

    def test_failed_event_can_be_redelivered(self, consumer, ledger, open_period):
        issue = GoodsIssueEvent(
            event_id=uuid4(), material_id="M1", plant_id=PLANT,
            quantity=Decimal("5"), posting_date=JAN_10,
        )
        with pytest.raises(NegativeBalanceError):
            consumer.handle(issue)
        assert not consumer.is_processed(issue.event_id)

        consumer.handle(receipt_event())
        result = consumer.handle(issue)

        assert not result.duplicate
        assert ledger.get_balance("M1", PLANT).quantity_on_hand == Decimal("95")


class TestBus:
    def test_events_through_the_bus(self, consumer, bus, ledger, open_period):
        consumer.subscribe(bus)

        bus.publish(GOODS_RECEIPT_TOPIC, receipt_event())

        assert ledger.get_balance("M1", PLANT).quantity_on_hand == Decimal("100")
        views = {m.view for m in bus.published(PRICE_UPDATE_TOPIC)}
        assert views == {"legal", "group"}
