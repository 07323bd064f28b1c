"""
costing_services.events -- Inbound integration events.

Events published by inventory, procurement and production.  Each carries a
stable ``event_id`` assigned by its producer; redelivery of the same id is
consumed once (see ``costing_services.integration.EventConsumer``).
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from costing_kernel.db.base import SYSTEM_ACTOR_ID

GOODS_RECEIPT_TOPIC = "inventory.goods_receipt"
GOODS_ISSUE_TOPIC = "inventory.goods_issue"
INVOICE_RECEIVED_TOPIC = "procurement.invoice_received"
PRODUCTION_CONFIRMED_TOPIC = "production.confirmed"


@dataclass(frozen=True)
class GoodsReceiptEvent:
    event_id: UUID
    material_id: str
    plant_id: str
    quantity: Decimal
    unit_price: Decimal
    currency: str
    posting_date: date
    production_order_id: str | None = None
    reference: str | None = None
    actor_id: UUID = SYSTEM_ACTOR_ID


@dataclass(frozen=True)
class GoodsIssueEvent:
    """Stock leaving the plant; with an order id it is consumed by production."""

    event_id: UUID
    material_id: str
    plant_id: str
    quantity: Decimal
    posting_date: date
    production_order_id: str | None = None
    standard_quantity: Decimal | None = None
    reference: str | None = None
    actor_id: UUID = SYSTEM_ACTOR_ID


@dataclass(frozen=True)
class InvoiceReceivedEvent:
    event_id: UUID
    material_id: str
    plant_id: str
    quantity: Decimal
    invoice_price: Decimal
    currency: str
    posting_date: date
    invoice_ref: str | None = None
    actor_id: UUID = SYSTEM_ACTOR_ID


@dataclass(frozen=True)
class ProductionConfirmedEvent:
    """Labor and machine hours confirmed against a production order."""

    event_id: UUID
    order_id: str
    material_id: str
    plant_id: str
    confirmed_quantity: Decimal
    labor_hours: Decimal
    machine_hours: Decimal
    posting_date: date
    standard_labor_hours: Decimal | None = None
    standard_machine_hours: Decimal | None = None
    actor_id: UUID = SYSTEM_ACTOR_ID


TOPICS: dict[type, str] = {
    GoodsReceiptEvent: GOODS_RECEIPT_TOPIC,
    GoodsIssueEvent: GOODS_ISSUE_TOPIC,
    InvoiceReceivedEvent: INVOICE_RECEIVED_TOPIC,
    ProductionConfirmedEvent: PRODUCTION_CONFIRMED_TOPIC,
}
