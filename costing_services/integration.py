"""
Integration entrypoint for inventory, procurement and production events.

``EventConsumer`` turns inbound events into ledger postings and WIP
confirmations.  The bus delivers at least once; the consumer records each
handled ``event_id`` in the processed-event ledger and skips replays.  The
ledger and WIP services are themselves idempotent on the event id, so a
crash between the posting and the processed-event row is safe to redeliver.

Usage::

    bus = InMemoryMessageBus()
    consumer = EventConsumer(session, config=config, bus=bus)
    consumer.subscribe(bus)
    bus.publish(GOODS_RECEIPT_TOPIC, GoodsReceiptEvent(...))
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from costing_config import CostingConfig, get_active_config
from costing_kernel.domain.clock import Clock, SystemClock
from costing_kernel.domain.values import Money
from costing_kernel.exceptions import ConcurrencyConflictError, ValidationError
from costing_kernel.logging_config import LogContext, get_logger
from costing_modules._service_helpers import transaction_boundary
from costing_modules.estimation.models import StructureResolver
from costing_modules.ledger.service import MaterialLedgerService
from costing_modules.wip.service import WipService
from costing_services.events import (
    TOPICS,
    GoodsIssueEvent,
    GoodsReceiptEvent,
    InvoiceReceivedEvent,
    ProductionConfirmedEvent,
)
from costing_services.orm import ProcessedEventModel

logger = get_logger("services.integration")

Handler = Callable[[object], object]


class MessageBus(ABC):
    """At-least-once publish/subscribe transport."""

    @abstractmethod
    def subscribe(self, topic: str, handler: Handler) -> None: ...

    @abstractmethod
    def publish(self, topic: str, message: object) -> None: ...


class InMemoryMessageBus(MessageBus):
    """Synchronous bus; every published message is kept per topic."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._published: dict[str, list[object]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> None:
        self._handlers[topic].append(handler)

    def publish(self, topic: str, message: object) -> None:
        self._published[topic].append(message)
        for handler in self._handlers[topic]:
            handler(message)

    def published(self, topic: str) -> list[object]:
        return list(self._published[topic])


@dataclass(frozen=True)
class ConsumeResult:
    event_id: UUID
    duplicate: bool
    result_ids: tuple[UUID, ...] = ()


class EventConsumer:
    """
    Idempotent consumer of costing events.

    Price-update instructions from ledger postings go to ``bus`` when one
    is given.
    """

    def __init__(
        self,
        session: Session,
        config: CostingConfig | None = None,
        clock: Clock | None = None,
        bus: MessageBus | None = None,
        resolver: StructureResolver | None = None,
    ):
        self._session = session
        self._config = config or get_active_config()
        self._clock = clock or SystemClock()
        self._ledger = MaterialLedgerService(
            session, config=self._config, clock=self._clock, publisher=bus
        )
        self._wip = WipService(
            session, config=self._config, clock=self._clock, resolver=resolver
        )
        self._dispatch: dict[type, Callable[[object], tuple[UUID, ...]]] = {
            GoodsReceiptEvent: self._goods_receipt,
            GoodsIssueEvent: self._goods_issue,
            InvoiceReceivedEvent: self._invoice_received,
            ProductionConfirmedEvent: self._production_confirmed,
        }

    def subscribe(self, bus: MessageBus) -> None:
        for topic in TOPICS.values():
            bus.subscribe(topic, self.handle)

    def handle(self, event: object) -> ConsumeResult:
        handler = self._dispatch.get(type(event))
        if handler is None:
            raise ValidationError(f"Unsupported event type {type(event).__name__}")

        event_id = event.event_id
        with LogContext.bind(event_id=str(event_id)):
            if self.is_processed(event_id):
                logger.info(
                    "event_duplicate_skipped",
                    extra={"event_type": type(event).__name__},
                )
                return ConsumeResult(event_id=event_id, duplicate=True)

            result_ids = handler(event)
            with transaction_boundary(
                self._session, True, logger, "event_mark_processed", event_id=event_id,
            ):
                self._session.add(
                    ProcessedEventModel(
                        event_id=event_id,
                        event_type=type(event).__name__,
                        result_id=result_ids[0] if result_ids else None,
                        processed_at=self._clock.now(),
                        created_by_id=event.actor_id,
                    )
                )
                try:
                    self._session.flush()
                except IntegrityError as exc:
                    raise ConcurrencyConflictError("ProcessedEvent", str(event_id)) from exc

            logger.info(
                "event_consumed",
                extra={"event_type": type(event).__name__, "results": len(result_ids)},
            )
            return ConsumeResult(event_id=event_id, duplicate=False, result_ids=result_ids)

    def is_processed(self, event_id: UUID) -> bool:
        return self._session.execute(
            select(ProcessedEventModel.id).where(ProcessedEventModel.event_id == event_id)
        ).scalar_one_or_none() is not None

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _goods_receipt(self, event: GoodsReceiptEvent) -> tuple[UUID, ...]:
        price = Money.of(event.unit_price, event.currency)
        if event.production_order_id is not None:
            entry = self._ledger.post_production_receipt(
                event.production_order_id, event.material_id, event.plant_id,
                event.quantity, price, event.posting_date, event.actor_id,
                event_id=event.event_id, reference=event.reference,
            )
            self._wip.record_consumption(entry, event.actor_id)
        else:
            entry = self._ledger.post_goods_receipt(
                event.material_id, event.plant_id, event.quantity, price,
                event.posting_date, event.actor_id,
                event_id=event.event_id, reference=event.reference,
            )
        return (entry.id,)

    def _goods_issue(self, event: GoodsIssueEvent) -> tuple[UUID, ...]:
        if event.production_order_id is not None:
            entry = self._ledger.post_production_consumption(
                event.production_order_id, event.material_id, event.plant_id,
                event.quantity, event.posting_date, event.actor_id,
                standard_quantity=event.standard_quantity,
                event_id=event.event_id, reference=event.reference,
            )
            self._wip.record_consumption(entry, event.actor_id)
        else:
            entry = self._ledger.post_goods_issue(
                event.material_id, event.plant_id, event.quantity,
                event.posting_date, event.actor_id,
                standard_quantity=event.standard_quantity,
                event_id=event.event_id, reference=event.reference,
            )
        return (entry.id,)

    def _invoice_received(self, event: InvoiceReceivedEvent) -> tuple[UUID, ...]:
        entry = self._ledger.post_invoice(
            event.material_id, event.plant_id, event.quantity,
            Money.of(event.invoice_price, event.currency),
            event.posting_date, event.actor_id,
            event_id=event.event_id, reference=event.invoice_ref,
        )
        return (entry.id,)

    def _production_confirmed(self, event: ProductionConfirmedEvent) -> tuple[UUID, ...]:
        entries = self._wip.record_confirmation(
            event.order_id, event.material_id, event.plant_id,
            event.confirmed_quantity, event.labor_hours, event.machine_hours,
            event.posting_date, event.actor_id,
            standard_labor_hours=event.standard_labor_hours,
            standard_machine_hours=event.standard_machine_hours,
            event_id=event.event_id,
        )
        return tuple(e.id for e in entries)
