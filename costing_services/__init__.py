"""
costing_services -- Package init and public API.

Responsibility:
    Orchestration across costing modules: the resumable period close, the
    settlement hand-off to the external ledger and the consumption of
    inbound integration events.

Architecture position:
    Services -- stateful orchestration over costing_modules + kernel.

        costing_services/ -> costing_modules/  (allowed)
        costing_services/ -> costing_kernel/   (allowed)
        costing_modules/  -> costing_services/ (FORBIDDEN, except the ORM
                                                registry importing orm.py)
"""

from costing_kernel.logging_config import get_logger

logger = get_logger("services")

from costing_services._close_types import (  # noqa: E402
    CLOSE_STEPS,
    CloseRunStatus,
    CloseStep,
    PeriodCloseReport,
    PeriodCloseRun,
)
from costing_services.events import (  # noqa: E402
    GoodsIssueEvent,
    GoodsReceiptEvent,
    InvoiceReceivedEvent,
    ProductionConfirmedEvent,
)
from costing_services.integration import (  # noqa: E402
    ConsumeResult,
    EventConsumer,
    InMemoryMessageBus,
    MessageBus,
)
from costing_services.period_close_orchestrator import PeriodCloseOrchestrator  # noqa: E402
from costing_services.settlement import (  # noqa: E402
    RecordingSettlementLedger,
    SettlementInstruction,
    SettlementLedger,
)

__all__ = [
    "CLOSE_STEPS",
    "CloseRunStatus",
    "CloseStep",
    "ConsumeResult",
    "EventConsumer",
    "GoodsIssueEvent",
    "GoodsReceiptEvent",
    "InMemoryMessageBus",
    "InvoiceReceivedEvent",
    "MessageBus",
    "PeriodCloseOrchestrator",
    "PeriodCloseReport",
    "PeriodCloseRun",
    "ProductionConfirmedEvent",
    "RecordingSettlementLedger",
    "SettlementInstruction",
    "SettlementLedger",
]
