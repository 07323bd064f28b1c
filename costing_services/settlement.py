"""
costing_services.settlement -- Settlement instructions to the external ledger.

The general ledger is an external collaborator: the close run hands it one
instruction per settlement account and never books double-entry journals
itself.  Instruction ids are deterministic per period and account, so a
retried settlement step re-sends the same ids and the ledger can drop the
duplicates.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from costing_kernel.logging_config import get_logger

logger = get_logger("services.settlement")


@dataclass(frozen=True)
class SettlementInstruction:
    instruction_id: UUID
    account: str
    amount: Decimal
    currency: str
    period_ref: str
    source: str


class SettlementLedger(Protocol):
    """Receives settlement instructions; must accept a repeated instruction_id."""

    def post(self, instruction: SettlementInstruction) -> None: ...


class RecordingSettlementLedger:
    """In-process settlement ledger keeping every distinct instruction."""

    def __init__(self) -> None:
        self._instructions: dict[UUID, SettlementInstruction] = {}

    def post(self, instruction: SettlementInstruction) -> None:
        if instruction.instruction_id in self._instructions:
            logger.info(
                "settlement_instruction_duplicate",
                extra={"instruction_id": str(instruction.instruction_id)},
            )
            return
        self._instructions[instruction.instruction_id] = instruction

    @property
    def instructions(self) -> list[SettlementInstruction]:
        return list(self._instructions.values())

    def total(self) -> Decimal:
        return sum((i.amount for i in self._instructions.values()), Decimal("0"))

    def for_account(self, account: str) -> list[SettlementInstruction]:
        return [i for i in self._instructions.values() if i.account == account]
