"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing sequence numbers for material ledger
    entries.  A dedicated counter row is read with ``SELECT ... FOR UPDATE``
    so concurrent allocations for the same sequence are serialized.

Invariants enforced:
    - Sequences are strictly monotonic per name.  max()+1 over the ledger
      is never used; the locked counter row is the only source of truth.
    - The increment is only visible once the caller's transaction commits.

Failure modes:
    - ConcurrencyConflictError when two transactions create the same
      counter row at once; the caller retries the whole operation.
"""

from sqlalchemy import BigInteger, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from costing_kernel.db.base import Base
from costing_kernel.exceptions import ConcurrencyConflictError
from costing_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class SequenceCounter(Base):
    """Named sequence with its current value."""

    __tablename__ = "costing_sequence_counters"

    name: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


class SequenceService:
    """
    Transactional sequence numbers.

    Does NOT commit; the caller owns the transaction boundary.
    """

    MATERIAL_LEDGER = "material_ledger_entry"

    def __init__(self, session: Session):
        self._session = session

    def next_value(self, sequence_name: str) -> int:
        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if counter is None:
            counter = SequenceCounter(name=sequence_name, current_value=0)
            self._session.add(counter)
            try:
                self._session.flush()
            except IntegrityError as exc:
                raise ConcurrencyConflictError("SequenceCounter", sequence_name) from exc

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        return self._session.execute(
            select(SequenceCounter.current_value).where(
                SequenceCounter.name == sequence_name
            )
        ).scalar_one_or_none()
