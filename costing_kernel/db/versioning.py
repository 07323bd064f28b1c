"""
Optimistic concurrency helpers.

Mutable costing rows (MaterialPrice, MaterialBalance, CostEstimate,
CostVariance, PeriodCloseRun) carry a ``version`` column registered as the
mapper's ``version_id_col``.  SQLAlchemy then issues
``UPDATE ... WHERE id = :id AND version = :old`` and raises StaleDataError
when no row matched.  These helpers turn that, and caller-supplied expected
versions, into the retryable ConcurrencyConflictError.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm.exc import StaleDataError

from costing_kernel.exceptions import ConcurrencyConflictError
from costing_kernel.logging_config import get_logger

logger = get_logger("db.versioning")


def check_expected_version(
    entity_type: str,
    entity_id: object,
    current_version: int,
    expected_version: int | None,
) -> None:
    """Compare-and-set precondition: reject if the caller saw a stale version."""
    if expected_version is None or expected_version == current_version:
        return
    logger.warning(
        "version_check_failed",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "expected_version": expected_version,
            "actual_version": current_version,
        },
    )
    raise ConcurrencyConflictError(
        entity_type, str(entity_id), expected_version, current_version
    )


@contextmanager
def stale_data_as_conflict(
    entity_type: str, entity_id: object
) -> Generator[None, None, None]:
    """Translate StaleDataError raised inside the block."""
    try:
        yield
    except StaleDataError as exc:
        logger.warning(
            "stale_write_detected",
            extra={"entity_type": entity_type, "entity_id": str(entity_id)},
        )
        raise ConcurrencyConflictError(entity_type, str(entity_id)) from exc
