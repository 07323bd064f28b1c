"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Costing records that feed valuation and settlement must be tamper-proof.
Corrections are made with new records (reversing ledger entries, a new
close-run generation), never by editing history.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
Listeners registered here check each protected model and raise
ImmutabilityViolationError before any SQL is sent:

    session.flush()
         |
         v
    [before_update] --> _check_update() --> ImmutabilityViolationError
         |
    [before_delete] --> _check_delete() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                     | When Immutable                 | Mutable fields
---------------------------|--------------------------------|------------------------
MaterialLedgerEntry        | ALWAYS                         | -
MaterialLedgerValuation    | ALWAYS                         | -
ActualCostRecord           | ALWAYS                         | -
CostEstimate               | status RELEASED or later       | status, version
CostVariance               | ALWAYS                         | settlement stamp
WipCostEntry               | ALWAYS                         | -
WIPPosition                | once settled                   | -
LandedCostDocument         | status POSTED                  | -
LandedCostLine, Charge     | document POSTED                | -
AllocatedLandedCost        | ALWAYS                         | -
PeriodCloseRun             | status COMPLETED or FAILED     | -
FiscalPeriod               | status CLOSED                  | -

===============================================================================
DESIGN DECISIONS
===============================================================================

1. updated_at / updated_by_id / version are audit and concurrency metadata,
   not costing data, so they may change on any row.

2. "Was frozen" is judged on the value BEFORE the pending update, using
   SQLAlchemy attribute history.  This lets the workflow perform the
   freezing transition itself (DRAFT -> POSTED, unsettled -> settled).

3. Rules are declared next to the models (see
   costing_modules._orm_registry.immutability_rules) and imported inline to
   avoid circular imports.

===============================================================================
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from costing_kernel.exceptions import ImmutabilityViolationError
from costing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id", "version"})

# Reads an attribute's value as it was before the pending flush.
PreviousValue = Callable[[str], Any]


@dataclass(frozen=True)
class ImmutabilityRule:
    """
    Protection for one ORM model.

    frozen_when: given a reader for pre-update attribute values, returns
        True when the row is already frozen.  None means always frozen.
    mutable_fields: fields that may still change on a frozen row.
    allow_delete: whether a frozen row may be deleted (never, by default).
    """

    model: type
    entity_type: str
    frozen_when: Callable[[PreviousValue], bool] | None = None
    mutable_fields: frozenset[str] = field(default_factory=frozenset)
    allow_delete: bool = False


def previous_value(target: Any, attribute: str) -> Any:
    """Value of an attribute before the pending change, or its current value."""
    history = get_history(target, attribute)
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return getattr(target, attribute)


def status_in(attribute: str, *values: str) -> Callable[[PreviousValue], bool]:
    """frozen_when helper: frozen while the attribute holds one of values."""
    frozen = frozenset(values)

    def _check(prev: PreviousValue) -> bool:
        value = prev(attribute)
        return getattr(value, "value", value) in frozen

    return _check


def is_set(attribute: str) -> Callable[[PreviousValue], bool]:
    """frozen_when helper: frozen once the attribute is not None."""

    def _check(prev: PreviousValue) -> bool:
        return prev(attribute) is not None

    return _check


_RULES: dict[type, ImmutabilityRule] = {}


def _is_frozen(rule: ImmutabilityRule, target: Any) -> bool:
    if rule.frozen_when is None:
        return True
    return rule.frozen_when(lambda attr: previous_value(target, attr))


def _check_update(mapper, connection, target):
    rule = _RULES.get(type(target))
    if rule is None or not _is_frozen(rule, target):
        return

    # Child collections are checked on the child rows themselves
    state = inspect(target)
    for column_attr in state.mapper.column_attrs:
        attr = state.attrs[column_attr.key]
        if attr.key in _AUDIT_FIELDS or attr.key in rule.mutable_fields:
            continue
        if attr.history.has_changes():
            logger.error(
                "immutability_violation_blocked",
                extra={
                    "entity_type": rule.entity_type,
                    "entity_id": str(target.id),
                    "operation": "UPDATE",
                    "field": attr.key,
                },
            )
            raise ImmutabilityViolationError(
                entity_type=rule.entity_type,
                entity_id=str(target.id),
                reason=f"Cannot modify field '{attr.key}'",
            )


def _check_delete(mapper, connection, target):
    rule = _RULES.get(type(target))
    if rule is None or rule.allow_delete or not _is_frozen(rule, target):
        return

    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": rule.entity_type,
            "entity_id": str(target.id),
            "operation": "DELETE",
        },
    )
    raise ImmutabilityViolationError(
        entity_type=rule.entity_type,
        entity_id=str(target.id),
        reason="Record cannot be deleted",
    )


def register_immutability_listeners(
    rules: Iterable[ImmutabilityRule] | None = None,
) -> None:
    """Register listeners for every protected model (idempotent)."""
    if rules is None:
        from costing_modules._orm_registry import immutability_rules

        rules = immutability_rules()

    for rule in rules:
        _RULES[rule.model] = rule
        if not event.contains(rule.model, "before_update", _check_update):
            event.listen(rule.model, "before_update", _check_update)
        if not event.contains(rule.model, "before_delete", _check_delete):
            event.listen(rule.model, "before_delete", _check_delete)

    logger.debug("immutability_listeners_registered", extra={"models": len(_RULES)})


def unregister_immutability_listeners() -> None:
    """
    Remove all immutability listeners.

    WARNING: Only for tests that deliberately bypass the guard.
    """
    for model in list(_RULES):
        if event.contains(model, "before_update", _check_update):
            event.remove(model, "before_update", _check_update)
        if event.contains(model, "before_delete", _check_delete):
            event.remove(model, "before_delete", _check_delete)
    _RULES.clear()
