"""
Module ORM Registry (``costing_modules._orm_registry``).

Responsibility
--------------
Ensure every SQLAlchemy ORM model is imported so that ``Base.metadata``
contains its table before ``create_tables()`` runs, and collect the
immutability rules declared next to each module's models.

Architecture position
---------------------
**Modules layer** -- utility.  Imported inline by
``costing_kernel.db.engine.create_tables`` and
``costing_kernel.db.immutability.register_immutability_listeners``.

Usage
-----
``tests/conftest.py`` and entrypoints call ``create_tables()`` and
``register_immutability_listeners()``; both reach this module.
"""

from costing_kernel.db.immutability import ImmutabilityRule, status_in


def import_all_orm_models() -> None:
    """Import kernel models and every ``*.orm`` module (idempotent)."""
    # Kernel tables first (fiscal periods, sequence counters)
    import costing_kernel.models  # noqa: F401
    # fmt: off
    import costing_modules.estimation.orm  # noqa: F401
    import costing_modules.landed_cost.orm  # noqa: F401
    import costing_modules.ledger.orm  # noqa: F401
    import costing_modules.variance.orm  # noqa: F401
    import costing_modules.wip.orm  # noqa: F401
    import costing_services.orm  # noqa: F401
    # fmt: on


def immutability_rules() -> list[ImmutabilityRule]:
    """Every protected model with the condition that freezes it."""
    from costing_kernel.models.fiscal_period import FiscalPeriod, PeriodStatus
    from costing_modules.estimation.orm import estimate_rules
    from costing_modules.landed_cost.orm import landed_cost_rules
    from costing_modules.ledger.orm import ledger_rules
    from costing_modules.variance.orm import variance_rules
    from costing_modules.wip.orm import wip_rules
    from costing_services.orm import close_run_rules

    return [
        *ledger_rules(),
        *estimate_rules(),
        *variance_rules(),
        *wip_rules(),
        *landed_cost_rules(),
        *close_run_rules(),
        ImmutabilityRule(
            model=FiscalPeriod,
            entity_type="FiscalPeriod",
            frozen_when=status_in("status", PeriodStatus.CLOSED.value),
        ),
    ]
