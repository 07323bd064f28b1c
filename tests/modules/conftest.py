"""
Fixtures shared by module service tests.
"""

import pytest

from costing_modules.ledger.service import MaterialLedgerService
from costing_modules.variance.service import VarianceAnalyzer
from costing_services.integration import InMemoryMessageBus

PLANT = "P1"


@pytest.fixture
def bus():
    return InMemoryMessageBus()


@pytest.fixture
def ledger(session, config, clock, bus):
    return MaterialLedgerService(session, config=config, clock=clock, publisher=bus)


@pytest.fixture
def analyzer(session, config, clock):
    return VarianceAnalyzer(session, config=config, clock=clock)
