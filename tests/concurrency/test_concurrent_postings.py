"""
Concurrent postings to one material.

Several threads, each with its own session, post receipts and issues of
the same material and plant at the same time.  The per-material lock must
serialize them: the final quantity and moving average match a sequential
run, no movement is lost, and sequence ids stay unique.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
from threading import Barrier

import pytest

from costing_kernel.domain.values import Money
from costing_kernel.services.period_service import PeriodService
from costing_modules.ledger.service import MaterialLedgerService

pytestmark = pytest.mark.slow

PLANT = "P1"
THREADS = 4
POSTINGS_PER_THREAD = 5


@pytest.fixture
def committed_period(session_factory, clock, actor_id):
    s = session_factory()
    PeriodService(s, clock).create_period(
        PLANT, 2024, 1, date(2024, 1, 1), date(2024, 1, 31), actor_id
    )
    s.commit()


def _post_receipts(session_factory, config, clock, actor_id, barrier, price):
    s = session_factory()
    ledger = MaterialLedgerService(s, config=config, clock=clock)
    barrier.wait()
    entries = []
    for _ in range(POSTINGS_PER_THREAD):
        entries.append(
            ledger.post_goods_receipt(
                "M1", PLANT, Decimal("10"), Money.of(price, "USD"), date(2024, 1, 5), actor_id
            )
        )
    return entries


def _post_issues(session_factory, config, clock, actor_id, barrier):
    s = session_factory()
    ledger = MaterialLedgerService(s, config=config, clock=clock)
    barrier.wait()
    return [
        ledger.post_goods_issue("M1", PLANT, Decimal("1"), date(2024, 1, 6), actor_id)
        for _ in range(POSTINGS_PER_THREAD)
    ]


class TestConcurrentReceipts:
    def test_moving_average_is_exact(self, session_factory, committed_period, config, clock, actor_id):
        prices = ["10", "11", "12", "13"]
        barrier = Barrier(THREADS)

        with ThreadPoolExecutor(max_workers=THREADS) as pool:
            futures = [
                pool.submit(_post_receipts, session_factory, config, clock, actor_id, barrier, p)
                for p in prices
            ]
            entries = [e for f in futures for e in f.result()]

        ledger = MaterialLedgerService(session_factory(), config=config, clock=clock)
        price = ledger.get_price("M1", PLANT)
        on_hand = ledger.get_balance("M1", PLANT).quantity_on_hand
        assert on_hand == Decimal("200")
        assert price.stock_value == Decimal("2300")
        # Same price as a sequential run, whatever the interleaving
        assert price.unit_price == price.stock_value / on_hand == Decimal("11.5")

        ids = sorted(e.sequence_id for e in entries)
        assert len(set(ids)) == THREADS * POSTINGS_PER_THREAD
        assert ids == list(range(ids[0], ids[0] + len(ids)))

    def test_issues_never_overdraw(self, session_factory, committed_period, config, clock, actor_id):
        s = session_factory()
        MaterialLedgerService(s, config=config, clock=clock).post_goods_receipt(
            "M1", PLANT, Decimal("20"), Money.of("10", "USD"), date(2024, 1, 5), actor_id
        )
        barrier = Barrier(THREADS)

        with ThreadPoolExecutor(max_workers=THREADS) as pool:
            futures = [
                pool.submit(_post_issues, session_factory, config, clock, actor_id, barrier)
                for _ in range(THREADS)
            ]
            issued = [e for f in futures for e in f.result()]

        ledger = MaterialLedgerService(session_factory(), config=config, clock=clock)
        assert len(issued) == THREADS * POSTINGS_PER_THREAD
        assert ledger.get_balance("M1", PLANT).quantity_on_hand == Decimal("0")
        assert ledger.get_price("M1", PLANT).stock_value == Decimal("0")
