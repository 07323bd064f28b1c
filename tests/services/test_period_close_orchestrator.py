"""
Tests for the resumable period close.

Verifies:
- Steps run in order and the period ends CLOSED with a report
- Settlement instructions per account, sent once per period
- A completed run is returned unchanged
- A failed step marks the run FAILED and releases the period lock
- A retry opens the next attempt and skips inherited steps
- Cancellation between steps and resumption
- Periods close in sequence
"""

from datetime import date
from decimal import Decimal

import pytest

from costing_kernel.domain.values import Money
from costing_kernel.exceptions import (
    PeriodLockedError,
    PeriodSequenceError,
    StepFailureError,
)
from costing_modules.ledger.service import MaterialLedgerService
from costing_modules.variance.service import VarianceAnalyzer
from costing_modules.wip.service import WipService
from costing_services._close_types import CloseRunStatus, CloseStep
from costing_services.period_close_orchestrator import PeriodCloseOrchestrator
from costing_services.settlement import RecordingSettlementLedger

PLANT = "P1"
JAN_5 = date(2024, 1, 5)
JAN_10 = date(2024, 1, 10)


def usd(amount):
    return Money.of(amount, "USD")


class FailingWipService(WipService):
    def calculate_positions(self, *args, **kwargs):
        raise RuntimeError("order feed unavailable")


class FailingSettlementWipService(WipService):
    def settle_positions(self, *args, **kwargs):
        raise RuntimeError("order feed unavailable")


class CountingLedger(MaterialLedgerService):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.actual_cost_calls = 0

    def record_actual_costs(self, *args, **kwargs):
        self.actual_cost_calls += 1
        return super().record_actual_costs(*args, **kwargs)


class CountingAnalyzer(VarianceAnalyzer):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.analyze_calls = 0

    def analyze_period(self, *args, **kwargs):
        self.analyze_calls += 1
        return super().analyze_period(*args, **kwargs)


@pytest.fixture
def ledger(session, config, clock):
    return MaterialLedgerService(session, config=config, clock=clock)


@pytest.fixture
def settlement_ledger():
    return RecordingSettlementLedger()


@pytest.fixture
def orchestrator(session, config, clock, settlement_ledger):
    return PeriodCloseOrchestrator(
        session, config=config, clock=clock, settlement_ledger=settlement_ledger
    )


@pytest.fixture
def january(session, config, clock, ledger, open_period, make_standard, actor_id):
    """
    M2 bought above standard and consumed above plan on order PO-1, which
    also books labor over plan and delivers FG1.
    """
    make_standard("M2", "10")
    wip = WipService(session, config=config, clock=clock)
    ledger.post_goods_receipt("M2", PLANT, Decimal("100"), usd("12"), JAN_5, actor_id)
    ledger.post_production_consumption(
        "PO-1", "M2", PLANT, Decimal("100"), JAN_10, actor_id,
        standard_quantity=Decimal("90"),
    )
    wip.record_confirmation(
        "PO-1", "FG1", PLANT, Decimal("10"), Decimal("2"), Decimal("0"),
        JAN_10, actor_id, standard_labor_hours=Decimal("1.5"),
    )
    ledger.post_production_receipt(
        "PO-1", "FG1", PLANT, Decimal("10"), usd("120"), JAN_10, actor_id
    )


class TestClose:
    def test_happy_path(self, orchestrator, january, period_service, settlement_ledger, actor_id):
        run = orchestrator.close(2024, 1, PLANT, actor_id)

        assert run.status is CloseRunStatus.COMPLETED
        assert run.attempt == 1
        assert run.completed_steps == (
            CloseStep.ACTUAL_COST, CloseStep.VARIANCES, CloseStep.WIP, CloseStep.SETTLEMENT,
        )
        assert run.next_step is None
        assert period_service.get_period(PLANT, 2024, 1).status == "closed"

        report = run.report
        assert report.materials_processed == 2
        assert report.variance_count == 3
        assert report.total_variance == Decimal("322.50")
        assert report.unfavorable_total == Decimal("322.50")
        assert report.favorable_total == Decimal("0")
        assert report.by_category["material"] == Decimal("300")
        assert report.by_category["labor"] == Decimal("22.50")
        assert report.wip_total == Decimal("90")
        assert report.wip_positions == 1
        assert report.settlement_instruction_count == 4

        amounts = {i.source: i.amount for i in settlement_ledger.instructions}
        assert amounts == {
            "material.price": Decimal("200"),
            "material.quantity": Decimal("100"),
            "labor.efficiency": Decimal("22.50"),
            "wip": Decimal("90"),
        }
        assert all(i.period_ref == "P1/2024/01" for i in settlement_ledger.instructions)
        assert settlement_ledger.for_account("5410")[0].source == "material.price"
        assert settlement_ledger.for_account("5420")[0].source == "material.quantity"

    def test_variances_and_positions_are_settled(
        self, session, config, clock, orchestrator, january, actor_id
    ):
        orchestrator.close(2024, 1, PLANT, actor_id)

        analyzer = VarianceAnalyzer(session, config=config, clock=clock)
        wip = WipService(session, config=config, clock=clock)
        variances = analyzer.variances_for_period(PLANT, 2024, 1)
        assert variances and all(v.settlement_ref == "P1/2024/01#1" for v in variances)
        assert all(p.settled for p in wip.positions_for_period(PLANT, 2024, 1))

    def test_empty_period(self, orchestrator, open_period, settlement_ledger, actor_id):
        run = orchestrator.close(2024, 1, PLANT, actor_id)

        assert run.status is CloseRunStatus.COMPLETED
        assert run.report.variance_count == 0
        assert run.report.settlement_instruction_count == 0
        assert settlement_ledger.instructions == []

    def test_completed_run_is_returned(self, orchestrator, january, settlement_ledger, actor_id):
        first = orchestrator.close(2024, 1, PLANT, actor_id)
        second = orchestrator.close(2024, 1, PLANT, actor_id)

        assert second.id == first.id
        assert second.status is CloseRunStatus.COMPLETED
        assert len(settlement_ledger.instructions) == 4
        assert len(orchestrator.runs_for_period(2024, 1, PLANT)) == 1

    def test_posting_into_closed_period(self, orchestrator, ledger, january, actor_id):
        orchestrator.close(2024, 1, PLANT, actor_id)
        with pytest.raises(PeriodLockedError):
            ledger.post_goods_receipt("M2", PLANT, Decimal("1"), usd("10"), JAN_10, actor_id)


class TestStepFailure:
    def test_failure_is_recorded(self, session, config, clock, january, period_service, actor_id):
        failing = PeriodCloseOrchestrator(
            session, config=config, clock=clock,
            wip=FailingWipService(session, config=config, clock=clock, auto_commit=False),
        )

        with pytest.raises(StepFailureError) as exc_info:
            failing.close(2024, 1, PLANT, actor_id)

        assert exc_info.value.step_name == "wip"
        run = failing.latest_run(2024, 1, PLANT)
        assert run.status is CloseRunStatus.FAILED
        assert run.failed_step is CloseStep.WIP
        assert run.error_code == "RuntimeError"
        assert "order feed unavailable" in run.error_message
        assert run.completed_steps == (CloseStep.ACTUAL_COST, CloseStep.VARIANCES)
        assert period_service.get_period(PLANT, 2024, 1).status == "open"

    def test_retry_resumes_at_failed_step(
        self, session, config, clock, january, settlement_ledger, actor_id
    ):
        failing = PeriodCloseOrchestrator(
            session, config=config, clock=clock,
            wip=FailingWipService(session, config=config, clock=clock, auto_commit=False),
        )
        with pytest.raises(StepFailureError):
            failing.close(2024, 1, PLANT, actor_id)

        ledger = CountingLedger(session, config=config, clock=clock, auto_commit=False)
        analyzer = CountingAnalyzer(session, config=config, clock=clock, auto_commit=False)
        retry = PeriodCloseOrchestrator(
            session, config=config, clock=clock, settlement_ledger=settlement_ledger,
            ledger=ledger, variances=analyzer,
        )
        run = retry.close(2024, 1, PLANT, actor_id)

        assert run.status is CloseRunStatus.COMPLETED
        assert run.attempt == 2
        attempts = retry.runs_for_period(2024, 1, PLANT)
        assert [r.status for r in attempts] == [CloseRunStatus.FAILED, CloseRunStatus.COMPLETED]
        # Steps finished by the first attempt are inherited, not re-run
        assert ledger.actual_cost_calls == 0
        assert analyzer.analyze_calls == 0
        assert run.report.variance_count == 3

    def test_failure_after_instructions_were_sent(
        self, session, config, clock, january, settlement_ledger, period_service, actor_id
    ):
        failing = PeriodCloseOrchestrator(
            session, config=config, clock=clock, settlement_ledger=settlement_ledger,
            wip=FailingSettlementWipService(
                session, config=config, clock=clock, auto_commit=False
            ),
        )
        with pytest.raises(StepFailureError) as exc_info:
            failing.close(2024, 1, PLANT, actor_id)

        assert exc_info.value.step_name == "settlement"
        sent = {i.instruction_id: i.amount for i in settlement_ledger.instructions}
        assert len(sent) == 4
        assert period_service.get_period(PLANT, 2024, 1).status == "open"
        analyzer = VarianceAnalyzer(session, config=config, clock=clock)
        assert not any(v.settled for v in analyzer.variances_for_period(PLANT, 2024, 1))

        retry = PeriodCloseOrchestrator(
            session, config=config, clock=clock, settlement_ledger=settlement_ledger,
        )
        run = retry.close(2024, 1, PLANT, actor_id)

        assert run.status is CloseRunStatus.COMPLETED
        assert run.attempt == 2
        # The retry re-sends the same instruction ids; nothing is booked twice
        assert {i.instruction_id: i.amount for i in settlement_ledger.instructions} == sent
        assert settlement_ledger.total() == Decimal("412.50")


class TestCancellation:
    def test_cancel_between_steps_and_resume(
        self, orchestrator, ledger, january, period_service, actor_id
    ):
        answers = iter([False, True])
        run = orchestrator.close(2024, 1, PLANT, actor_id, should_cancel=lambda: next(answers))

        assert run.status is CloseRunStatus.RUNNING
        assert run.completed_steps == (CloseStep.ACTUAL_COST,)
        assert run.next_step is CloseStep.VARIANCES
        assert period_service.get_period(PLANT, 2024, 1).status == "closing"
        with pytest.raises(PeriodLockedError):
            ledger.post_goods_receipt("M2", PLANT, Decimal("1"), usd("10"), JAN_10, actor_id)

        resumed = orchestrator.close(2024, 1, PLANT, actor_id)

        assert resumed.id == run.id
        assert resumed.status is CloseRunStatus.COMPLETED


class TestSequence:
    def test_previous_period_must_be_closed(self, orchestrator, next_period, actor_id):
        with pytest.raises(PeriodSequenceError):
            orchestrator.close(2024, 2, PLANT, actor_id)
        assert orchestrator.latest_run(2024, 2, PLANT) is None

    def test_periods_close_in_order(self, orchestrator, next_period, period_service, actor_id):
        orchestrator.close(2024, 1, PLANT, actor_id)
        run = orchestrator.close(2024, 2, PLANT, actor_id)

        assert run.status is CloseRunStatus.COMPLETED
        assert period_service.get_period(PLANT, 2024, 2).status == "closed"
