"""Unit tests for the liquidation manager and proceeds waterfall."""
from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from vault_risk.config import LiquidationConfig
from vault_risk.errors import (
    LiquidationAlreadyProcessed,
    LiquidationExecutionFailed,
    LiquidationNotFound,
    LiquidationNotWarranted,
    LoanNotActive,
    LoanNotFound,
    PriceValidationFailed,
)
from vault_risk.models import LiquidationStatus, LoanStatus, TriggerType
from vault_risk.services.liquidation import (
    LiquidationManager,
    MONEY_QUANTUM,
    distribute_proceeds,
    loan_ltv,
)


@pytest.fixture()
def manager(ledger, aggregation, calculator, clock, sample_loan) -> LiquidationManager:
    ledger.loans[sample_loan.loan_id] = sample_loan
    return LiquidationManager(
        ledger, aggregation, calculator, config=LiquidationConfig(), clock=clock
    )


@pytest.fixture()
def sui_sources(add_price_sources):
    """Four agreeing SUI sources at $2, enough for a confident price."""
    return add_price_sources({"s1": 2.0, "s2": 2.0, "s3": 2.0, "s4": 2.0})


def _set_price(sources, price: float) -> None:
    for source in sources.values():
        source.price = price


class TestDistributeProceeds:
    def test_full_waterfall(self) -> None:
        p = distribute_proceeds(
            "liq_1", Decimal("100"), Decimal("50"), Decimal("10"), Decimal("0.05"),
            borrower="0xB", liquidator="0xL",
        )
        assert p.debt_repayment == Decimal("50")
        assert p.liquidation_penalty == Decimal("10")
        assert p.liquidator_fee == Decimal("5.00")
        assert p.excess_return == Decimal("35.00")
        assert sum(d.amount for d in p.distributions) == p.total_proceeds
        assert [d.recipient for d in p.distributions] == ["lending_pool", "lending_pool", "0xL", "0xB"]

    @pytest.mark.parametrize(
        "total, expected",
        [
            ("40", ("40", "0", "0", "0")),
            ("55", ("50", "5", "0", "0")),
            ("62", ("50", "10", "2", "0")),
        ],
    )
    def test_shortfall_hits_later_claims_first(self, total: str, expected: tuple) -> None:
        p = distribute_proceeds(
            "liq_1", Decimal(total), Decimal("50"), Decimal("10"), Decimal("0.05"),
            borrower="0xB", liquidator="0xL",
        )
        amounts = (p.debt_repayment, p.liquidation_penalty, p.liquidator_fee, p.excess_return)
        assert amounts == tuple(Decimal(x) for x in expected)
        assert sum(amounts) == Decimal(total)

    def test_zero_proceeds(self) -> None:
        p = distribute_proceeds(
            "liq_1", Decimal(0), Decimal("50"), Decimal("10"), Decimal("0.05"),
            borrower="0xB", liquidator="0xL",
        )
        assert all(d.amount == 0 for d in p.distributions)
        assert len(p.distributions) == 4

    def test_negative_total_rejected(self) -> None:
        with pytest.raises(ValueError, match="negative"):
            distribute_proceeds(
                "liq_1", Decimal("-1"), Decimal("1"), Decimal(0), Decimal(0),
                borrower="0xB", liquidator="0xL",
            )

    def test_large_position_with_fractional_debt_conserves_total(self) -> None:
        units = Decimal(123456789012345678) / Decimal(10) ** 9
        total = units * Decimal("2.3456789012345")
        p = distribute_proceeds(
            "liq_1", total, Decimal("20.12345678901234567890123456"),
            total * Decimal("0.10"), Decimal("0.05"),
            borrower="0xB", liquidator="0xL",
        )

        assert sum(d.amount for d in p.distributions) == p.total_proceeds
        assert 0 <= total - p.total_proceeds < MONEY_QUANTUM
        assert p.debt_repayment == Decimal("20.123456789")
        assert all(d.amount == d.amount.quantize(MONEY_QUANTUM) for d in p.distributions)


class TestValuation:
    def test_loan_ltv(self) -> None:
        assert loan_ltv(Decimal("20"), Decimal("30")) == 6666
        assert loan_ltv(Decimal("20"), Decimal(0)) == 10000

    def test_total_debt_includes_accrued_interest(self, manager, sample_loan, clock) -> None:
        loan = replace(sample_loan, interest_rate=Decimal("10"))
        expected = 20 + 20 * 0.10 * 10 / 365
        assert float(manager.total_debt(loan)) == pytest.approx(expected)

    def test_total_debt_net_of_repayments(self, manager, sample_loan) -> None:
        loan = replace(sample_loan, repaid_amount=Decimal("5"))
        assert manager.total_debt(loan) == Decimal("15")
        overpaid = replace(sample_loan, repaid_amount=Decimal("50"))
        assert manager.total_debt(overpaid) == Decimal(0)

    @pytest.mark.asyncio
    async def test_collateral_value_from_aggregate(self, manager, sample_loan, sui_sources) -> None:
        assert await manager.collateral_value(sample_loan) == Decimal("20.0")


class TestCriteria:
    @pytest.mark.asyncio
    async def test_breached_loan_is_eligible(self, manager, sui_sources) -> None:
        assert await manager.check_liquidation_criteria("0xLOAN1")

    @pytest.mark.asyncio
    async def test_healthy_loan_is_not_eligible(self, manager, sui_sources) -> None:
        _set_price(sui_sources, 10.0)
        assert not await manager.check_liquidation_criteria("0xLOAN1")

    @pytest.mark.asyncio
    async def test_missing_or_inactive_loan(self, manager, ledger, sample_loan, sui_sources) -> None:
        assert not await manager.check_liquidation_criteria("0xMISSING")
        ledger.loans["0xLOAN1"] = replace(sample_loan, status=LoanStatus.REPAID)
        assert not await manager.check_liquidation_criteria("0xLOAN1")

    @pytest.mark.asyncio
    async def test_loan_threshold_overrides_asset_default(
        self, manager, ledger, sample_loan, sui_sources
    ) -> None:
        # $20 debt on $25 of collateral: 8000 bp
        _set_price(sui_sources, 2.5)
        assert await manager.check_liquidation_criteria("0xLOAN1")
        ledger.loans["0xLOAN1"] = replace(sample_loan, liquidation_threshold=8500)
        assert not await manager.check_liquidation_criteria("0xLOAN1")


class TestInitiate:
    @pytest.mark.asyncio
    async def test_opens_event_and_trigger(self, manager, sui_sources, clock) -> None:
        event = await manager.initiate_liquidation("0xLOAN1", "0xLIQUIDATOR")

        assert event.liquidation_id.startswith("liq_")
        assert event.status is LiquidationStatus.INITIATED
        assert event.collateral_value == Decimal("20.0")
        assert event.outstanding_debt == Decimal("20")
        assert event.ltv_at_trigger == 10000
        assert event.penalty == Decimal("2.000")
        assert event.initiated_at == clock.now
        assert await manager.get_liquidation_event(event.liquidation_id) == event

        triggers = await manager.get_liquidation_triggers("0xLOAN1")
        assert len(triggers) == 1
        assert triggers[0].liquidation_id == event.liquidation_id
        assert triggers[0].threshold_value == Decimal(8000)
        assert triggers[0].current_value == Decimal(10000)

    @pytest.mark.asyncio
    async def test_not_warranted(self, manager, sui_sources) -> None:
        _set_price(sui_sources, 10.0)
        with pytest.raises(LiquidationNotWarranted):
            await manager.initiate_liquidation("0xLOAN1", "0xLIQUIDATOR")
        assert await manager.get_liquidation_triggers("0xLOAN1") == []

    @pytest.mark.asyncio
    async def test_unknown_loan(self, manager) -> None:
        with pytest.raises(LoanNotFound):
            await manager.initiate_liquidation("0xMISSING", "0xLIQUIDATOR")

    @pytest.mark.asyncio
    async def test_inactive_loan(self, manager, ledger, sample_loan) -> None:
        ledger.loans["0xLOAN1"] = replace(sample_loan, status=LoanStatus.LIQUIDATED)
        with pytest.raises(LoanNotActive):
            await manager.initiate_liquidation("0xLOAN1", "0xLIQUIDATOR")

    @pytest.mark.asyncio
    async def test_payment_default_on_healthy_overdue_loan(self, manager, sui_sources, clock) -> None:
        _set_price(sui_sources, 10.0)
        clock.advance(days=40)

        with pytest.raises(LiquidationNotWarranted):
            await manager.initiate_liquidation("0xLOAN1", "0xLIQUIDATOR")

        event = await manager.initiate_liquidation(
            "0xLOAN1", "0xLIQUIDATOR", TriggerType.PAYMENT_DEFAULT
        )
        assert event.trigger_type is TriggerType.PAYMENT_DEFAULT
        assert event.outstanding_debt > Decimal("20")
        trigger = (await manager.get_liquidation_triggers("0xLOAN1"))[0]
        assert trigger.threshold_value == Decimal(0)
        assert trigger.current_value == Decimal(10)

    @pytest.mark.asyncio
    async def test_payment_default_not_overdue(self, manager, sui_sources) -> None:
        _set_price(sui_sources, 10.0)
        with pytest.raises(LiquidationNotWarranted):
            await manager.initiate_liquidation(
                "0xLOAN1", "0xLIQUIDATOR", TriggerType.PAYMENT_DEFAULT
            )

    @pytest.mark.asyncio
    async def test_manipulated_price_rejected(self, manager, sui_sources) -> None:
        with pytest.raises(PriceValidationFailed, match="exceeds maximum"):
            await manager.initiate_liquidation(
                "0xLOAN1", "0xLIQUIDATOR", proposed_price=1.0
            )
        assert await manager.get_liquidation_triggers("0xLOAN1") == []

    @pytest.mark.asyncio
    async def test_validated_price_used_for_valuation(self, manager, sui_sources) -> None:
        event = await manager.initiate_liquidation(
            "0xLOAN1", "0xLIQUIDATOR", proposed_price=2.05
        )
        assert event.collateral_value == Decimal("20.50")


class TestExecute:
    @pytest.mark.asyncio
    async def test_completes_with_distribution(self, manager, ledger, sui_sources, clock) -> None:
        ledger.proceeds = Decimal("30")
        event = await manager.initiate_liquidation("0xLOAN1", "0xLIQUIDATOR")
        clock.advance(seconds=5)

        done = await manager.execute_liquidation(event.liquidation_id, "0xEXECUTOR")

        assert done.status is LiquidationStatus.COMPLETED
        assert done.executor == "0xEXECUTOR"
        assert done.transaction_digest == "0xdigest1"
        assert done.completed_at == clock.now
        assert ledger.liquidations == [("0xLOAN1", "0xEXECUTOR")]

        proceeds = done.proceeds
        assert proceeds.debt_repayment == Decimal("20")
        assert proceeds.liquidation_penalty == Decimal("2.000")
        assert proceeds.liquidator_fee == Decimal("1.50")
        assert proceeds.excess_return == Decimal("6.500")
        assert await manager.get_liquidation_proceeds(event.liquidation_id) == proceeds

    @pytest.mark.asyncio
    async def test_snapshot_value_used_without_ledger_proceeds(self, manager, sui_sources) -> None:
        event = await manager.initiate_liquidation("0xLOAN1", "0xLIQUIDATOR")
        done = await manager.execute_liquidation(event.liquidation_id, "0xEXECUTOR")
        assert done.proceeds.total_proceeds == event.collateral_value

    @pytest.mark.asyncio
    async def test_unknown_liquidation(self, manager) -> None:
        with pytest.raises(LiquidationNotFound):
            await manager.execute_liquidation("liq_missing", "0xEXECUTOR")

    @pytest.mark.asyncio
    async def test_second_execution_rejected(self, manager, ledger, sui_sources) -> None:
        event = await manager.initiate_liquidation("0xLOAN1", "0xLIQUIDATOR")
        await manager.execute_liquidation(event.liquidation_id, "0xEXECUTOR")

        with pytest.raises(LiquidationAlreadyProcessed):
            await manager.execute_liquidation(event.liquidation_id, "0xEXECUTOR")
        assert len(ledger.liquidations) == 1

    @pytest.mark.asyncio
    async def test_concurrent_execution_runs_once(self, manager, ledger, sui_sources) -> None:
        event = await manager.initiate_liquidation("0xLOAN1", "0xLIQUIDATOR")

        results = await asyncio.gather(
            manager.execute_liquidation(event.liquidation_id, "0xA"),
            manager.execute_liquidation(event.liquidation_id, "0xB"),
            return_exceptions=True,
        )

        rejected = [r for r in results if isinstance(r, LiquidationAlreadyProcessed)]
        assert len(rejected) == 1
        assert len(ledger.liquidations) == 1

    @pytest.mark.asyncio
    async def test_ledger_failure_marks_failed(self, manager, ledger, sui_sources) -> None:
        ledger.fail_liquidation = True
        event = await manager.initiate_liquidation("0xLOAN1", "0xLIQUIDATOR")

        with pytest.raises(LiquidationExecutionFailed, match="execution reverted"):
            await manager.execute_liquidation(event.liquidation_id, "0xEXECUTOR")

        stored = await manager.get_liquidation_event(event.liquidation_id)
        assert stored.status is LiquidationStatus.FAILED
        assert stored.failure_reason == "execution reverted"
        assert await manager.get_liquidation_proceeds(event.liquidation_id) is None

        with pytest.raises(LiquidationAlreadyProcessed):
            await manager.execute_liquidation(event.liquidation_id, "0xEXECUTOR")

    @pytest.mark.asyncio
    async def test_recovered_loan_fails_revalidation(
        self, manager, ledger, sui_sources, clock
    ) -> None:
        event = await manager.initiate_liquidation("0xLOAN1", "0xLIQUIDATOR")
        _set_price(sui_sources, 10.0)
        clock.advance(minutes=2)

        with pytest.raises(LiquidationExecutionFailed):
            await manager.execute_liquidation(event.liquidation_id, "0xEXECUTOR")

        stored = await manager.get_liquidation_event(event.liquidation_id)
        assert stored.status is LiquidationStatus.FAILED
        assert ledger.liquidations == []

    @pytest.mark.asyncio
    async def test_cancelled_execution_marks_failed(self, manager, ledger, sui_sources) -> None:
        event = await manager.initiate_liquidation("0xLOAN1", "0xLIQUIDATOR")
        entered = asyncio.Event()

        async def hanging_liquidate(loan_id: str, executor: str):
            entered.set()
            await asyncio.sleep(30)

        ledger.liquidate = hanging_liquidate
        task = asyncio.create_task(
            manager.execute_liquidation(event.liquidation_id, "0xEXECUTOR")
        )
        await asyncio.wait_for(entered.wait(), timeout=1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        stored = await manager.get_liquidation_event(event.liquidation_id)
        assert stored.status is LiquidationStatus.FAILED
        assert stored.failure_reason == "cancelled during execution"
        assert await manager.get_liquidation_proceeds(event.liquidation_id) is None


class TestPenalty:
    @pytest.mark.asyncio
    async def test_not_overdue(self, manager) -> None:
        calc = await manager.calculate_penalty_interest("0xLOAN1")
        assert calc.days_overdue == 0
        assert calc.penalty_amount == Decimal(0)

    @pytest.mark.asyncio
    async def test_overdue_whole_days(self, manager, clock) -> None:
        clock.advance(days=40, hours=12)

        calc = await manager.calculate_penalty_interest("0xLOAN1")

        assert calc.days_overdue == 10
        assert calc.penalty_rate == Decimal("0.20")
        # 20 * 0.20 * 10 / 365, truncated to nine places.
        assert calc.penalty_amount == Decimal("0.109589041")
        assert await manager.get_penalty_calculation("0xLOAN1") == calc

    @pytest.mark.asyncio
    async def test_unknown_loan(self, manager) -> None:
        with pytest.raises(LoanNotFound):
            await manager.calculate_penalty_interest("0xMISSING")
