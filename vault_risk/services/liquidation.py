"""Liquidation lifecycle: trigger detection, execution and proceeds distribution.

All money is ``Decimal``. Liquidation events move strictly
Initiated → InProgress → Completed | Failed; the first transition is an
atomic compare-and-set on the store, so an event executes at most once.
"""
from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import ROUND_DOWN, Decimal

from ..clock import Clock, utc_now
from ..config import LiquidationConfig
from ..errors import (
    LiquidationAlreadyProcessed,
    LiquidationExecutionFailed,
    LiquidationNotFound,
    LiquidationNotWarranted,
    LoanNotActive,
    LoanNotFound,
    PriceValidationFailed,
)
from ..interfaces.ledger import LedgerClient
from ..ltv import LTVCalculator
from ..models import (
    LiquidationEvent,
    LiquidationProceeds,
    LiquidationStatus,
    LiquidationTrigger,
    LoanData,
    LoanStatus,
    PenaltyCalculation,
    ProceedsDistribution,
    TriggerType,
)
from ..store import InMemoryStore, KeyValueStore
from .aggregation import PriceAggregationService

logger = logging.getLogger(__name__)

ZERO = Decimal(0)
BPS = Decimal(10000)
DAYS_PER_YEAR = Decimal(365)
SECONDS_PER_YEAR = Decimal(365 * 86400)

# Smallest unit of account; amounts are truncated to it before they are split.
MONEY_DECIMALS = 9
MONEY_QUANTUM = Decimal(10) ** -MONEY_DECIMALS


# ---------------------------------------------------------------------------
# Pure calculations
# ---------------------------------------------------------------------------


def to_money(amount: Decimal) -> Decimal:
    """Truncate ``amount`` to ``MONEY_DECIMALS`` places."""
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_DOWN)


def days_overdue(loan: LoanData, now: datetime) -> int:
    if now <= loan.due_date:
        return 0
    return (now - loan.due_date).days


def penalty_interest(loan: LoanData, now: datetime, annual_rate: Decimal) -> Decimal:
    """Penalty on the principal for whole days past the due date."""
    return to_money(
        loan.principal_amount * annual_rate * days_overdue(loan, now) / DAYS_PER_YEAR
    )


def accrued_interest(loan: LoanData, now: datetime) -> Decimal:
    """Simple interest at the loan's annual percentage rate since creation."""
    elapsed = Decimal(str(max(0.0, (now - loan.created_at).total_seconds())))
    return to_money(
        loan.principal_amount * loan.interest_rate / 100 * elapsed / SECONDS_PER_YEAR
    )


def loan_ltv(debt: Decimal, collateral_value: Decimal) -> int:
    """LTV in bp, floored; a non-positive collateral value counts as 100%."""
    if collateral_value <= 0:
        return int(BPS)
    return math.floor(debt * BPS / collateral_value)


def distribute_proceeds(
    liquidation_id: str,
    total_proceeds: Decimal,
    outstanding_debt: Decimal,
    penalty: Decimal,
    fee_rate: Decimal,
    borrower: str,
    liquidator: str,
    pool_recipient: str = "lending_pool",
) -> LiquidationProceeds:
    """Split proceeds debt → penalty → liquidator fee → borrower excess.

    Every amount is truncated to ``MONEY_QUANTUM`` first, which keeps the
    subtractions exact. Each step takes at most what remains, so the four
    amounts always sum to the truncated ``total_proceeds`` and a shortfall
    hits the later claims first.
    """
    if total_proceeds < 0:
        raise ValueError("total_proceeds cannot be negative")

    total_proceeds = to_money(total_proceeds)
    remaining = total_proceeds
    debt_repayment = min(to_money(max(outstanding_debt, ZERO)), remaining)
    remaining -= debt_repayment
    liquidation_penalty = min(to_money(max(penalty, ZERO)), remaining)
    remaining -= liquidation_penalty
    liquidator_fee = min(to_money(max(total_proceeds * fee_rate, ZERO)), remaining)
    remaining -= liquidator_fee
    excess_return = remaining

    return LiquidationProceeds(
        liquidation_id=liquidation_id,
        total_proceeds=total_proceeds,
        debt_repayment=debt_repayment,
        liquidation_penalty=liquidation_penalty,
        liquidator_fee=liquidator_fee,
        excess_return=excess_return,
        distributions=(
            ProceedsDistribution(pool_recipient, debt_repayment, "debt_repayment"),
            ProceedsDistribution(pool_recipient, liquidation_penalty, "liquidation_penalty"),
            ProceedsDistribution(liquidator, liquidator_fee, "liquidator_fee"),
            ProceedsDistribution(borrower, excess_return, "excess_return"),
        ),
    )


@dataclass(frozen=True)
class _Snapshot:
    collateral_value: Decimal
    total_debt: Decimal
    ltv: int
    threshold: int
    days_overdue: int


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class LiquidationManager:
    """Orchestrates liquidations against the ledger."""

    def __init__(
        self,
        ledger: LedgerClient,
        aggregation: PriceAggregationService,
        calculator: LTVCalculator,
        store: KeyValueStore | None = None,
        config: LiquidationConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._ledger = ledger
        self._aggregation = aggregation
        self._calculator = calculator
        self._store = store or InMemoryStore()
        self._config = config or LiquidationConfig()
        self._clock = clock

    # ------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------

    def total_debt(self, loan: LoanData, now: datetime | None = None) -> Decimal:
        """Principal plus accrued and overdue-penalty interest, less repayments."""
        now = now or self._clock()
        debt = (
            loan.principal_amount
            + accrued_interest(loan, now)
            + penalty_interest(loan, now, self._config.penalty_interest_rate)
            - loan.repaid_amount
        )
        return to_money(max(debt, ZERO))

    async def collateral_value(
        self, loan: LoanData, price: Decimal | None = None
    ) -> Decimal:
        if price is None:
            aggregated = await self._aggregation.get_aggregated_price(
                loan.collateral_type.value
            )
            price = Decimal(str(aggregated.price))
        units = Decimal(loan.collateral_amount) / Decimal(10) ** loan.collateral_type.decimals
        return to_money(units * price)

    def _threshold(self, loan: LoanData) -> int:
        if loan.liquidation_threshold is not None:
            return loan.liquidation_threshold
        return self._calculator.get_thresholds(loan.collateral_type).liquidation_threshold

    async def _snapshot(self, loan: LoanData, price: Decimal | None = None) -> _Snapshot:
        now = self._clock()
        value = await self.collateral_value(loan, price)
        debt = self.total_debt(loan, now)
        return _Snapshot(
            collateral_value=value,
            total_debt=debt,
            ltv=loan_ltv(debt, value),
            threshold=self._threshold(loan),
            days_overdue=days_overdue(loan, now),
        )

    @staticmethod
    def _warranted(trigger_type: TriggerType, snapshot: _Snapshot) -> bool:
        breached = snapshot.ltv >= snapshot.threshold
        if trigger_type is TriggerType.PAYMENT_DEFAULT:
            return breached or snapshot.days_overdue > 0
        return breached

    async def _load_active_loan(self, loan_id: str) -> LoanData:
        loan = await self._ledger.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        if loan.status is not LoanStatus.ACTIVE:
            raise LoanNotActive(f"Loan {loan_id} is {loan.status.value}")
        return loan

    # ------------------------------------------------------------------
    # Criteria and initiation
    # ------------------------------------------------------------------

    async def check_liquidation_criteria(self, loan_id: str) -> bool:
        """True when an active loan's current LTV is at or above its threshold."""
        loan = await self._ledger.get_loan(loan_id)
        if loan is None or loan.status is not LoanStatus.ACTIVE:
            return False
        snapshot = await self._snapshot(loan)
        return snapshot.ltv >= snapshot.threshold

    async def initiate_liquidation(
        self,
        loan_id: str,
        liquidator: str,
        trigger_type: TriggerType = TriggerType.LTV_THRESHOLD,
        proposed_price: float | None = None,
    ) -> LiquidationEvent:
        """Re-validate the loan and open a liquidation event.

        An externally supplied ``proposed_price`` is used only after it passes
        the aggregation engine's manipulation gate.
        """
        loan = await self._load_active_loan(loan_id)

        price: Decimal | None = None
        if proposed_price is not None:
            check = await self._aggregation.validate_price(
                loan.collateral_type.value, proposed_price
            )
            if not check.is_valid:
                raise PriceValidationFailed(check.reason or "Proposed price rejected")
            price = Decimal(str(proposed_price))

        snapshot = await self._snapshot(loan, price)
        if not self._warranted(trigger_type, snapshot):
            raise LiquidationNotWarranted(
                f"Loan {loan_id} LTV {snapshot.ltv} bp is below {snapshot.threshold} bp"
            )

        now = self._clock()
        event = LiquidationEvent(
            liquidation_id=f"liq_{uuid.uuid4().hex}",
            loan_id=loan.loan_id,
            borrower=loan.borrower,
            liquidator=liquidator,
            trigger_type=trigger_type,
            collateral_value=snapshot.collateral_value,
            outstanding_debt=snapshot.total_debt,
            ltv_at_trigger=snapshot.ltv,
            penalty=to_money(snapshot.collateral_value * self._config.penalty_rate),
            status=LiquidationStatus.INITIATED,
            initiated_at=now,
        )

        if trigger_type is TriggerType.PAYMENT_DEFAULT and snapshot.ltv < snapshot.threshold:
            threshold_value, current_value = ZERO, Decimal(snapshot.days_overdue)
        else:
            threshold_value, current_value = Decimal(snapshot.threshold), Decimal(snapshot.ltv)
        trigger = LiquidationTrigger(
            trigger_id=f"trg_{uuid.uuid4().hex}",
            loan_id=loan.loan_id,
            liquidation_id=event.liquidation_id,
            trigger_type=trigger_type,
            threshold_value=threshold_value,
            current_value=current_value,
            triggered_at=now,
        )

        await self._store.put(_event_key(event.liquidation_id), event)
        await self._store.put(f"trigger:{trigger.trigger_id}", trigger)
        logger.warning(
            "Liquidation %s initiated for loan %s (%s, LTV %d bp)",
            event.liquidation_id,
            loan_id,
            trigger_type.value,
            snapshot.ltv,
        )
        return event

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_liquidation(
        self, liquidation_id: str, executor: str
    ) -> LiquidationEvent:
        """Run an initiated liquidation exactly once.

        Raises:
            LiquidationNotFound: Unknown ``liquidation_id``.
            LiquidationAlreadyProcessed: The event has left ``Initiated``.
            LiquidationExecutionFailed: Re-validation or the ledger call failed;
                the event is marked ``Failed``.

        Cancellation also leaves the event ``Failed`` before propagating.
        """
        key = _event_key(liquidation_id)
        event = await self._store.get(key)
        if event is None:
            raise LiquidationNotFound(f"Liquidation {liquidation_id} not found")
        if event.status is not LiquidationStatus.INITIATED:
            raise LiquidationAlreadyProcessed(
                f"Liquidation {liquidation_id} is {event.status.value}"
            )

        in_progress = replace(event, status=LiquidationStatus.IN_PROGRESS, executor=executor)
        if not await self._store.compare_and_set(key, event, in_progress):
            raise LiquidationAlreadyProcessed(
                f"Liquidation {liquidation_id} is already being processed"
            )

        try:
            loan = await self._load_active_loan(event.loan_id)
            snapshot = await self._snapshot(loan)
            if not self._warranted(event.trigger_type, snapshot):
                raise LiquidationNotWarranted(
                    f"Loan {loan.loan_id} no longer qualifies (LTV {snapshot.ltv} bp)"
                )

            ack = await self._ledger.liquidate(event.loan_id, executor)
            total = ack.proceeds if ack.proceeds is not None else event.collateral_value
            proceeds = distribute_proceeds(
                liquidation_id,
                total,
                event.outstanding_debt,
                event.penalty,
                self._config.fee_rate,
                borrower=event.borrower,
                liquidator=event.liquidator,
                pool_recipient=self._config.pool_recipient,
            )
        except asyncio.CancelledError:
            await self._mark_failed(key, in_progress, "cancelled during execution")
            raise
        except Exception as e:
            await self._mark_failed(key, in_progress, str(e))
            raise LiquidationExecutionFailed(
                f"Liquidation {liquidation_id} failed: {e}"
            ) from e

        completed = replace(
            in_progress,
            status=LiquidationStatus.COMPLETED,
            proceeds=proceeds,
            completed_at=self._clock(),
            transaction_digest=ack.digest,
        )
        await self._store.put(key, completed)
        await self._store.put(f"proceeds:{liquidation_id}", proceeds)
        logger.info(
            "Liquidation %s completed: proceeds %s (debt %s, penalty %s, fee %s, excess %s)",
            liquidation_id,
            proceeds.total_proceeds,
            proceeds.debt_repayment,
            proceeds.liquidation_penalty,
            proceeds.liquidator_fee,
            proceeds.excess_return,
        )
        return completed

    async def _mark_failed(
        self, key: str, in_progress: LiquidationEvent, reason: str
    ) -> None:
        failed = replace(
            in_progress,
            status=LiquidationStatus.FAILED,
            completed_at=self._clock(),
            failure_reason=reason,
        )
        await self._store.put(key, failed)
        logger.error("Liquidation %s failed: %s", in_progress.liquidation_id, reason)

    # ------------------------------------------------------------------
    # Penalties and audit lookups
    # ------------------------------------------------------------------

    async def calculate_penalty_interest(self, loan_id: str) -> PenaltyCalculation:
        """Penalty interest for an overdue loan; zero when not overdue."""
        loan = await self._ledger.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan {loan_id} not found")

        now = self._clock()
        rate = self._config.penalty_interest_rate
        calculation = PenaltyCalculation(
            loan_id=loan_id,
            principal=loan.principal_amount,
            penalty_rate=rate,
            days_overdue=days_overdue(loan, now),
            penalty_amount=penalty_interest(loan, now, rate),
            calculated_at=now,
        )
        await self._store.put(f"penalty:{loan_id}", calculation)
        return calculation

    async def get_liquidation_event(self, liquidation_id: str) -> LiquidationEvent | None:
        return await self._store.get(_event_key(liquidation_id))

    async def get_liquidation_triggers(self, loan_id: str) -> list[LiquidationTrigger]:
        triggers = await self._store.values("trigger:")
        return sorted(
            (t for t in triggers if t.loan_id == loan_id), key=lambda t: t.triggered_at
        )

    async def get_penalty_calculation(self, loan_id: str) -> PenaltyCalculation | None:
        return await self._store.get(f"penalty:{loan_id}")

    async def get_liquidation_proceeds(
        self, liquidation_id: str
    ) -> LiquidationProceeds | None:
        return await self._store.get(f"proceeds:{liquidation_id}")


def _event_key(liquidation_id: str) -> str:
    return f"liquidation:{liquidation_id}"
