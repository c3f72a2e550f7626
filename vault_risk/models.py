"""Data models: all frozen (immutable).

State changes replace records with ``dataclasses.replace``; readers always
hold a consistent snapshot.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING

from .errors import InvalidThresholds

if TYPE_CHECKING:
    from .assets import CollateralType


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceSource:
    """Configuration of one external price source."""

    id: str
    name: str
    endpoint: str = ""
    weight: int = 10
    is_active: bool = True
    last_update: datetime | None = None
    reliability_score: float = 100.0


@dataclass(frozen=True)
class PriceSample:
    symbol: str
    price: float
    timestamp: datetime
    source: str
    confidence: float


@dataclass(frozen=True)
class AggregatedPrice:
    """Trust-weighted price over the sources that contributed."""

    symbol: str
    price: float
    confidence: float
    deviation: float
    source_count: int
    timestamp: datetime
    sources: tuple[str, ...] = ()


@dataclass(frozen=True)
class AssetConfig:
    symbol: str
    decimals: int
    min_sources: int
    max_deviation: float
    update_frequency_ms: int

    @property
    def update_frequency(self) -> timedelta:
        return timedelta(milliseconds=self.update_frequency_ms)


@dataclass(frozen=True)
class PriceValidationResult:
    is_valid: bool
    price: float
    confidence: float
    deviation: float
    reason: str | None = None


# ---------------------------------------------------------------------------
# History and analytics
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceHistoryEntry:
    symbol: str
    price: float
    timestamp: datetime
    confidence: float
    deviation: float
    sources: tuple[str, ...] = ()

    @classmethod
    def from_aggregated(cls, price: AggregatedPrice) -> PriceHistoryEntry:
        return cls(
            symbol=price.symbol,
            price=price.price,
            timestamp=price.timestamp,
            confidence=price.confidence,
            deviation=price.deviation,
            sources=price.sources,
        )


@dataclass(frozen=True)
class VolatilityMetrics:
    symbol: str
    period: str
    volatility: float
    average_price: float
    min_price: float
    max_price: float
    price_change: float
    data_points: int
    calculated_at: datetime


class TrendDirection(str, Enum):
    BULLISH = "BULLISH"
    BEARISH = "BEARISH"
    SIDEWAYS = "SIDEWAYS"


@dataclass(frozen=True)
class TrendAnalysis:
    symbol: str
    trend: TrendDirection
    strength: float
    support: float
    resistance: float
    momentum: float
    calculated_at: datetime


class AlertType(str, Enum):
    VOLATILITY = "VOLATILITY"
    PRICE_THRESHOLD = "PRICE_THRESHOLD"
    DEVIATION = "DEVIATION"


class AlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass(frozen=True)
class PriceAlert:
    id: str
    symbol: str
    type: AlertType
    severity: AlertSeverity
    message: str
    value: float
    threshold: float
    timestamp: datetime


@dataclass(frozen=True)
class PriceStatistics:
    symbol: str
    current_price: float | None
    change_24h: float
    high_24h: float
    low_24h: float
    volatility_24h: float
    data_points: int


# ---------------------------------------------------------------------------
# LTV / health factor
# ---------------------------------------------------------------------------


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    LIQUIDATION = "liquidation"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.WARNING: 1,
    HealthStatus.CRITICAL: 2,
    HealthStatus.LIQUIDATION: 3,
}


@dataclass(frozen=True)
class LTVThresholds:
    """Per-asset thresholds, all in basis points."""

    max_ltv: int
    warning_threshold: int
    liquidation_threshold: int
    liquidation_bonus: int

    def problems(self) -> list[str]:
        errors: list[str] = []
        for name in (
            "max_ltv",
            "warning_threshold",
            "liquidation_threshold",
            "liquidation_bonus",
        ):
            value = getattr(self, name)
            if value < 0 or value > 10000:
                errors.append(f"{name} must be within 0-10000 bp, got {value}")
        if self.warning_threshold >= self.liquidation_threshold:
            errors.append("warning_threshold must be below liquidation_threshold")
        if self.max_ltv > self.liquidation_threshold:
            errors.append("max_ltv must not exceed liquidation_threshold")
        return errors

    def validate(self) -> None:
        """Raise ``InvalidThresholds`` if the invariants do not hold."""
        errors = self.problems()
        if errors:
            raise InvalidThresholds("; ".join(errors))


@dataclass(frozen=True)
class LTVParams:
    collateral_amount: int
    collateral_price: float
    collateral_decimals: int
    loan_amount: float
    accrued_interest: float = 0.0


@dataclass(frozen=True)
class HealthFactorResult:
    ltv_ratio: int
    health_factor: int
    collateral_value: float
    total_debt: float
    status: HealthStatus
    liquidation_price: float
    buffer_amount: float


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class PriceAlertLevels:
    warning_price: float
    critical_price: float
    liquidation_price: float


@dataclass(frozen=True)
class LTVSimulation:
    current: HealthFactorResult
    simulated: HealthFactorResult
    ltv_change: int
    status_changed: bool


@dataclass(frozen=True)
class InterestImpact:
    current: HealthFactorResult
    projected: HealthFactorResult
    interest_accrued: float
    ltv_increase: int


# ---------------------------------------------------------------------------
# Vaults and alerts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Vault:
    """Local mirror of a ledger vault. The ledger stays authoritative."""

    vault_id: str
    owner: str
    collateral_type: CollateralType
    collateral_balance: int
    borrowed_amount: float
    borrowed_currency: str = "USDC"
    accrued_interest: float = 0.0
    interest_rate_bps: int = 500
    status: HealthStatus | None = None
    ltv_ratio: int = 0
    health_factor: int = 10000
    liquidation_price: float = 0.0
    created_at: datetime | None = None
    last_updated: datetime | None = None


class HealthAlertKind(str, Enum):
    STATUS = "status"
    RECOVERY = "recovery"
    LIQUIDATION_WARNING = "liquidation_warning"


@dataclass(frozen=True)
class HealthAlert:
    vault_id: str
    owner: str
    kind: HealthAlertKind
    status: HealthStatus
    current_ltv: int
    threshold: int
    created_at: datetime
    previous_status: HealthStatus | None = None
    time_to_liquidation: timedelta | None = None
    recommended_actions: tuple[str, ...] = ()


@dataclass(frozen=True)
class MonitoredVault:
    vault: Vault
    health: HealthFactorResult | None
    next_check_due: datetime
    last_checked: datetime | None = None


# ---------------------------------------------------------------------------
# Loans and liquidations (money in Decimal)
# ---------------------------------------------------------------------------


class LoanStatus(str, Enum):
    ACTIVE = "active"
    REPAID = "repaid"
    DEFAULTED = "defaulted"
    LIQUIDATED = "liquidated"


@dataclass(frozen=True)
class LoanData:
    loan_id: str
    borrower: str
    collateral_type: CollateralType
    collateral_amount: int
    principal_amount: Decimal
    interest_rate: Decimal
    created_at: datetime
    due_date: datetime
    status: LoanStatus = LoanStatus.ACTIVE
    repaid_amount: Decimal = Decimal(0)
    liquidation_threshold: int | None = None


class LiquidationStatus(str, Enum):
    INITIATED = "initiated"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TriggerType(str, Enum):
    LTV_THRESHOLD = "ltv_threshold"
    PAYMENT_DEFAULT = "payment_default"
    MANUAL = "manual"


@dataclass(frozen=True)
class ProceedsDistribution:
    recipient: str
    amount: Decimal
    kind: str


@dataclass(frozen=True)
class LiquidationProceeds:
    liquidation_id: str
    total_proceeds: Decimal
    debt_repayment: Decimal
    liquidation_penalty: Decimal
    liquidator_fee: Decimal
    excess_return: Decimal
    distributions: tuple[ProceedsDistribution, ...] = ()


@dataclass(frozen=True)
class LiquidationEvent:
    liquidation_id: str
    loan_id: str
    borrower: str
    liquidator: str
    trigger_type: TriggerType
    collateral_value: Decimal
    outstanding_debt: Decimal
    ltv_at_trigger: int
    penalty: Decimal
    status: LiquidationStatus
    initiated_at: datetime
    executor: str | None = None
    proceeds: LiquidationProceeds | None = None
    completed_at: datetime | None = None
    failure_reason: str | None = None
    transaction_digest: str | None = None


@dataclass(frozen=True)
class LiquidationTrigger:
    trigger_id: str
    loan_id: str
    liquidation_id: str
    trigger_type: TriggerType
    threshold_value: Decimal
    current_value: Decimal
    triggered_at: datetime


@dataclass(frozen=True)
class PenaltyCalculation:
    loan_id: str
    principal: Decimal
    penalty_rate: Decimal
    days_overdue: int
    penalty_amount: Decimal
    calculated_at: datetime


@dataclass(frozen=True)
class LedgerAck:
    """Acknowledgement of a state-changing ledger call."""

    digest: str
    proceeds: Decimal | None = None
    raw: dict = field(default_factory=dict, compare=False)
