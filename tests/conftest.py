"""Shared test fixtures, fakes and sample data."""
from __future__ import annotations

import asyncio
import textwrap
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

from vault_risk.assets import CollateralType
from vault_risk.config import AggregationConfig, MonitorConfig
from vault_risk.errors import LedgerError
from vault_risk.ltv import LTVCalculator
from vault_risk.models import (
    AssetConfig,
    LedgerAck,
    LoanData,
    LoanStatus,
    PriceSource,
    Vault,
)
from vault_risk.services.aggregation import PriceAggregationService
from vault_risk.services.history import PriceHistoryService
from vault_risk.sources.registry import PriceSourceRegistry

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeSource:
    """Price source adapter returning a configurable price."""

    def __init__(
        self,
        source_id: str,
        price: Any = 1.0,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.source_id = source_id
        self.price = price
        self.error = error
        self.delay = delay
        self.calls = 0

    async def fetch_price(self, symbol: str) -> Any:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.price


class FakeLedger:
    """In-memory ledger client."""

    def __init__(self) -> None:
        self.loans: dict[str, LoanData] = {}
        self.vaults: dict[str, Vault] = {}
        self.liquidations: list[tuple[str, str]] = []
        self.transactions: list[tuple[str, list[Any]]] = []
        self.proceeds: Decimal | None = None
        self.fail_liquidation = False

    async def get_loan(self, loan_id: str) -> LoanData | None:
        return self.loans.get(loan_id)

    async def get_vault(self, vault_id: str) -> Vault | None:
        return self.vaults.get(vault_id)

    async def liquidate(self, loan_id: str, executor: str) -> LedgerAck:
        if self.fail_liquidation:
            raise LedgerError("execution reverted")
        self.liquidations.append((loan_id, executor))
        return LedgerAck(digest=f"0xdigest{len(self.liquidations)}", proceeds=self.proceeds)

    async def submit_transaction(self, target: str, arguments: list[Any]) -> LedgerAck:
        self.transactions.append((target, arguments))
        return LedgerAck(digest=f"0xtx{len(self.transactions)}")


def add_sources(
    registry: PriceSourceRegistry, prices: dict[str, Any], weight: int = 10
) -> dict[str, FakeSource]:
    adapters: dict[str, FakeSource] = {}
    for source_id, price in prices.items():
        adapter = FakeSource(source_id, price)
        registry.add(
            PriceSource(id=source_id, name=source_id, weight=weight, reliability_score=90),
            adapter,
        )
        adapters[source_id] = adapter
    return adapters


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def registry() -> PriceSourceRegistry:
    return PriceSourceRegistry()


@pytest.fixture()
def calculator() -> LTVCalculator:
    return LTVCalculator()


@pytest.fixture()
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture()
def aggregation(
    registry: PriceSourceRegistry, clock: FakeClock, ledger: FakeLedger
) -> PriceAggregationService:
    return PriceAggregationService(
        registry,
        {"TEST": AssetConfig("TEST", 8, 2, 5.0, 60_000)},
        AggregationConfig(source_timeout=0.2, aggregation_deadline=0.5),
        ledger=ledger,
        clock=clock,
        package_id="0xpkg",
    )


@pytest.fixture()
def history(clock: FakeClock) -> PriceHistoryService:
    return PriceHistoryService(clock=clock)


@pytest.fixture()
def monitor_config() -> MonitorConfig:
    return MonitorConfig(check_interval_seconds=60, alert_cooldown_seconds=300)


# ---------------------------------------------------------------------------
# Model fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_vault() -> Vault:
    # 10 SUI securing $10 of debt.
    return Vault(
        vault_id="0xVAULT1",
        owner="0xOWNER1",
        collateral_type=CollateralType.SUI,
        collateral_balance=10_000_000_000,
        borrowed_amount=10.0,
    )


@pytest.fixture()
def sample_loan() -> LoanData:
    # 10 SUI securing a $20 principal, interest-free, due in 30 days.
    return LoanData(
        loan_id="0xLOAN1",
        borrower="0xBORROWER",
        collateral_type=CollateralType.SUI,
        collateral_amount=10_000_000_000,
        principal_amount=Decimal("20"),
        interest_rate=Decimal("0"),
        created_at=T0 - timedelta(days=10),
        due_date=T0 + timedelta(days=30),
        status=LoanStatus.ACTIVE,
    )


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    monitor:
      check_interval_seconds: 30
      alert_cooldown_seconds: 120
    aggregation:
      source_timeout: 3
      aggregation_deadline: 6
    sources:
      - id: pyth
        kind: pyth
        weight: 30
        reliability_score: 95
        options:
          feeds: {SUI: "aaa", USDC: "bbb"}
      - id: coingecko
        kind: coingecko
        weight: 25
        reliability_score: 90
    assets:
      SUI:
        min_sources: 2
        thresholds:
          liquidation_threshold: 8200
      BTC:
        decimals: 8
        min_sources: 3
        max_deviation: 4
    liquidation:
      penalty_rate: "0.12"
    chain:
      rpc_endpoints: ["https://rpc.example.com"]
      rpc_timeout: 10
      package_id: "0xpkg"
    vaults: ["0xVAULT1", "0xVAULT2"]
    notifications:
      telegram:
        enabled: true
        alert_bot_token: "tok1"
        chat_id: "999"
      email:
        enabled: false
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file


# ---------------------------------------------------------------------------
# Fake factories exposed as fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_source() -> type[FakeSource]:
    return FakeSource


@pytest.fixture()
def add_price_sources(registry: PriceSourceRegistry):
    def _add(prices: dict[str, Any], weight: int = 10) -> dict[str, FakeSource]:
        return add_sources(registry, prices, weight)

    return _add
