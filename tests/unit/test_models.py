"""Unit tests for data models, the collateral catalogue and the error taxonomy."""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from vault_risk.assets import DEFAULT_THRESHOLDS, CollateralType, default_asset_configs
from vault_risk.errors import (
    ConfigurationError,
    DataQualityError,
    DeviationExceeded,
    EngineError,
    InsufficientSources,
    InvalidThresholds,
    LedgerError,
    LiquidationAlreadyProcessed,
    StateError,
    UnsupportedAsset,
)
from vault_risk.models import (
    AggregatedPrice,
    AssetConfig,
    HealthStatus,
    LedgerAck,
    LTVThresholds,
    PriceHistoryEntry,
)


class TestLTVThresholds:
    def test_valid(self) -> None:
        LTVThresholds(7500, 7000, 8000, 500).validate()

    @pytest.mark.parametrize(
        "thresholds, message",
        [
            (LTVThresholds(7500, 8000, 8000, 500), "warning_threshold must be below"),
            (LTVThresholds(8500, 7000, 8000, 500), "max_ltv must not exceed"),
            (LTVThresholds(7500, 7000, 10001, 500), "within 0-10000"),
            (LTVThresholds(7500, 7000, 8000, -1), "liquidation_bonus"),
        ],
    )
    def test_invalid(self, thresholds: LTVThresholds, message: str) -> None:
        with pytest.raises(InvalidThresholds, match=message):
            thresholds.validate()

    def test_problems_lists_everything(self) -> None:
        assert len(LTVThresholds(9000, 9000, 8000, 500).problems()) == 2

    def test_frozen(self) -> None:
        with pytest.raises(AttributeError):
            DEFAULT_THRESHOLDS.max_ltv = 1  # type: ignore[misc]


class TestHealthStatus:
    def test_rank_order(self) -> None:
        ranks = [s.rank for s in (
            HealthStatus.HEALTHY,
            HealthStatus.WARNING,
            HealthStatus.CRITICAL,
            HealthStatus.LIQUIDATION,
        )]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 4

    def test_string_value(self) -> None:
        assert HealthStatus.CRITICAL == "critical"


class TestPriceModels:
    def test_update_frequency(self) -> None:
        assert AssetConfig("SUI", 9, 3, 5.0, 60_000).update_frequency == timedelta(minutes=1)

    def test_history_entry_from_aggregated(self) -> None:
        ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
        price = AggregatedPrice("SUI", 3.5, 80.0, 1.2, 4, ts, ("a", "b"))
        entry = PriceHistoryEntry.from_aggregated(price)
        assert (entry.symbol, entry.price, entry.timestamp, entry.sources) == ("SUI", 3.5, ts, ("a", "b"))

    def test_ledger_ack_equality_ignores_raw(self) -> None:
        assert LedgerAck("0xD", Decimal("1"), {"a": 1}) == LedgerAck("0xD", Decimal("1"))


class TestCollateralType:
    @pytest.mark.parametrize("symbol", ["SUI", "sui", "Sui", CollateralType.SUI])
    def test_from_symbol(self, symbol) -> None:
        assert CollateralType.from_symbol(symbol) is CollateralType.SUI

    def test_unknown(self) -> None:
        with pytest.raises(UnsupportedAsset, match="DOGE"):
            CollateralType.from_symbol("DOGE")

    def test_catalogue(self) -> None:
        assert CollateralType.SUI.decimals == 9
        assert CollateralType.USDC.decimals == 6
        assert CollateralType.SUI.thresholds == LTVThresholds(7500, 7000, 8000, 500)
        assert CollateralType.WBTC.thresholds.liquidation_threshold == 7500
        assert CollateralType.USDC.asset_config.max_deviation == 2.0

    def test_every_catalogue_entry_is_valid(self) -> None:
        for collateral in CollateralType:
            collateral.thresholds.validate()
        DEFAULT_THRESHOLDS.validate()

    def test_default_asset_configs(self) -> None:
        configs = default_asset_configs()
        assert set(configs) == {"SUI", "USDC", "WETH", "WBTC"}
        assert configs["SUI"].min_sources == 3


class TestErrors:
    def test_codes(self) -> None:
        assert UnsupportedAsset("X").code == "UNSUPPORTED_ASSET"
        assert InsufficientSources("SUI", 1, 3).code == "INSUFFICIENT_SOURCES"
        assert LedgerError("boom").code == "LEDGER_ERROR"

    def test_hierarchy(self) -> None:
        assert issubclass(UnsupportedAsset, ConfigurationError)
        assert issubclass(ConfigurationError, ValueError)
        assert issubclass(DeviationExceeded, DataQualityError)
        assert issubclass(LiquidationAlreadyProcessed, StateError)
        assert issubclass(StateError, EngineError)

    def test_message_defaults_to_code(self) -> None:
        assert str(InvalidThresholds()) == "INVALID_THRESHOLDS"

    def test_structured_fields(self) -> None:
        err = DeviationExceeded("SUI", 7.5, 5.0)
        assert (err.symbol, err.deviation, err.max_deviation) == ("SUI", 7.5, 5.0)
        assert "7.50%" in err.message

    def test_replace_keeps_frozen_semantics(self) -> None:
        updated = replace(DEFAULT_THRESHOLDS, max_ltv=7000)
        assert DEFAULT_THRESHOLDS.max_ltv == 8000
        assert updated.max_ltv == 7000
