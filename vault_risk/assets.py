"""Closed catalogue of supported collateral types and their defaults."""
from __future__ import annotations

from enum import Enum

from .errors import UnsupportedAsset
from .models import AssetConfig, LTVThresholds

# Global fallback thresholds (bp) for assets without their own entry.
DEFAULT_THRESHOLDS = LTVThresholds(
    max_ltv=8000,
    warning_threshold=7500,
    liquidation_threshold=8500,
    liquidation_bonus=500,
)


class CollateralType(str, Enum):
    SUI = "SUI"
    USDC = "USDC"
    WETH = "WETH"
    WBTC = "WBTC"

    @property
    def decimals(self) -> int:
        return _DECIMALS[self]

    @property
    def thresholds(self) -> LTVThresholds:
        return _THRESHOLDS[self]

    @property
    def asset_config(self) -> AssetConfig:
        return _ASSET_CONFIGS[self]

    @classmethod
    def from_symbol(cls, symbol: str | CollateralType) -> CollateralType:
        """Resolve a symbol (case-insensitive) or raise ``UnsupportedAsset``."""
        if isinstance(symbol, cls):
            return symbol
        try:
            return cls(str(symbol).upper())
        except ValueError:
            raise UnsupportedAsset(str(symbol)) from None


_DECIMALS = {
    CollateralType.SUI: 9,
    CollateralType.USDC: 6,
    CollateralType.WETH: 8,
    CollateralType.WBTC: 8,
}

_THRESHOLDS = {
    CollateralType.SUI: LTVThresholds(7500, 7000, 8000, 500),
    CollateralType.USDC: LTVThresholds(8500, 8000, 9000, 300),
    CollateralType.WETH: LTVThresholds(7500, 7000, 8000, 500),
    CollateralType.WBTC: LTVThresholds(7000, 6500, 7500, 500),
}

_ASSET_CONFIGS = {
    CollateralType.SUI: AssetConfig("SUI", 9, 3, 5.0, 60_000),
    CollateralType.USDC: AssetConfig("USDC", 6, 2, 2.0, 300_000),
    CollateralType.WETH: AssetConfig("WETH", 8, 3, 5.0, 60_000),
    CollateralType.WBTC: AssetConfig("WBTC", 8, 3, 5.0, 60_000),
}


def default_asset_configs() -> dict[str, AssetConfig]:
    return {ct.value: ct.asset_config for ct in CollateralType}
