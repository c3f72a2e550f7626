"""Collateral risk and liquidation engine for crypto-collateralized vaults."""

__version__ = "0.1.0"
