"""Typed error hierarchy for the risk engine.

Every error carries a stable ``code`` so host services can map failures to
responses without string matching on messages.
"""
from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "ENGINE_ERROR"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


# ---------------------------------------------------------------------------
# Configuration errors: caller's fault, never retried
# ---------------------------------------------------------------------------


class ConfigurationError(EngineError, ValueError):
    code = "CONFIGURATION_ERROR"


class UnsupportedAsset(ConfigurationError):
    code = "UNSUPPORTED_ASSET"

    def __init__(self, symbol: str) -> None:
        super().__init__(f"Unsupported asset: {symbol}")
        self.symbol = symbol


class InvalidThresholds(ConfigurationError):
    code = "INVALID_THRESHOLDS"


# ---------------------------------------------------------------------------
# Data quality errors: transient, never replaced with a guessed price
# ---------------------------------------------------------------------------


class DataQualityError(EngineError):
    code = "DATA_QUALITY_ERROR"


class InsufficientSources(DataQualityError):
    code = "INSUFFICIENT_SOURCES"

    def __init__(self, symbol: str, got: int, required: int) -> None:
        super().__init__(
            f"Insufficient price sources for {symbol}: got {got}, need {required}"
        )
        self.symbol = symbol
        self.got = got
        self.required = required


class DeviationExceeded(DataQualityError):
    code = "DEVIATION_EXCEEDED"

    def __init__(self, symbol: str, deviation: float, max_deviation: float) -> None:
        super().__init__(
            f"Price deviation for {symbol} too high: "
            f"{deviation:.2f}% > {max_deviation:.2f}%"
        )
        self.symbol = symbol
        self.deviation = deviation
        self.max_deviation = max_deviation


class PriceValidationFailed(DataQualityError):
    code = "PRICE_VALIDATION_FAILED"


# ---------------------------------------------------------------------------
# State errors: invalid calls or double submissions
# ---------------------------------------------------------------------------


class StateError(EngineError):
    code = "STATE_ERROR"


class LoanNotFound(StateError):
    code = "LOAN_NOT_FOUND"


class LoanNotActive(StateError):
    code = "LOAN_NOT_ACTIVE"


class LiquidationNotWarranted(StateError):
    code = "LIQUIDATION_NOT_WARRANTED"


class LiquidationNotFound(StateError):
    code = "LIQUIDATION_NOT_FOUND"


class LiquidationAlreadyProcessed(StateError):
    code = "LIQUIDATION_ALREADY_PROCESSED"


class VaultNotTracked(StateError):
    code = "VAULT_NOT_TRACKED"


# ---------------------------------------------------------------------------
# Execution errors: terminal for the attempt
# ---------------------------------------------------------------------------


class ExecutionError(EngineError):
    code = "EXECUTION_ERROR"


class LiquidationExecutionFailed(ExecutionError):
    code = "LIQUIDATION_EXECUTION_FAILED"


class LedgerError(ExecutionError):
    code = "LEDGER_ERROR"
