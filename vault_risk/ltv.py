"""LTV and health-factor calculator: pure functions over prices and amounts, no I/O.

Ratios in basis points are floored; required-collateral amounts are ceiled
so safety margins never under-estimate the collateral needed.
"""
from __future__ import annotations

import math
from dataclasses import replace
from datetime import timedelta
from types import MappingProxyType
from typing import Mapping

from .assets import DEFAULT_THRESHOLDS, CollateralType
from .models import (
    HealthFactorResult,
    HealthStatus,
    InterestImpact,
    LTVParams,
    LTVSimulation,
    LTVThresholds,
    PriceAlertLevels,
    ValidationResult,
)

BPS = 10000

# Width of the early-warning band below the liquidation threshold.
CRITICAL_BUFFER_BPS = 200

MAX_DECIMALS = 18


def determine_status(ltv_ratio: int, thresholds: LTVThresholds) -> HealthStatus:
    """Classify an LTV ratio (bp) against asset thresholds."""
    if ltv_ratio >= thresholds.liquidation_threshold:
        return HealthStatus.LIQUIDATION
    if ltv_ratio >= thresholds.liquidation_threshold - CRITICAL_BUFFER_BPS:
        return HealthStatus.CRITICAL
    if ltv_ratio >= thresholds.warning_threshold:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def collateral_units(params: LTVParams) -> float:
    return params.collateral_amount / 10**params.collateral_decimals


def collateral_value(params: LTVParams) -> float:
    return collateral_units(params) * params.collateral_price


def total_debt(params: LTVParams) -> float:
    return params.loan_amount + params.accrued_interest


def ltv_ratio(debt: float, value: float) -> int:
    """LTV in bp; a non-positive collateral value counts as 100%."""
    if value <= 0:
        return BPS
    return math.floor(debt * BPS / value)


def health_factor(ltv: int) -> int:
    if ltv <= 0:
        return BPS
    return math.floor(BPS * BPS / ltv)


def price_for_ltv(debt: float, units: float, ltv_bps: int) -> float:
    """Collateral price at which the position reaches ``ltv_bps``."""
    if units <= 0:
        return 0.0
    return debt * ltv_bps / (units * BPS)


class LTVCalculator:
    """Health-factor calculator parameterized by per-asset thresholds.

    Threshold updates replace the whole mapping, so concurrent readers never
    observe a partially applied configuration.
    """

    def __init__(
        self,
        thresholds: Mapping[CollateralType, LTVThresholds] | None = None,
        default_thresholds: LTVThresholds = DEFAULT_THRESHOLDS,
    ) -> None:
        default_thresholds.validate()
        merged = {ct: ct.thresholds for ct in CollateralType}
        for asset, value in (thresholds or {}).items():
            value.validate()
            merged[CollateralType.from_symbol(asset)] = value
        self._thresholds: Mapping[CollateralType, LTVThresholds] = MappingProxyType(merged)
        self._default = default_thresholds

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_thresholds(self, asset: CollateralType | str | None = None) -> LTVThresholds:
        if asset is None:
            return self._default
        return self._thresholds.get(CollateralType.from_symbol(asset), self._default)

    def update_asset_thresholds(
        self, asset: CollateralType | str, thresholds: LTVThresholds
    ) -> None:
        """Replace thresholds for one asset; invalid input is rejected whole."""
        collateral = CollateralType.from_symbol(asset)
        thresholds.validate()
        updated = dict(self._thresholds)
        updated[collateral] = thresholds
        self._thresholds = MappingProxyType(updated)

    def supported_assets(self) -> tuple[CollateralType, ...]:
        return tuple(self._thresholds)

    # ------------------------------------------------------------------
    # Core calculation
    # ------------------------------------------------------------------

    def calculate_health_factor(
        self, params: LTVParams, asset: CollateralType | str | None = None
    ) -> HealthFactorResult:
        thresholds = self.get_thresholds(asset)
        value = collateral_value(params)
        debt = total_debt(params)
        ltv = ltv_ratio(debt, value)
        liquidation = thresholds.liquidation_threshold

        return HealthFactorResult(
            ltv_ratio=ltv,
            health_factor=health_factor(ltv),
            collateral_value=value,
            total_debt=debt,
            status=determine_status(ltv, thresholds),
            liquidation_price=price_for_ltv(debt, collateral_units(params), liquidation),
            buffer_amount=max(0.0, value - debt * BPS / liquidation),
        )

    # ------------------------------------------------------------------
    # Derived calculators
    # ------------------------------------------------------------------

    def max_borrow_amount(
        self, params: LTVParams, asset: CollateralType | str | None = None
    ) -> float:
        """Largest total debt allowed by ``max_ltv`` for this collateral."""
        return collateral_value(params) * self.get_thresholds(asset).max_ltv / BPS

    def additional_borrow_capacity(
        self, params: LTVParams, asset: CollateralType | str | None = None
    ) -> float:
        return max(0.0, self.max_borrow_amount(params, asset) - total_debt(params))

    @staticmethod
    def required_collateral(
        loan_amount: float, price: float, decimals: int, target_ltv: int
    ) -> int:
        """Raw collateral units needed to hold ``loan_amount`` at ``target_ltv`` bp."""
        if price <= 0 or target_ltv <= 0:
            raise ValueError("price and target_ltv must be positive")
        value_needed = loan_amount * BPS / target_ltv
        return math.ceil(value_needed / price * 10**decimals)

    def max_withdrawable(
        self, params: LTVParams, asset: CollateralType | str | None = None
    ) -> int:
        """Raw collateral units that can leave the vault while staying at ``max_ltv``."""
        debt = total_debt(params)
        if debt <= 0:
            return params.collateral_amount
        min_required = self.required_collateral(
            debt,
            params.collateral_price,
            params.collateral_decimals,
            self.get_thresholds(asset).max_ltv,
        )
        return max(0, params.collateral_amount - min_required)

    def price_alert_levels(
        self, params: LTVParams, asset: CollateralType | str | None = None
    ) -> PriceAlertLevels:
        thresholds = self.get_thresholds(asset)
        debt = total_debt(params)
        units = collateral_units(params)
        return PriceAlertLevels(
            warning_price=price_for_ltv(debt, units, thresholds.warning_threshold),
            critical_price=price_for_ltv(
                debt, units, thresholds.liquidation_threshold - CRITICAL_BUFFER_BPS
            ),
            liquidation_price=price_for_ltv(debt, units, thresholds.liquidation_threshold),
        )

    def simulate_ltv_change(
        self,
        params: LTVParams,
        asset: CollateralType | str | None = None,
        *,
        price_change_pct: float = 0.0,
        additional_collateral: int = 0,
        additional_debt: float = 0.0,
        repayment: float = 0.0,
    ) -> LTVSimulation:
        """Recompute health under a hypothetical scenario."""
        current = self.calculate_health_factor(params, asset)
        scenario = replace(
            params,
            collateral_amount=params.collateral_amount + additional_collateral,
            collateral_price=params.collateral_price * (1 + price_change_pct / 100),
            loan_amount=max(0.0, params.loan_amount + additional_debt - repayment),
        )
        simulated = self.calculate_health_factor(scenario, asset)
        return LTVSimulation(
            current=current,
            simulated=simulated,
            ltv_change=simulated.ltv_ratio - current.ltv_ratio,
            status_changed=simulated.status != current.status,
        )

    def interest_impact(
        self,
        params: LTVParams,
        annual_rate_bps: int,
        elapsed: timedelta,
        asset: CollateralType | str | None = None,
    ) -> InterestImpact:
        """Project LTV after simple interest accrues on the principal for ``elapsed``."""
        days = elapsed.total_seconds() / 86400
        accrued = params.loan_amount * annual_rate_bps / BPS * days / 365
        current = self.calculate_health_factor(params, asset)
        projected = self.calculate_health_factor(
            replace(params, accrued_interest=params.accrued_interest + accrued), asset
        )
        return InterestImpact(
            current=current,
            projected=projected,
            interest_accrued=accrued,
            ltv_increase=projected.ltv_ratio - current.ltv_ratio,
        )

    def validate_params(
        self, params: LTVParams, asset: CollateralType | str | None = None
    ) -> ValidationResult:
        """Check inputs and the resulting LTV, listing every violated constraint."""
        errors: list[str] = []
        if params.collateral_amount < 0:
            errors.append("Collateral amount cannot be negative")
        if params.loan_amount < 0:
            errors.append("Loan amount cannot be negative")
        if not params.collateral_price > 0:
            errors.append("Collateral price must be positive")
        if not 0 <= params.collateral_decimals <= MAX_DECIMALS:
            errors.append(f"Collateral decimals must be within 0-{MAX_DECIMALS}")
        if params.accrued_interest < 0:
            errors.append("Accrued interest cannot be negative")

        if not errors:
            max_ltv = self.get_thresholds(asset).max_ltv
            ltv = self.calculate_health_factor(params, asset).ltv_ratio
            if ltv > max_ltv:
                errors.append(f"LTV {ltv} bp exceeds maximum {max_ltv} bp")

        return ValidationResult(is_valid=not errors, errors=tuple(errors))
