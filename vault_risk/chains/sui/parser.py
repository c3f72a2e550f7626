"""Pure parsing functions for SUI loan and vault objects, no I/O."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from ...assets import CollateralType
from ...models import LoanData, LoanStatus, Vault

# Debt is denominated in USDC base units.
DEBT_DECIMALS = 6

_LOAN_STATUS = {
    0: LoanStatus.ACTIVE,
    1: LoanStatus.REPAID,
    2: LoanStatus.DEFAULTED,
    3: LoanStatus.LIQUIDATED,
}


def get_token_symbol(coin_type: str) -> str:
    """Extract token symbol from a SUI coin type string.

    Examples:
        "0x2::sui::SUI" → "SUI"
        "0xabc::coin::USDC" → "USDC"
    """
    if "::" in coin_type:
        return coin_type.split("::")[-1].upper()
    return coin_type.upper()


def raw_to_decimal(raw: Any, decimals: int = DEBT_DECIMALS) -> Decimal:
    """Convert an integer base-unit amount to a Decimal."""
    return Decimal(int(raw or 0)) / Decimal(10) ** decimals


def ms_to_datetime(raw: Any) -> datetime:
    return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)


def object_fields(data: dict[str, Any]) -> dict[str, Any]:
    """Return the Move struct fields of a ``sui_getObject`` data payload."""
    return data.get("content", {}).get("fields", {})


def _coin_symbol(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("fields", {}).get("name", "")
    return get_token_symbol(str(value))


def parse_loan(data: dict[str, Any]) -> LoanData | None:
    """Parse a loan object; returns None when the payload has no fields."""
    fields = object_fields(data)
    if not fields:
        return None

    threshold = fields.get("liquidation_threshold_bps")
    return LoanData(
        loan_id=data.get("objectId", fields.get("id", {}).get("id", "")),
        borrower=fields.get("borrower", ""),
        collateral_type=CollateralType.from_symbol(_coin_symbol(fields.get("collateral_type", ""))),
        collateral_amount=int(fields.get("collateral_amount", 0)),
        principal_amount=raw_to_decimal(fields.get("principal_amount")),
        interest_rate=Decimal(int(fields.get("interest_rate_bps", 0))) / 100,
        created_at=ms_to_datetime(fields.get("created_at_ms", 0)),
        due_date=ms_to_datetime(fields.get("due_date_ms", 0)),
        status=_LOAN_STATUS.get(int(fields.get("status", 0)), LoanStatus.DEFAULTED),
        repaid_amount=raw_to_decimal(fields.get("repaid_amount")),
        liquidation_threshold=int(threshold) if threshold is not None else None,
    )


def parse_vault(data: dict[str, Any]) -> Vault | None:
    """Parse a vault object; returns None when the payload has no fields."""
    fields = object_fields(data)
    if not fields:
        return None

    created = fields.get("created_at_ms")
    updated = fields.get("last_updated_ms")
    return Vault(
        vault_id=data.get("objectId", ""),
        owner=fields.get("owner", ""),
        collateral_type=CollateralType.from_symbol(_coin_symbol(fields.get("collateral_type", ""))),
        collateral_balance=int(fields.get("collateral_balance", 0)),
        borrowed_amount=float(raw_to_decimal(fields.get("borrowed_amount"))),
        borrowed_currency=_coin_symbol(fields.get("borrowed_currency", "USDC")),
        accrued_interest=float(raw_to_decimal(fields.get("accrued_interest"))),
        interest_rate_bps=int(fields.get("interest_rate_bps", 500)),
        created_at=ms_to_datetime(created) if created else None,
        last_updated=ms_to_datetime(updated) if updated else None,
    )


def parse_liquidation_proceeds(events: list[dict[str, Any]]) -> Decimal | None:
    """Find the sale proceeds reported by a ``LiquidationExecuted`` event."""
    for event in events:
        if str(event.get("type", "")).endswith("::LiquidationExecuted"):
            proceeds = event.get("parsedJson", {}).get("proceeds")
            if proceeds is not None:
                return raw_to_decimal(proceeds)
    return None
