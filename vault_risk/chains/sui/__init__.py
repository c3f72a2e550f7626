"""SUI ledger client."""
from .client import SuiLedgerClient

__all__ = ["SuiLedgerClient"]
