"""Protocol interfaces for the risk engine's external collaborators."""
from .ledger import LedgerClient
from .notifier import Notifier
from .price_source import PriceSourceAdapter

__all__ = ["LedgerClient", "Notifier", "PriceSourceAdapter"]
