"""Price source protocol: one external market price feed."""
from typing import Protocol


class PriceSourceAdapter(Protocol):
    """Given an asset symbol, return a USD price or ``None`` when unavailable."""

    source_id: str

    async def fetch_price(self, symbol: str) -> float | None: ...
