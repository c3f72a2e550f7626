"""Price source adapters and the source registry."""
from .coingecko import CoinGeckoSource
from .pyth import PythSource
from .registry import PriceSourceRegistry, build_adapter, build_registry

__all__ = [
    "CoinGeckoSource",
    "PythSource",
    "PriceSourceRegistry",
    "build_adapter",
    "build_registry",
]
