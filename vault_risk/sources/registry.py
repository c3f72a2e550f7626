"""Registry of price sources and their adapters."""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any

from ..config import SourceConfig
from ..errors import ConfigurationError
from ..interfaces.price_source import PriceSourceAdapter
from ..models import PriceSource
from .coingecko import CoinGeckoSource
from .pyth import PythSource

logger = logging.getLogger(__name__)

# Registry of adapter factories keyed by source kind.
_SOURCE_FACTORIES: dict[str, Any] = {
    "pyth": lambda cfg, timeout: PythSource(cfg, timeout),
    "coingecko": lambda cfg, timeout: CoinGeckoSource(cfg, timeout),
}


class PriceSourceRegistry:
    """Holds source configuration and the adapter that reaches each source.

    Records are replaced on update; callers get snapshots.
    """

    def __init__(self) -> None:
        self._sources: dict[str, PriceSource] = {}
        self._adapters: dict[str, PriceSourceAdapter] = {}

    def add(self, source: PriceSource, adapter: PriceSourceAdapter) -> None:
        if not 1 <= source.weight <= 100:
            raise ConfigurationError(f"Source '{source.id}' weight must be within 1-100")
        if not 0 <= source.reliability_score <= 100:
            raise ConfigurationError(
                f"Source '{source.id}' reliability_score must be within 0-100"
            )
        self._sources = {**self._sources, source.id: source}
        self._adapters = {**self._adapters, source.id: adapter}
        logger.info("Registered price source %s (weight %d)", source.id, source.weight)

    def remove(self, source_id: str) -> bool:
        if source_id not in self._sources:
            return False
        self._sources = {k: v for k, v in self._sources.items() if k != source_id}
        self._adapters = {k: v for k, v in self._adapters.items() if k != source_id}
        logger.info("Removed price source %s", source_id)
        return True

    def get(self, source_id: str) -> PriceSource | None:
        return self._sources.get(source_id)

    def adapter(self, source_id: str) -> PriceSourceAdapter | None:
        return self._adapters.get(source_id)

    def all_sources(self) -> tuple[PriceSource, ...]:
        return tuple(self._sources.values())

    def active_sources(self) -> tuple[PriceSource, ...]:
        return tuple(s for s in self._sources.values() if s.is_active)

    def is_active(self, source_id: str) -> bool:
        source = self._sources.get(source_id)
        return source is not None and source.is_active

    def set_active(self, source_id: str, active: bool) -> None:
        source = self._sources.get(source_id)
        if source is None:
            raise ConfigurationError(f"Unknown price source '{source_id}'")
        self._sources = {**self._sources, source_id: replace(source, is_active=active)}

    def touch(self, source_id: str, when: datetime) -> None:
        """Record a successful fetch; the only field aggregation updates."""
        source = self._sources.get(source_id)
        if source is not None:
            self._sources = {
                **self._sources, source_id: replace(source, last_update=when)
            }


def build_adapter(config: SourceConfig, timeout: float = 10.0) -> PriceSourceAdapter | None:
    """Create the adapter for a source kind, or None for an unknown kind."""
    factory = _SOURCE_FACTORIES.get(config.kind)
    if not factory:
        logger.warning("No adapter factory for source kind '%s'", config.kind)
        return None
    return factory(config, timeout)


def build_registry(
    configs: tuple[SourceConfig, ...], timeout: float = 10.0
) -> PriceSourceRegistry:
    """Build a registry from configuration, skipping unknown adapter kinds."""
    registry = PriceSourceRegistry()
    for cfg in configs:
        adapter = build_adapter(cfg, timeout)
        if adapter is None:
            continue
        registry.add(
            PriceSource(
                id=cfg.id,
                name=cfg.name,
                endpoint=cfg.endpoint,
                weight=cfg.weight,
                is_active=cfg.is_active,
                reliability_score=cfg.reliability_score,
            ),
            adapter,
        )
    return registry
