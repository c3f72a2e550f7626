"""Multi-source price aggregation with deviation rejection and a freshness cache."""
from __future__ import annotations

import asyncio
import logging
import math
from datetime import timedelta
from typing import Any, Mapping

from ..assets import default_asset_configs
from ..clock import Clock, utc_now
from ..config import AggregationConfig
from ..errors import (
    ConfigurationError,
    DeviationExceeded,
    EngineError,
    InsufficientSources,
    LedgerError,
    UnsupportedAsset,
)
from ..interfaces.ledger import LedgerClient
from ..models import AggregatedPrice, AssetConfig, PriceSample, PriceSource, PriceValidationResult
from ..sources.registry import PriceSourceRegistry

logger = logging.getLogger(__name__)

# On-chain feeds store prices with 8 implied decimals.
PRICE_FEED_SCALE = 10**8


def compute_confidence(source_count: int, deviation: float) -> float:
    """More sources raise confidence, wider spread lowers it; floor 10."""
    raw = min(source_count * 20, 80) - min(deviation * 4, 20)
    return max(10.0, min(100.0, float(raw)))


def coerce_price(raw: Any) -> float | None:
    """Return a usable positive finite price, or None for garbage input."""
    if isinstance(raw, bool) or raw is None:
        return None
    try:
        price = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(price) or price <= 0:
        return None
    return price


class PriceAggregationService:
    """Aggregates prices from every active source into one trusted price.

    Sources are queried concurrently; each fetch is bounded by
    ``source_timeout`` and the whole round by ``aggregation_deadline``.
    A failing source is logged and excluded. Aggregate failures raise.
    """

    def __init__(
        self,
        registry: PriceSourceRegistry,
        asset_configs: Mapping[str, AssetConfig] | None = None,
        config: AggregationConfig | None = None,
        ledger: LedgerClient | None = None,
        clock: Clock = utc_now,
        package_id: str = "",
    ) -> None:
        self._registry = registry
        self._config = config or AggregationConfig()
        self._ledger = ledger
        self._clock = clock
        self._package_id = package_id

        self._assets: dict[str, AssetConfig] = default_asset_configs()
        for symbol, asset in (asset_configs or {}).items():
            _check_asset_config(asset)
            self._assets[symbol.upper()] = asset

        self._cache: dict[str, AggregatedPrice] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Asset configuration
    # ------------------------------------------------------------------

    def get_asset_config(self, symbol: str) -> AssetConfig:
        asset = self._assets.get(symbol.upper())
        if asset is None:
            raise UnsupportedAsset(symbol)
        return asset

    def register_asset(self, asset: AssetConfig) -> None:
        """Add or replace an asset's aggregation policy."""
        _check_asset_config(asset)
        self._assets = {**self._assets, asset.symbol.upper(): asset}
        self._cache = {k: v for k, v in self._cache.items() if k != asset.symbol.upper()}
        logger.info("Asset config updated for %s", asset.symbol)

    def supported_assets(self) -> tuple[str, ...]:
        return tuple(self._assets)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def cached_price(self, symbol: str) -> AggregatedPrice | None:
        return self._cache.get(symbol.upper())

    def clear_cache(self, symbol: str | None = None) -> None:
        if symbol is None:
            self._cache = {}
        else:
            self._cache = {k: v for k, v in self._cache.items() if k != symbol.upper()}

    def _fresh(self, symbol: str, asset: AssetConfig) -> AggregatedPrice | None:
        cached = self._cache.get(symbol)
        if cached and self._clock() - cached.timestamp <= asset.update_frequency:
            return cached
        return None

    def _store(self, price: AggregatedPrice) -> AggregatedPrice:
        """Last-writer-wins, but a staler write never replaces a fresher entry."""
        existing = self._cache.get(price.symbol)
        if existing and existing.timestamp > price.timestamp:
            logger.debug("Discarding stale price write for %s", price.symbol)
            return existing
        self._cache = {**self._cache, price.symbol: price}
        return price

    def _lock_for(self, symbol: str) -> asyncio.Lock:
        lock = self._locks.get(symbol)
        if lock is None:
            lock = self._locks[symbol] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    async def get_aggregated_price(
        self, symbol: str, force_refresh: bool = False
    ) -> AggregatedPrice:
        """Return the trust-weighted price for ``symbol``.

        Raises:
            UnsupportedAsset: No ``AssetConfig`` is registered for the symbol.
            InsufficientSources: Fewer than ``min_sources`` usable samples.
            DeviationExceeded: Samples disagree by more than ``max_deviation``.
        """
        symbol = symbol.upper()
        asset = self.get_asset_config(symbol)

        if not force_refresh:
            cached = self._fresh(symbol, asset)
            if cached:
                return cached

        async with self._lock_for(symbol):
            # Another caller may have refreshed while we waited.
            if not force_refresh:
                cached = self._fresh(symbol, asset)
                if cached:
                    return cached

            samples = await self._collect_samples(symbol)
            result = self._aggregate(symbol, asset, samples)
            return self._store(result)

    async def _collect_samples(self, symbol: str) -> list[PriceSample]:
        sources = self._registry.active_sources()
        if not sources:
            return []

        tasks = {
            asyncio.create_task(self._fetch_one(source, symbol)): source
            for source in sources
        }
        done, pending = await asyncio.wait(
            tasks, timeout=self._config.aggregation_deadline
        )
        for task in pending:
            task.cancel()
            logger.warning(
                "Price source %s missed aggregation deadline for %s",
                tasks[task].id,
                symbol,
            )
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        return [s for s in (t.result() for t in done) if s is not None]

    async def _fetch_one(self, source: PriceSource, symbol: str) -> PriceSample | None:
        adapter = self._registry.adapter(source.id)
        if adapter is None:
            return None

        try:
            raw = await asyncio.wait_for(
                adapter.fetch_price(symbol), timeout=self._config.source_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Price source %s timed out for %s", source.id, symbol)
            return None
        except Exception as e:
            logger.warning("Price source %s failed for %s: %s", source.id, symbol, e)
            return None

        price = coerce_price(raw)
        if price is None:
            logger.warning(
                "Price source %s returned unusable price for %s: %r",
                source.id,
                symbol,
                raw,
            )
            return None

        now = self._clock()
        self._registry.touch(source.id, now)
        return PriceSample(
            symbol=symbol,
            price=price,
            timestamp=now,
            source=source.id,
            confidence=source.reliability_score,
        )

    def _aggregate(
        self, symbol: str, asset: AssetConfig, samples: list[PriceSample]
    ) -> AggregatedPrice:
        # Source activity is re-read here; a source disabled mid-round drops out.
        weighted: list[tuple[PriceSample, int]] = []
        for sample in samples:
            source = self._registry.get(sample.source)
            if source is not None and source.is_active:
                weighted.append((sample, source.weight))

        if len(weighted) < asset.min_sources:
            raise InsufficientSources(symbol, len(weighted), asset.min_sources)

        total_weight = sum(w for _, w in weighted)
        price = sum(s.price * w for s, w in weighted) / total_weight

        prices = [s.price for s, _ in weighted]
        deviation = (max(prices) - min(prices)) / price * 100

        if deviation > asset.max_deviation:
            logger.warning(
                "Rejecting %s price: deviation %.2f%% > %.2f%%",
                symbol,
                deviation,
                asset.max_deviation,
            )
            raise DeviationExceeded(symbol, deviation, asset.max_deviation)

        result = AggregatedPrice(
            symbol=symbol,
            price=price,
            confidence=compute_confidence(len(weighted), deviation),
            deviation=deviation,
            source_count=len(weighted),
            timestamp=self._clock(),
            sources=tuple(s.source for s, _ in weighted),
        )
        logger.info(
            "Aggregated %s: $%.6f from %d sources (deviation %.2f%%, confidence %.0f)",
            symbol,
            result.price,
            result.source_count,
            result.deviation,
            result.confidence,
        )
        return result

    # ------------------------------------------------------------------
    # Validation gate
    # ------------------------------------------------------------------

    async def validate_price(
        self, symbol: str, proposed_price: float, max_deviation: float | None = None
    ) -> PriceValidationResult:
        """Check an externally supplied price against the aggregated price.

        Fails closed: any aggregation error, a stale or low-confidence
        aggregate, or an unusable proposed price yields ``is_valid=False``.
        """
        allowed = (
            self._config.max_validation_deviation
            if max_deviation is None
            else max_deviation
        )

        try:
            current = await self.get_aggregated_price(symbol)
        except EngineError as e:
            logger.warning("Price validation for %s failed: %s", symbol, e)
            return PriceValidationResult(False, 0.0, 0.0, 0.0, reason=str(e))

        def invalid(reason: str, deviation: float = 0.0) -> PriceValidationResult:
            return PriceValidationResult(
                False, current.price, current.confidence, deviation, reason=reason
            )

        age = self._clock() - current.timestamp
        if age > timedelta(seconds=self._config.max_price_age_seconds):
            return invalid(f"Aggregated price is stale ({age.total_seconds():.0f}s old)")

        if current.confidence < self._config.min_confidence:
            return invalid(
                f"Aggregated price confidence too low: {current.confidence:.0f}"
            )

        proposed = coerce_price(proposed_price)
        if proposed is None:
            return invalid("Proposed price must be a positive finite number")

        deviation = abs(current.price - proposed) / current.price * 100
        if deviation > allowed:
            return invalid(
                f"Price deviation {deviation:.2f}% exceeds maximum {allowed:.2f}%",
                deviation,
            )

        return PriceValidationResult(True, current.price, current.confidence, deviation)

    # ------------------------------------------------------------------
    # On-chain publication
    # ------------------------------------------------------------------

    async def update_on_chain_price_feed(self, symbol: str) -> str:
        """Publish a freshly aggregated price to the on-chain price feed.

        Returns the transaction digest.
        """
        if self._ledger is None:
            raise LedgerError("No ledger client configured for price feed updates")

        price = await self.get_aggregated_price(symbol, force_refresh=True)
        ack = await self._ledger.submit_transaction(
            f"{self._package_id}::price_feed::update_price_feed",
            [
                price.symbol,
                str(math.floor(price.price * PRICE_FEED_SCALE)),
                str(int(price.confidence * 100)),
                str(int(price.timestamp.timestamp() * 1000)),
            ],
        )
        logger.info("Published %s price feed update: %s", price.symbol, ack.digest)
        return ack.digest


def _check_asset_config(asset: AssetConfig) -> None:
    if not 0 <= asset.decimals <= 18:
        raise ConfigurationError(f"Asset '{asset.symbol}' decimals must be within 0-18")
    if asset.min_sources < 1:
        raise ConfigurationError(f"Asset '{asset.symbol}' min_sources must be >= 1")
    if asset.max_deviation <= 0:
        raise ConfigurationError(f"Asset '{asset.symbol}' max_deviation must be > 0")
    if asset.update_frequency_ms <= 0:
        raise ConfigurationError(
            f"Asset '{asset.symbol}' update_frequency_ms must be > 0"
        )
