"""Per-asset price history with volatility, trend and alert analytics."""
from __future__ import annotations

import logging
import statistics
import uuid
from datetime import datetime, timedelta

from ..clock import Clock, utc_now
from ..models import (
    AggregatedPrice,
    AlertSeverity,
    AlertType,
    PriceAlert,
    PriceHistoryEntry,
    PriceStatistics,
    TrendAnalysis,
    TrendDirection,
    VolatilityMetrics,
)

logger = logging.getLogger(__name__)

MAX_HISTORY_ENTRIES = 10_000
MAX_ALERTS_PER_SYMBOL = 100
VOLATILITY_CACHE_TTL = timedelta(minutes=5)

HIGH_VOLATILITY = 15.0
CRITICAL_VOLATILITY = 25.0
HIGH_DEVIATION = 10.0
CRITICAL_DEVIATION = 20.0

TREND_MIN_POINTS = 10
TREND_BAND_PCT = 2.0


class PriceHistoryService:
    """Records aggregated prices newest-first and derives analytics from them.

    Each symbol's history is an immutable tuple replaced on every write, so
    readers always see a consistent snapshot.
    """

    def __init__(
        self, max_entries: int = MAX_HISTORY_ENTRIES, clock: Clock = utc_now
    ) -> None:
        self._max_entries = max_entries
        self._clock = clock
        self._history: dict[str, tuple[PriceHistoryEntry, ...]] = {}
        self._alerts: dict[str, tuple[PriceAlert, ...]] = {}
        self._volatility_cache: dict[tuple[str, int], VolatilityMetrics] = {}
        self._thresholds: dict[str, tuple[float | None, float | None]] = {}

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_price(self, price: AggregatedPrice) -> list[PriceAlert]:
        """Append a price point and return any alerts it raised."""
        symbol = price.symbol.upper()
        entry = PriceHistoryEntry.from_aggregated(price)
        history = self._history.get(symbol, ())

        if any(e.timestamp == entry.timestamp for e in history):
            logger.debug("Duplicate %s price at %s ignored", symbol, entry.timestamp)
            return []

        merged = sorted((entry, *history), key=lambda e: e.timestamp, reverse=True)
        self._history = {**self._history, symbol: tuple(merged[: self._max_entries])}
        self._invalidate(symbol)

        alerts = self._evaluate_alerts(symbol, entry)
        if alerts:
            kept = (*self._alerts.get(symbol, ()), *alerts)[-MAX_ALERTS_PER_SYMBOL:]
            self._alerts = {**self._alerts, symbol: tuple(kept)}
        return alerts

    def _invalidate(self, symbol: str) -> None:
        self._volatility_cache = {
            k: v for k, v in self._volatility_cache.items() if k[0] != symbol
        }

    def get_price_history(
        self,
        symbol: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> tuple[PriceHistoryEntry, ...]:
        entries = [
            e
            for e in self._history.get(symbol.upper(), ())
            if (start is None or e.timestamp >= start)
            and (end is None or e.timestamp <= end)
        ]
        return tuple(entries[:limit] if limit is not None else entries)

    def _window(self, symbol: str, period_hours: float) -> tuple[PriceHistoryEntry, ...]:
        return self.get_price_history(
            symbol, start=self._clock() - timedelta(hours=period_hours)
        )

    # ------------------------------------------------------------------
    # Volatility
    # ------------------------------------------------------------------

    def calculate_volatility(
        self, symbol: str, period_hours: int = 24
    ) -> VolatilityMetrics:
        """Coefficient of variation (stddev / mean * 100) over the window.

        Fewer than two points yield zeroed metrics rather than an error.
        """
        symbol = symbol.upper()
        now = self._clock()
        cached = self._volatility_cache.get((symbol, period_hours))
        if cached and now - cached.calculated_at < VOLATILITY_CACHE_TTL:
            return cached

        entries = self._window(symbol, period_hours)
        if len(entries) < 2:
            return VolatilityMetrics(
                symbol=symbol,
                period=f"{period_hours}h",
                volatility=0.0,
                average_price=entries[0].price if entries else 0.0,
                min_price=entries[0].price if entries else 0.0,
                max_price=entries[0].price if entries else 0.0,
                price_change=0.0,
                data_points=len(entries),
                calculated_at=now,
            )

        prices = [e.price for e in entries]
        mean = statistics.fmean(prices)
        newest, oldest = prices[0], prices[-1]
        metrics = VolatilityMetrics(
            symbol=symbol,
            period=f"{period_hours}h",
            volatility=statistics.pstdev(prices) / mean * 100 if mean else 0.0,
            average_price=mean,
            min_price=min(prices),
            max_price=max(prices),
            price_change=(newest - oldest) / oldest * 100 if oldest else 0.0,
            data_points=len(prices),
            calculated_at=now,
        )
        self._volatility_cache = {**self._volatility_cache, (symbol, period_hours): metrics}
        return metrics

    def get_volatility_report(self, symbol: str) -> dict[str, VolatilityMetrics]:
        return {
            "1h": self.calculate_volatility(symbol, 1),
            "24h": self.calculate_volatility(symbol, 24),
            "7d": self.calculate_volatility(symbol, 168),
        }

    def is_high_volatility(self, symbol: str, period_hours: int = 24) -> bool:
        return self.calculate_volatility(symbol, period_hours).volatility > HIGH_VOLATILITY

    # ------------------------------------------------------------------
    # Trend
    # ------------------------------------------------------------------

    def analyze_trend(self, symbol: str, period_hours: int = 24) -> TrendAnalysis:
        """Moving-average crossover (last 5 vs last 10 points)."""
        symbol = symbol.upper()
        now = self._clock()
        entries = self._window(symbol, period_hours)

        if len(entries) < TREND_MIN_POINTS:
            last = entries[0].price if entries else 0.0
            return TrendAnalysis(symbol, TrendDirection.SIDEWAYS, 0.0, last, last, 0.0, now)

        prices = [e.price for e in entries]
        short_ma = statistics.fmean(prices[:5])
        long_ma = statistics.fmean(prices[:10])
        gap_pct = (short_ma - long_ma) / long_ma * 100

        if gap_pct > TREND_BAND_PCT:
            trend = TrendDirection.BULLISH
        elif gap_pct < -TREND_BAND_PCT:
            trend = TrendDirection.BEARISH
        else:
            trend = TrendDirection.SIDEWAYS

        recent = prices[:20]
        momentum_base = prices[4]
        return TrendAnalysis(
            symbol=symbol,
            trend=trend,
            strength=min(abs(gap_pct) * 10, 100.0),
            support=min(recent),
            resistance=max(recent),
            momentum=(prices[0] - momentum_base) / momentum_base * 100,
            calculated_at=now,
        )

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def set_price_threshold(
        self, symbol: str, below: float | None = None, above: float | None = None
    ) -> None:
        """Raise PRICE_THRESHOLD alerts when a recorded price crosses these bounds."""
        symbol = symbol.upper()
        if below is None and above is None:
            self._thresholds = {k: v for k, v in self._thresholds.items() if k != symbol}
        else:
            self._thresholds = {**self._thresholds, symbol: (below, above)}

    def _evaluate_alerts(self, symbol: str, entry: PriceHistoryEntry) -> list[PriceAlert]:
        alerts: list[PriceAlert] = []

        volatility = self.calculate_volatility(symbol, 1).volatility
        if volatility > CRITICAL_VOLATILITY:
            alerts.append(self._alert(
                symbol, AlertType.VOLATILITY, AlertSeverity.CRITICAL,
                f"Critical volatility for {symbol}: {volatility:.2f}% (1h)",
                volatility, CRITICAL_VOLATILITY,
            ))
        elif volatility > HIGH_VOLATILITY:
            alerts.append(self._alert(
                symbol, AlertType.VOLATILITY, AlertSeverity.HIGH,
                f"High volatility for {symbol}: {volatility:.2f}% (1h)",
                volatility, HIGH_VOLATILITY,
            ))

        if entry.deviation > HIGH_DEVIATION:
            severity = (
                AlertSeverity.CRITICAL
                if entry.deviation > CRITICAL_DEVIATION
                else AlertSeverity.HIGH
            )
            alerts.append(self._alert(
                symbol, AlertType.DEVIATION, severity,
                f"High price deviation across sources for {symbol}: {entry.deviation:.2f}%",
                entry.deviation, HIGH_DEVIATION,
            ))

        below, above = self._thresholds.get(symbol, (None, None))
        if below is not None and entry.price < below:
            alerts.append(self._alert(
                symbol, AlertType.PRICE_THRESHOLD, AlertSeverity.MEDIUM,
                f"{symbol} fell below ${below:,.4f}: ${entry.price:,.4f}",
                entry.price, below,
            ))
        if above is not None and entry.price > above:
            alerts.append(self._alert(
                symbol, AlertType.PRICE_THRESHOLD, AlertSeverity.MEDIUM,
                f"{symbol} rose above ${above:,.4f}: ${entry.price:,.4f}",
                entry.price, above,
            ))

        for alert in alerts:
            logger.warning("Price alert [%s] %s", alert.severity.value, alert.message)
        return alerts

    def _alert(
        self,
        symbol: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        value: float,
        threshold: float,
    ) -> PriceAlert:
        return PriceAlert(
            id=uuid.uuid4().hex,
            symbol=symbol,
            type=alert_type,
            severity=severity,
            message=message,
            value=value,
            threshold=threshold,
            timestamp=self._clock(),
        )

    def get_active_alerts(self, symbol: str | None = None) -> tuple[PriceAlert, ...]:
        if symbol is not None:
            return self._alerts.get(symbol.upper(), ())
        merged = [a for alerts in self._alerts.values() for a in alerts]
        return tuple(sorted(merged, key=lambda a: a.timestamp, reverse=True))

    def clear_alerts(self, symbol: str) -> None:
        self._alerts = {k: v for k, v in self._alerts.items() if k != symbol.upper()}

    # ------------------------------------------------------------------
    # Reporting and retention
    # ------------------------------------------------------------------

    def get_price_statistics(self, symbol: str) -> PriceStatistics:
        symbol = symbol.upper()
        history = self._history.get(symbol, ())
        day = self._window(symbol, 24)
        prices = [e.price for e in day]
        change = 0.0
        if len(prices) >= 2 and prices[-1]:
            change = (prices[0] - prices[-1]) / prices[-1] * 100
        return PriceStatistics(
            symbol=symbol,
            current_price=history[0].price if history else None,
            change_24h=change,
            high_24h=max(prices) if prices else 0.0,
            low_24h=min(prices) if prices else 0.0,
            volatility_24h=self.calculate_volatility(symbol, 24).volatility,
            data_points=len(history),
        )

    def cleanup_old_history(self, max_age_hours: int = 720) -> int:
        """Drop entries older than ``max_age_hours``; returns how many were removed."""
        cutoff = self._clock() - timedelta(hours=max_age_hours)
        removed = 0
        pruned: dict[str, tuple[PriceHistoryEntry, ...]] = {}
        for symbol, entries in self._history.items():
            kept = tuple(e for e in entries if e.timestamp >= cutoff)
            removed += len(entries) - len(kept)
            if kept:
                pruned[symbol] = kept
        self._history = pruned
        self._volatility_cache = {}
        if removed:
            logger.info("Pruned %d price history entries older than %dh", removed, max_age_hours)
        return removed
