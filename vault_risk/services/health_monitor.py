"""Vault health monitoring: periodic sweeps, status transitions and alerting."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterable

from ..clock import Clock, utc_now
from ..config import MonitorConfig
from ..errors import VaultNotTracked
from ..interfaces.ledger import LedgerClient
from ..interfaces.notifier import Notifier
from ..ltv import CRITICAL_BUFFER_BPS, LTVCalculator
from ..models import (
    AggregatedPrice,
    HealthAlert,
    HealthAlertKind,
    HealthFactorResult,
    HealthStatus,
    LTVParams,
    LTVThresholds,
    MonitoredVault,
    PriceAlert,
    Vault,
)
from .aggregation import PriceAggregationService
from .history import PriceHistoryService

logger = logging.getLogger(__name__)

MAX_ALERTS_PER_VAULT = 100

# Upper bound keeps the estimate representable as a timedelta.
_MAX_ESTIMATE_DAYS = 36_500

_RECOMMENDED_ACTIONS: dict[HealthStatus, tuple[str, ...]] = {
    HealthStatus.LIQUIDATION: (
        "Add collateral immediately to avoid liquidation",
        "Repay part of the loan to reduce LTV",
        "Vault is eligible for liquidation",
    ),
    HealthStatus.CRITICAL: (
        "Add collateral to improve the health factor",
        "Consider a partial repayment",
        "Monitor collateral price closely",
    ),
    HealthStatus.WARNING: (
        "Consider adding collateral",
        "Monitor vault health regularly",
    ),
    HealthStatus.HEALTHY: (),
}


def threshold_for_status(status: HealthStatus, thresholds: LTVThresholds) -> int:
    """LTV (bp) at which ``status`` begins."""
    if status is HealthStatus.LIQUIDATION:
        return thresholds.liquidation_threshold
    if status is HealthStatus.CRITICAL:
        return thresholds.liquidation_threshold - CRITICAL_BUFFER_BPS
    if status is HealthStatus.WARNING:
        return thresholds.warning_threshold
    return thresholds.max_ltv


def estimate_time_to_liquidation(
    health: HealthFactorResult, annual_rate_bps: int
) -> timedelta | None:
    """Advisory estimate: buffer divided by daily interest accrual.

    Assumes a constant price and linear interest. Returns None when no
    interest accrues.
    """
    daily_interest = health.total_debt * annual_rate_bps / 10000 / 365
    if daily_interest <= 0:
        return None
    days = min(health.buffer_amount / daily_interest, _MAX_ESTIMATE_DAYS)
    return timedelta(days=days)


class HealthMonitor:
    """Tracks vaults and re-evaluates their health on every sweep.

    Prices are gathered once per collateral type before any vault is
    evaluated. A failure for one asset or vault is logged and does not stop
    the rest of the sweep.
    """

    def __init__(
        self,
        aggregation: PriceAggregationService,
        history: PriceHistoryService,
        calculator: LTVCalculator,
        notifiers: Iterable[Notifier] = (),
        ledger: LedgerClient | None = None,
        config: MonitorConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._aggregation = aggregation
        self._history = history
        self._calculator = calculator
        self._notifiers = list(notifiers)
        self._ledger = ledger
        self._config = config or MonitorConfig()
        self._clock = clock

        self._monitored: dict[str, MonitoredVault] = {}
        self._alerts: dict[str, tuple[HealthAlert, ...]] = {}
        self._last_sent: dict[tuple[str, HealthAlertKind, HealthStatus], datetime] = {}
        self._stop = asyncio.Event()

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=self._config.check_interval_seconds)

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    def track_vault(self, vault: Vault) -> MonitoredVault:
        """Start tracking a vault; it is due for a check immediately."""
        monitored = MonitoredVault(vault=vault, health=None, next_check_due=self._clock())
        self._monitored = {**self._monitored, vault.vault_id: monitored}
        logger.info("Tracking vault %s (%s)", vault.vault_id, vault.collateral_type.value)
        return monitored

    def untrack_vault(self, vault_id: str) -> bool:
        if vault_id not in self._monitored:
            return False
        self._monitored = {k: v for k, v in self._monitored.items() if k != vault_id}
        logger.info("Stopped tracking vault %s", vault_id)
        return True

    def get_monitoring_data(self, vault_id: str) -> MonitoredVault | None:
        return self._monitored.get(vault_id)

    def all_monitored(self) -> tuple[MonitoredVault, ...]:
        return tuple(self._monitored.values())

    def vaults_by_status(self, status: HealthStatus) -> tuple[MonitoredVault, ...]:
        return tuple(m for m in self._monitored.values() if m.vault.status is status)

    def get_vault_alerts(self, vault_id: str, limit: int = 10) -> tuple[HealthAlert, ...]:
        return tuple(reversed(self._alerts.get(vault_id, ())))[:limit]

    def recent_alerts(self, limit: int = 50) -> tuple[HealthAlert, ...]:
        merged = [a for alerts in self._alerts.values() for a in alerts]
        merged.sort(key=lambda a: a.created_at, reverse=True)
        return tuple(merged[:limit])

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check_vault(self, vault_id: str) -> HealthFactorResult:
        """Check one tracked vault now. Errors propagate to the caller."""
        monitored = self._monitored.get(vault_id)
        if monitored is None:
            raise VaultNotTracked(f"Vault {vault_id} is not tracked")

        vault = await self._refresh(monitored.vault)
        price = await self._aggregation.get_aggregated_price(vault.collateral_type.value)
        await self._record_price(price)
        return await self._evaluate(vault, price)

    async def run_sweep(self) -> int:
        """Check every due vault once. Returns the number of vaults evaluated."""
        now = self._clock()
        due = [m for m in self._monitored.values() if m.next_check_due <= now]
        if not due:
            return 0

        refreshed = await asyncio.gather(
            *(self._refresh(m.vault) for m in due), return_exceptions=True
        )
        vaults: list[Vault] = []
        for monitored, result in zip(due, refreshed):
            if isinstance(result, Exception):
                logger.error(
                    "Failed to refresh vault %s from ledger: %s",
                    monitored.vault.vault_id,
                    result,
                )
                continue
            vaults.append(result)

        symbols = sorted({v.collateral_type.value for v in vaults})
        fetched = await asyncio.gather(
            *(self._aggregation.get_aggregated_price(s) for s in symbols),
            return_exceptions=True,
        )
        prices: dict[str, AggregatedPrice] = {}
        for symbol, result in zip(symbols, fetched):
            if isinstance(result, Exception):
                logger.error("Price unavailable for %s, skipping its vaults: %s", symbol, result)
                continue
            prices[symbol] = result
            await self._record_price(result)

        checkable = [v for v in vaults if v.collateral_type.value in prices]
        results = await asyncio.gather(
            *(self._evaluate(v, prices[v.collateral_type.value]) for v in checkable),
            return_exceptions=True,
        )
        checked = 0
        for vault, result in zip(checkable, results):
            if isinstance(result, Exception):
                logger.error("Health check failed for vault %s: %s", vault.vault_id, result)
            else:
                checked += 1

        logger.info("Sweep complete: %d/%d due vaults checked", checked, len(due))
        return checked

    async def _refresh(self, vault: Vault) -> Vault:
        if self._ledger is None:
            return vault
        latest = await self._ledger.get_vault(vault.vault_id)
        if latest is None:
            return vault
        # Keep the locally derived health snapshot; balances come from the ledger.
        return replace(
            latest,
            status=vault.status,
            ltv_ratio=vault.ltv_ratio,
            health_factor=vault.health_factor,
            liquidation_price=vault.liquidation_price,
        )

    async def _record_price(self, price: AggregatedPrice) -> None:
        for alert in self._history.record_price(price):
            await self._send_alert(alert)

    async def _evaluate(self, vault: Vault, price: AggregatedPrice) -> HealthFactorResult:
        now = self._clock()
        params = LTVParams(
            collateral_amount=vault.collateral_balance,
            collateral_price=price.price,
            collateral_decimals=vault.collateral_type.decimals,
            loan_amount=vault.borrowed_amount,
            accrued_interest=vault.accrued_interest,
        )
        health = self._calculator.calculate_health_factor(params, vault.collateral_type)
        previous = vault.status

        updated = replace(
            vault,
            status=health.status,
            ltv_ratio=health.ltv_ratio,
            health_factor=health.health_factor,
            liquidation_price=health.liquidation_price,
            last_updated=now,
        )
        if updated.vault_id in self._monitored:
            self._monitored = {
                **self._monitored,
                updated.vault_id: MonitoredVault(
                    vault=updated,
                    health=health,
                    next_check_due=now + self.interval,
                    last_checked=now,
                ),
            }

        logger.debug(
            "Vault %s: LTV %d bp, HF %d bp, status %s",
            vault.vault_id,
            health.ltv_ratio,
            health.health_factor,
            health.status.value,
        )

        for alert in self._build_alerts(updated, previous, health, now):
            if self._in_cooldown(alert):
                logger.debug("Suppressed %s alert for vault %s", alert.kind.value, alert.vault_id)
                continue
            self._remember(alert)
            await self._send_alert(alert)

        return health

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def _build_alerts(
        self,
        vault: Vault,
        previous: HealthStatus | None,
        health: HealthFactorResult,
        now: datetime,
    ) -> list[HealthAlert]:
        thresholds = self._calculator.get_thresholds(vault.collateral_type)
        status = health.status
        previous_rank = previous.rank if previous is not None else HealthStatus.HEALTHY.rank
        alerts: list[HealthAlert] = []

        def alert(kind: HealthAlertKind, **extra) -> HealthAlert:
            return HealthAlert(
                vault_id=vault.vault_id,
                owner=vault.owner,
                kind=kind,
                status=status,
                current_ltv=health.ltv_ratio,
                threshold=threshold_for_status(status, thresholds),
                created_at=now,
                previous_status=previous,
                recommended_actions=_RECOMMENDED_ACTIONS[status],
                **extra,
            )

        if status.rank > previous_rank:
            alerts.append(alert(HealthAlertKind.STATUS))
        elif status.rank < previous_rank:
            alerts.append(alert(HealthAlertKind.RECOVERY))

        if status is HealthStatus.CRITICAL and health.buffer_amount > 0:
            rate = vault.interest_rate_bps or self._config.default_interest_rate_bps
            eta = estimate_time_to_liquidation(health, rate)
            horizon = timedelta(hours=self._config.liquidation_warning_hours)
            if eta is not None and eta < horizon:
                alerts.append(
                    alert(HealthAlertKind.LIQUIDATION_WARNING, time_to_liquidation=eta)
                )

        return alerts

    def _in_cooldown(self, alert: HealthAlert) -> bool:
        last = self._last_sent.get((alert.vault_id, alert.kind, alert.status))
        cooldown = timedelta(seconds=self._config.alert_cooldown_seconds)
        return last is not None and alert.created_at - last < cooldown

    def _remember(self, alert: HealthAlert) -> None:
        key = (alert.vault_id, alert.kind, alert.status)
        self._last_sent = {**self._last_sent, key: alert.created_at}
        kept = (*self._alerts.get(alert.vault_id, ()), alert)[-MAX_ALERTS_PER_VAULT:]
        self._alerts = {**self._alerts, alert.vault_id: kept}

    async def _send_alert(self, alert: HealthAlert | PriceAlert) -> None:
        for notifier in self._notifiers:
            try:
                delivered = await notifier.send_alert(alert)
            except Exception as e:
                logger.error("Notifier send_alert failed: %s", e)
                continue
            if not delivered:
                logger.warning("Notifier %s did not deliver alert", type(notifier).__name__)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run_continuous(self, check_interval_seconds: int | None = None) -> None:
        """Sweep until ``stop()`` is called.

        A sweep in flight when ``stop()`` arrives gets ``shutdown_grace_seconds``
        to finish before it is cancelled.
        """
        interval = check_interval_seconds or self._config.check_interval_seconds
        logger.info("Starting health monitor (sweep every %d seconds)", interval)
        self._stop.clear()

        while not self._stop.is_set():
            sweep = asyncio.create_task(self.run_sweep())
            stopping = asyncio.create_task(self._stop.wait())
            try:
                await asyncio.wait(
                    {sweep, stopping}, return_when=asyncio.FIRST_COMPLETED
                )
                if not sweep.done():
                    await self._drain(sweep)
            finally:
                stopping.cancel()
                if not sweep.done():
                    sweep.cancel()

            if not sweep.cancelled() and sweep.exception() is not None:
                logger.error("Error in monitoring sweep: %s", sweep.exception())
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Health monitor stopped")

    async def _drain(self, sweep: asyncio.Task) -> None:
        grace = self._config.shutdown_grace_seconds
        logger.info("Stop requested; waiting up to %s seconds for the current sweep", grace)
        done, _ = await asyncio.wait({sweep}, timeout=grace)
        if not done:
            logger.warning("Sweep did not finish within %s seconds; cancelling", grace)
            sweep.cancel()
            await asyncio.gather(sweep, return_exceptions=True)

    def stop(self) -> None:
        self._stop.set()
