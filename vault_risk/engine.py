"""Wires the engine's components together from an ``AppConfig``."""
from __future__ import annotations

import logging

from .chains.sui import SuiLedgerClient
from .clock import Clock, utc_now
from .config import AppConfig
from .errors import ConfigurationError
from .interfaces.ledger import LedgerClient
from .interfaces.notifier import Notifier
from .ltv import LTVCalculator
from .notifications import EmailNotifier, TelegramNotifier
from .services import (
    HealthMonitor,
    LiquidationManager,
    PriceAggregationService,
    PriceHistoryService,
)
from .sources import build_registry
from .store import InMemoryStore, KeyValueStore

logger = logging.getLogger(__name__)


class RiskEngine:
    """Builds sources, services and notifiers and exposes them as attributes.

    Collaborators may be injected; anything omitted is built from config.
    """

    def __init__(
        self,
        config: AppConfig,
        ledger: LedgerClient | None = None,
        notifiers: list[Notifier] | None = None,
        store: KeyValueStore | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config

        if ledger is None and config.chain.rpc_endpoints:
            ledger = SuiLedgerClient(config.chain)
        self.ledger = ledger

        if notifiers is None:
            notifiers = []
            if config.notifications.telegram.enabled:
                notifiers.append(TelegramNotifier(config.notifications.telegram))
            if config.notifications.email.enabled:
                notifiers.append(EmailNotifier(config.notifications.email))
        self.notifiers = notifiers

        self.registry = build_registry(config.sources, config.aggregation.source_timeout)
        self.calculator = LTVCalculator(
            {
                symbol: settings.thresholds
                for symbol, settings in config.assets.items()
                if settings.thresholds is not None
            },
            default_thresholds=config.default_thresholds,
        )
        self.aggregation = PriceAggregationService(
            self.registry,
            {symbol: settings.config for symbol, settings in config.assets.items()},
            config.aggregation,
            ledger=ledger,
            clock=clock,
            package_id=config.chain.package_id,
        )
        self.history = PriceHistoryService(clock=clock)
        self.monitor = HealthMonitor(
            self.aggregation,
            self.history,
            self.calculator,
            notifiers=self.notifiers,
            ledger=ledger,
            config=config.monitor,
            clock=clock,
        )
        self._liquidation: LiquidationManager | None = None
        if ledger is not None:
            self._liquidation = LiquidationManager(
                ledger,
                self.aggregation,
                self.calculator,
                store=store or InMemoryStore(),
                config=config.liquidation,
                clock=clock,
            )

    @property
    def liquidation(self) -> LiquidationManager:
        if self._liquidation is None:
            raise ConfigurationError("Liquidation requires a configured ledger client")
        return self._liquidation

    async def track_configured_vaults(self) -> int:
        """Load every configured vault from the ledger and start tracking it."""
        if self.ledger is None:
            if self.config.vaults:
                raise ConfigurationError("Tracking vaults requires a configured ledger client")
            return 0

        tracked = 0
        for vault_id in self.config.vaults:
            try:
                vault = await self.ledger.get_vault(vault_id)
            except Exception as e:
                logger.error("Failed to load vault %s: %s", vault_id, e)
                continue
            if vault is None:
                logger.warning("Vault %s not found on ledger", vault_id)
                continue
            self.monitor.track_vault(vault)
            tracked += 1
        return tracked
