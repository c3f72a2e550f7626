"""Configuration loader: reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .assets import DEFAULT_THRESHOLDS, CollateralType
from .errors import ConfigurationError
from .models import AssetConfig, LTVThresholds

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MonitorConfig:
    check_interval_seconds: int = 60
    alert_cooldown_seconds: int = 300
    liquidation_warning_hours: int = 24
    default_interest_rate_bps: int = 500
    shutdown_grace_seconds: float = 30


@dataclass(frozen=True)
class AggregationConfig:
    source_timeout: float = 5.0
    aggregation_deadline: float = 10.0
    max_price_age_seconds: int = 300
    min_confidence: float = 80.0
    max_validation_deviation: float = 5.0


@dataclass(frozen=True)
class SourceConfig:
    id: str = ""
    name: str = ""
    kind: str = ""
    endpoint: str = ""
    weight: int = 10
    reliability_score: float = 100.0
    is_active: bool = True
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AssetSettings:
    config: AssetConfig
    thresholds: LTVThresholds | None = None


@dataclass(frozen=True)
class LiquidationConfig:
    penalty_rate: Decimal = Decimal("0.10")
    fee_rate: Decimal = Decimal("0.05")
    penalty_interest_rate: Decimal = Decimal("0.20")
    pool_recipient: str = "lending_pool"


@dataclass(frozen=True)
class ChainConfig:
    rpc_endpoints: tuple[str, ...] = ()
    rpc_timeout: int = 30
    package_id: str = ""
    sender: str = ""
    gas_budget: int = 10_000_000


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool = False
    alert_bot_token: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class EmailConfig:
    enabled: bool = False
    alert_email: str = ""
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    sender_email: str = ""
    sender_password: str = ""


@dataclass(frozen=True)
class NotificationsConfig:
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    email: EmailConfig = field(default_factory=EmailConfig)


@dataclass(frozen=True)
class AppConfig:
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    sources: tuple[SourceConfig, ...] = ()
    assets: dict[str, AssetSettings] = field(default_factory=dict)
    default_thresholds: LTVThresholds = DEFAULT_THRESHOLDS
    liquidation: LiquidationConfig = field(default_factory=LiquidationConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    vaults: tuple[str, ...] = ()
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_monitor(raw: dict[str, Any]) -> MonitorConfig:
    return MonitorConfig(
        check_interval_seconds=int(raw.get("check_interval_seconds", 60)),
        alert_cooldown_seconds=int(raw.get("alert_cooldown_seconds", 300)),
        liquidation_warning_hours=int(raw.get("liquidation_warning_hours", 24)),
        default_interest_rate_bps=int(raw.get("default_interest_rate_bps", 500)),
        shutdown_grace_seconds=float(raw.get("shutdown_grace_seconds", 30)),
    )


def _build_aggregation(raw: dict[str, Any]) -> AggregationConfig:
    return AggregationConfig(
        source_timeout=float(raw.get("source_timeout", 5.0)),
        aggregation_deadline=float(raw.get("aggregation_deadline", 10.0)),
        max_price_age_seconds=int(raw.get("max_price_age_seconds", 300)),
        min_confidence=float(raw.get("min_confidence", 80.0)),
        max_validation_deviation=float(raw.get("max_validation_deviation", 5.0)),
    )


def _build_sources(raw: list[dict[str, Any]]) -> tuple[SourceConfig, ...]:
    sources: list[SourceConfig] = []
    for s in raw:
        source_id = s.get("id", "")
        sources.append(
            SourceConfig(
                id=source_id,
                name=s.get("name", source_id),
                kind=s.get("kind", source_id),
                endpoint=s.get("endpoint", ""),
                weight=int(s.get("weight", 10)),
                reliability_score=float(s.get("reliability_score", 100.0)),
                is_active=bool(s.get("is_active", True)),
                options=dict(s.get("options", {})),
            )
        )
    return tuple(sources)


def _build_thresholds(raw: dict[str, Any], base: LTVThresholds) -> LTVThresholds:
    return LTVThresholds(
        max_ltv=int(raw.get("max_ltv", base.max_ltv)),
        warning_threshold=int(raw.get("warning_threshold", base.warning_threshold)),
        liquidation_threshold=int(
            raw.get("liquidation_threshold", base.liquidation_threshold)
        ),
        liquidation_bonus=int(raw.get("liquidation_bonus", base.liquidation_bonus)),
    )


def _build_assets(raw: dict[str, Any]) -> dict[str, AssetSettings]:
    assets: dict[str, AssetSettings] = {}
    for symbol, cfg in raw.items():
        symbol = symbol.upper()
        cfg = cfg or {}
        try:
            base = CollateralType.from_symbol(symbol)
            base_config, base_thresholds = base.asset_config, base.thresholds
        except ConfigurationError:
            base_config = AssetConfig(symbol, 8, 3, 5.0, 60_000)
            base_thresholds = None

        asset_config = AssetConfig(
            symbol=symbol,
            decimals=int(cfg.get("decimals", base_config.decimals)),
            min_sources=int(cfg.get("min_sources", base_config.min_sources)),
            max_deviation=float(cfg.get("max_deviation", base_config.max_deviation)),
            update_frequency_ms=int(
                cfg.get("update_frequency_ms", base_config.update_frequency_ms)
            ),
        )
        thresholds = None
        if "thresholds" in cfg:
            thresholds = _build_thresholds(
                cfg["thresholds"] or {}, base_thresholds or DEFAULT_THRESHOLDS
            )
        assets[symbol] = AssetSettings(config=asset_config, thresholds=thresholds)
    return assets


def _build_liquidation(raw: dict[str, Any]) -> LiquidationConfig:
    return LiquidationConfig(
        penalty_rate=Decimal(str(raw.get("penalty_rate", "0.10"))),
        fee_rate=Decimal(str(raw.get("fee_rate", "0.05"))),
        penalty_interest_rate=Decimal(str(raw.get("penalty_interest_rate", "0.20"))),
        pool_recipient=raw.get("pool_recipient", "lending_pool"),
    )


def _build_chain(raw: dict[str, Any]) -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=tuple(raw.get("rpc_endpoints", [])),
        rpc_timeout=int(raw.get("rpc_timeout", 30)),
        package_id=raw.get("package_id", ""),
        sender=raw.get("sender", ""),
        gas_budget=int(raw.get("gas_budget", 10_000_000)),
    )


def _build_notifications(raw: dict[str, Any]) -> NotificationsConfig:
    tg = raw.get("telegram", {})
    em = raw.get("email", {})
    return NotificationsConfig(
        telegram=TelegramConfig(
            enabled=bool(tg.get("enabled", False)),
            alert_bot_token=tg.get("alert_bot_token", ""),
            chat_id=str(tg.get("chat_id", "")),
        ),
        email=EmailConfig(
            enabled=bool(em.get("enabled", False)),
            alert_email=em.get("alert_email", ""),
            smtp_server=em.get("smtp_server", "smtp.gmail.com"),
            smtp_port=int(em.get("smtp_port", 587)),
            sender_email=em.get("sender_email", ""),
            sender_password=em.get("sender_password", ""),
        ),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from this package).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = AppConfig(
        monitor=_build_monitor(raw.get("monitor", {})),
        aggregation=_build_aggregation(raw.get("aggregation", {})),
        sources=_build_sources(raw.get("sources", [])),
        assets=_build_assets(raw.get("assets", {})),
        default_thresholds=_build_thresholds(
            raw.get("default_thresholds", {}), DEFAULT_THRESHOLDS
        ),
        liquidation=_build_liquidation(raw.get("liquidation", {})),
        chain=_build_chain(raw.get("chain", {})),
        vaults=tuple(v for v in raw.get("vaults", []) if v),
        notifications=_build_notifications(raw.get("notifications", {})),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise ``ConfigurationError`` on invalid configuration."""
    if not cfg.sources:
        raise ConfigurationError("At least one price source must be configured")

    seen: set[str] = set()
    for source in cfg.sources:
        if not source.id:
            raise ConfigurationError("Every price source needs an id")
        if source.id in seen:
            raise ConfigurationError(f"Duplicate price source '{source.id}'")
        seen.add(source.id)
        if not 1 <= source.weight <= 100:
            raise ConfigurationError(
                f"Source '{source.id}' weight must be within 1-100"
            )
        if not 0 <= source.reliability_score <= 100:
            raise ConfigurationError(
                f"Source '{source.id}' reliability_score must be within 0-100"
            )

    for symbol, settings in cfg.assets.items():
        asset = settings.config
        if not 0 <= asset.decimals <= 18:
            raise ConfigurationError(f"Asset '{symbol}' decimals must be within 0-18")
        if asset.min_sources < 1:
            raise ConfigurationError(f"Asset '{symbol}' min_sources must be >= 1")
        if asset.max_deviation <= 0:
            raise ConfigurationError(f"Asset '{symbol}' max_deviation must be > 0")
        if settings.thresholds is not None:
            CollateralType.from_symbol(symbol)
            settings.thresholds.validate()

    cfg.default_thresholds.validate()

    if cfg.aggregation.source_timeout <= 0 or cfg.aggregation.aggregation_deadline <= 0:
        raise ConfigurationError("Aggregation timeouts must be positive")
