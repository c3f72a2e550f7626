"""Render alerts into (subject, body) text for delivery channels."""
from __future__ import annotations

from datetime import timedelta

from ..models import (
    AlertSeverity,
    HealthAlert,
    HealthAlertKind,
    HealthStatus,
    PriceAlert,
)

_STATUS_ICON = {
    HealthStatus.HEALTHY: "✅",
    HealthStatus.WARNING: "⚠️",
    HealthStatus.CRITICAL: "🚨",
    HealthStatus.LIQUIDATION: "💀",
}

_SEVERITY_ICON = {
    AlertSeverity.LOW: "ℹ️",
    AlertSeverity.MEDIUM: "⚠️",
    AlertSeverity.HIGH: "🚨",
    AlertSeverity.CRITICAL: "🔥",
}


def format_id(value: str) -> str:
    if len(value) > 16:
        return f"{value[:10]}...{value[-6:]}"
    return value


def format_duration(delta: timedelta) -> str:
    hours = delta.total_seconds() / 3600
    if hours < 1:
        return f"{hours * 60:.0f} min"
    return f"{hours:.1f} h"


def _bp(value: int) -> str:
    return f"{value / 100:.2f}%"


def format_health_alert(alert: HealthAlert) -> tuple[str, str]:
    icon = _STATUS_ICON[alert.status]
    status = alert.status.value.upper()

    if alert.kind is HealthAlertKind.RECOVERY:
        subject = f"✅ RECOVERY: vault back to {status}"
    elif alert.kind is HealthAlertKind.LIQUIDATION_WARNING:
        subject = "🚨 LIQUIDATION WARNING: vault close to liquidation"
    else:
        subject = f"{icon} {status}: LTV {_bp(alert.current_ltv)}"

    lines = [
        subject,
        "",
        f"Vault: {format_id(alert.vault_id)}",
        f"Owner: {format_id(alert.owner)}",
        f"LTV: {_bp(alert.current_ltv)} · Threshold: {_bp(alert.threshold)}",
    ]
    if alert.previous_status is not None:
        lines.append(f"Status: {alert.previous_status.value} → {alert.status.value}")
    if alert.time_to_liquidation is not None:
        lines.append(
            f"Estimated time to liquidation: {format_duration(alert.time_to_liquidation)}"
        )
    if alert.recommended_actions:
        lines.append("")
        lines.extend(f"• {action}" for action in alert.recommended_actions)
    lines.extend(["", f"{alert.created_at:%Y-%m-%d %H:%M:%S} UTC"])
    return subject, "\n".join(lines)


def format_price_alert(alert: PriceAlert) -> tuple[str, str]:
    icon = _SEVERITY_ICON[alert.severity]
    subject = f"{icon} {alert.severity.value} {alert.type.value}: {alert.symbol}"
    body = (
        f"{subject}\n"
        f"\n"
        f"{alert.message}\n"
        f"Value: {alert.value:,.4f} · Threshold: {alert.threshold:,.4f}\n"
        f"\n"
        f"{alert.timestamp:%Y-%m-%d %H:%M:%S} UTC"
    )
    return subject, body


def format_alert(alert: HealthAlert | PriceAlert) -> tuple[str, str]:
    if isinstance(alert, HealthAlert):
        return format_health_alert(alert)
    return format_price_alert(alert)
