"""Service modules"""
from .aggregation import PriceAggregationService
from .health_monitor import HealthMonitor
from .history import PriceHistoryService
from .liquidation import LiquidationManager

__all__ = [
    "PriceAggregationService",
    "PriceHistoryService",
    "HealthMonitor",
    "LiquidationManager",
]
