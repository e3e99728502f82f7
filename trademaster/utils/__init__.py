"""
Trading Assistant Utilities
"""

from .indicators import (
    TechnicalIndicators,
    RollingWindow,
    IncrementalEMA,
    MarketInsights,
    analyze_market
)
from .config_loader import ConfigManager, TIMEFRAME_MINUTES
from .logger import setup_logging, get_logger, TradeLogger

__all__ = [
    "TechnicalIndicators",
    "RollingWindow",
    "IncrementalEMA",
    "MarketInsights",
    "analyze_market",
    "ConfigManager",
    "TIMEFRAME_MINUTES",
    "setup_logging",
    "get_logger",
    "TradeLogger"
]
