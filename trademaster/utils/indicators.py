"""
Technical indicators
Pure moving-average and band functions plus O(1) rolling accumulators
"""

import math
import numpy as np
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional, Sequence, Tuple
import logging

from numpy.lib.stride_tricks import sliding_window_view

logger = logging.getLogger(__name__)


class TechnicalIndicators:
    """
    Technical analysis indicators

    Each function returns only the defined values: the value at output index
    j belongs to input index j + period - 1. An input shorter than the period
    yields an empty list.
    """

    @staticmethod
    def _windows(data: Sequence[float], period: int) -> Optional[np.ndarray]:
        if period <= 0:
            raise ValueError("period must be positive")
        if len(data) < period:
            return None
        return sliding_window_view(np.asarray(data, dtype=float), period)

    @staticmethod
    def sma(data: Sequence[float], period: int) -> List[float]:
        """Simple Moving Average"""
        windows = TechnicalIndicators._windows(data, period)
        if windows is None:
            return []
        return windows.mean(axis=1).tolist()

    @staticmethod
    def ema(data: Sequence[float], period: int) -> List[float]:
        """Exponential Moving Average seeded with the SMA of the first window"""
        seed = TechnicalIndicators.sma(data[:period], period)
        if not seed:
            return []

        multiplier = 2 / (period + 1)
        result = [seed[0]]
        for price in data[period:]:
            result.append((price - result[-1]) * multiplier + result[-1])
        return result

    @staticmethod
    def bollinger_bands(
        data: Sequence[float],
        period: int = 20,
        std_dev: float = 2.0
    ) -> Tuple[List[float], List[float], List[float]]:
        """Bollinger Bands with population stddev - returns (upper, middle, lower)"""
        windows = TechnicalIndicators._windows(data, period)
        if windows is None:
            return [], [], []

        middle = windows.mean(axis=1)
        width = std_dev * windows.std(axis=1)
        return (middle + width).tolist(), middle.tolist(), (middle - width).tolist()

    @staticmethod
    def stddev(data: Sequence[float]) -> float:
        """Population standard deviation"""
        if len(data) == 0:
            return 0.0
        return float(np.std(np.asarray(data, dtype=float)))


class RollingWindow:
    """
    Fixed-size window with O(1) mean and population variance

    Running sums are kept relative to a shift value (the first price seen)
    so that sums of squares stay small for prices far from zero. The sums are
    recomputed exactly every ``resync_every`` pushes to bound drift.
    """

    def __init__(self, period: int, resync_every: Optional[int] = None):
        if period <= 0:
            raise ValueError("period must be positive")
        self.period = period
        self.resync_every = resync_every or max(period * 50, 1000)
        self._values: Deque[float] = deque(maxlen=period)
        self._shift: Optional[float] = None
        self._sum = 0.0
        self._sumsq = 0.0
        self._pushes = 0

    def push(self, value: float) -> None:
        if self._shift is None:
            self._shift = value

        if len(self._values) == self.period:
            old = self._values[0] - self._shift
            self._sum -= old
            self._sumsq -= old * old

        self._values.append(value)
        x = value - self._shift
        self._sum += x
        self._sumsq += x * x

        self._pushes += 1
        if self._pushes % self.resync_every == 0:
            self._resync()

    def _resync(self) -> None:
        self._shift = self._values[0]
        self._sum = sum(v - self._shift for v in self._values)
        self._sumsq = sum((v - self._shift) ** 2 for v in self._values)

    def clear(self) -> None:
        self._values.clear()
        self._shift = None
        self._sum = 0.0
        self._sumsq = 0.0
        self._pushes = 0

    @property
    def ready(self) -> bool:
        return len(self._values) == self.period

    @property
    def mean(self) -> float:
        n = len(self._values)
        if n == 0:
            return 0.0
        return self._shift + self._sum / n

    @property
    def variance(self) -> float:
        n = len(self._values)
        if n == 0:
            return 0.0
        mean = self._sum / n
        return max(self._sumsq / n - mean * mean, 0.0)

    @property
    def std(self) -> float:
        return math.sqrt(self.variance)


class IncrementalEMA:
    """EMA updated one price at a time; seeded with the mean of the first window"""

    def __init__(self, period: int):
        self.period = period
        self.multiplier = 2 / (period + 1)
        self.value: Optional[float] = None
        self._seed: List[float] = []

    def push(self, price: float) -> Optional[float]:
        if self.value is None:
            self._seed.append(price)
            if len(self._seed) == self.period:
                self.value = TechnicalIndicators.sma(self._seed, self.period)[0]
                self._seed = []
            return self.value

        self.value = (price - self.value) * self.multiplier + self.value
        return self.value

    def reset(self, value: Optional[float] = None) -> None:
        self.value = value
        self._seed = []


@dataclass
class MarketInsights:
    """Quick read of the recent price action"""
    trend: str               # "bullish", "bearish" or "sideways"
    change_percent: float
    volatility: float
    high_volatility: bool
    recent_high: float
    recent_low: float
    current_price: float
    level: Optional[str] = None   # "resistance", "support" or None

    @property
    def messages(self) -> List[str]:
        notes = {
            "bullish": "Strong bullish momentum detected",
            "bearish": "Strong bearish momentum detected",
            "sideways": "Sideways price action",
        }
        result = [notes[self.trend]]
        result.append("High volatility period" if self.high_volatility else "Low volatility environment")
        if self.level:
            result.append(f"Near {self.level} level")
        return result


def analyze_market(
    prices: Sequence[float],
    trend_lookback: int = 10,
    trend_threshold_percent: float = 0.05,
    volatility_window: int = 20,
    volatility_threshold: float = 0.001,
    level_band: float = 0.1
) -> Optional[MarketInsights]:
    """
    Classify trend, volatility and proximity to recent extremes

    Args:
        prices: Price values, oldest first
        trend_lookback: Compare the last price with the one this many points back (inclusive)
        trend_threshold_percent: Change beyond which the trend is directional
        volatility_window: Trailing window for volatility and high/low
        volatility_threshold: Population stddev above which volatility is high
        level_band: Fraction of the recent range counted as "near" a level

    Returns:
        MarketInsights, or None with fewer than ``trend_lookback`` points
    """
    if len(prices) < trend_lookback:
        return None

    current = float(prices[-1])
    previous = float(prices[-trend_lookback])
    change_percent = (current - previous) / previous * 100 if previous else 0.0

    if change_percent > trend_threshold_percent:
        trend = "bullish"
    elif change_percent < -trend_threshold_percent:
        trend = "bearish"
    else:
        trend = "sideways"

    recent = list(prices[-volatility_window:])
    volatility = TechnicalIndicators.stddev(recent)
    recent_high = max(recent)
    recent_low = min(recent)
    span = recent_high - recent_low

    level = None
    if current > recent_high - span * level_band:
        level = "resistance"
    elif current < recent_low + span * level_band:
        level = "support"

    return MarketInsights(
        trend=trend,
        change_percent=change_percent,
        volatility=volatility,
        high_volatility=volatility > volatility_threshold,
        recent_high=recent_high,
        recent_low=recent_low,
        current_price=current,
        level=level,
    )
