"""
Indicator Engine
Moving-average and Bollinger overlays for the chart, computed either by full
re-derivation or incrementally with rolling accumulators
"""

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, List, Optional, Sequence
import logging

from .chart_state import ChartState, SeriesPoint
from ..utils.indicators import (
    TechnicalIndicators,
    RollingWindow,
    IncrementalEMA,
    MarketInsights,
    analyze_market
)
from ..utils.config_loader import ChartConfig

logger = logging.getLogger(__name__)


class IndicatorKind(Enum):
    SMA = "sma"
    EMA = "ema"
    BOLLINGER = "bollinger"


@dataclass(frozen=True)
class IndicatorSpec:
    """One overlay definition; Bollinger specs produce three lines"""
    kind: IndicatorKind
    period: int
    k: float = 2.0

    @property
    def line_names(self) -> List[str]:
        if self.kind == IndicatorKind.SMA:
            return [f"SMA {self.period}"]
        if self.kind == IndicatorKind.EMA:
            return [f"EMA {self.period}"]
        return ["BB Upper", "BB Middle", "BB Lower"]


DEFAULT_SPECS = (
    IndicatorSpec(IndicatorKind.SMA, 20),
    IndicatorSpec(IndicatorKind.EMA, 12),
    IndicatorSpec(IndicatorKind.BOLLINGER, 20, 2.0),
)


class _IncrementalLine:
    """Running state for one spec"""

    def __init__(self, spec: IndicatorSpec, max_points: int):
        self.spec = spec
        # A series of max_points prices has max_points - period + 1 defined values
        capacity = max(max_points - spec.period + 1, 1)
        self.window = RollingWindow(spec.period)
        self.ema = IncrementalEMA(spec.period)
        self.outputs: Dict[str, Deque[SeriesPoint]] = {
            name: deque(maxlen=capacity) for name in spec.line_names
        }

    def push(self, point: SeriesPoint) -> None:
        spec = self.spec
        if spec.kind == IndicatorKind.EMA:
            value = self.ema.push(point.value)
            if value is not None:
                self.outputs[spec.line_names[0]].append(SeriesPoint(point.timestamp, value))
            return

        self.window.push(point.value)
        if not self.window.ready:
            return

        mean = self.window.mean
        if spec.kind == IndicatorKind.SMA:
            self.outputs[spec.line_names[0]].append(SeriesPoint(point.timestamp, mean))
            return

        width = spec.k * self.window.std
        upper, middle, lower = spec.line_names
        self.outputs[upper].append(SeriesPoint(point.timestamp, mean + width))
        self.outputs[middle].append(SeriesPoint(point.timestamp, mean))
        self.outputs[lower].append(SeriesPoint(point.timestamp, mean - width))

    def rebuild_ema(self, prices: List[SeriesPoint]) -> None:
        """Re-derive the EMA from the current window of prices"""
        name = self.spec.line_names[0]
        values = TechnicalIndicators.ema([p.value for p in prices], self.spec.period)
        stamps = prices[self.spec.period - 1:]
        out = self.outputs[name]
        out.clear()
        out.extend(SeriesPoint(p.timestamp, v) for p, v in zip(stamps, values))
        self.ema.reset(values[-1] if values else None)
        if not values:
            for p in prices:
                self.ema.push(p.value)


class IndicatorEngine:
    """
    Indicator Engine

    ``compute`` is the reference: every overlay re-derived from the full price
    series. In incremental mode ``update`` folds each new price into O(1)
    rolling accumulators and ``lines`` returns the same values. The EMA seed
    moves with the head of a sliding window, so once the price window starts
    evicting the EMA line is re-derived from the mirrored prices on read.
    """

    def __init__(
        self,
        specs: Sequence[IndicatorSpec] = DEFAULT_SPECS,
        max_points: int = 1000,
        incremental: bool = True
    ):
        self.specs = tuple(specs)
        self.max_points = max_points
        self.incremental = incremental
        self.updates = 0
        self.recomputes = 0

        self._prices: Deque[SeriesPoint] = deque(maxlen=max_points)
        self._lines: List[_IncrementalLine] = []
        self._ema_stale = False
        self._init_lines()

    @classmethod
    def from_config(cls, config: ChartConfig) -> "IndicatorEngine":
        return cls(
            specs=(
                IndicatorSpec(IndicatorKind.SMA, config.sma_period),
                IndicatorSpec(IndicatorKind.EMA, config.ema_period),
                IndicatorSpec(IndicatorKind.BOLLINGER, config.bollinger_period, config.bollinger_k),
            ),
            max_points=config.max_points,
            incremental=config.incremental
        )

    def _init_lines(self) -> None:
        self._lines = [_IncrementalLine(spec, self.max_points) for spec in self.specs]
        self._ema_stale = False

    @property
    def line_names(self) -> List[str]:
        return [name for spec in self.specs for name in spec.line_names]

    def compute(self, prices: Sequence[SeriesPoint]) -> Dict[str, List[SeriesPoint]]:
        """Re-derive every overlay from the full price series"""
        prices = list(prices)
        values = [p.value for p in prices]
        result: Dict[str, List[SeriesPoint]] = {}

        for spec in self.specs:
            stamps = prices[spec.period - 1:]
            if spec.kind == IndicatorKind.SMA:
                lines = [TechnicalIndicators.sma(values, spec.period)]
            elif spec.kind == IndicatorKind.EMA:
                lines = [TechnicalIndicators.ema(values, spec.period)]
            else:
                lines = list(TechnicalIndicators.bollinger_bands(values, spec.period, spec.k))

            for name, line in zip(spec.line_names, lines):
                result[name] = [SeriesPoint(p.timestamp, v) for p, v in zip(stamps, line)]

        return result

    def reset(self, prices: Sequence[SeriesPoint] = ()) -> None:
        """Drop all running state and replay the given prices"""
        self._prices.clear()
        self._init_lines()
        for point in prices:
            self.update(point)

    def update(self, point: SeriesPoint) -> None:
        """Fold one new price into the running state"""
        self.updates += 1
        if len(self._prices) == self.max_points:
            self._ema_stale = True
        self._prices.append(point)

        if not self.incremental:
            return
        for line in self._lines:
            line.push(point)

    def lines(self) -> Dict[str, List[SeriesPoint]]:
        """Current overlay values"""
        if not self.incremental:
            self.recomputes += 1
            return self.compute(self._prices)

        if self._ema_stale:
            prices = list(self._prices)
            for line in self._lines:
                if line.spec.kind == IndicatorKind.EMA:
                    line.rebuild_ema(prices)
            self._ema_stale = False

        result: Dict[str, List[SeriesPoint]] = {}
        for line in self._lines:
            for name, out in line.outputs.items():
                result[name] = list(out)
        return result

    def refresh(self, chart: ChartState) -> Dict[str, List[SeriesPoint]]:
        """Replace every overlay series on the chart with current values"""
        lines = self.lines()
        for name, points in lines.items():
            chart.replace_series(name, points)
        return lines

    def insights(self, prices: Optional[Sequence[float]] = None) -> Optional[MarketInsights]:
        if prices is None:
            prices = [p.value for p in self._prices]
        return analyze_market(prices)

    def get_stats(self) -> Dict:
        return {
            "mode": "incremental" if self.incremental else "naive",
            "lines": self.line_names,
            "prices": len(self._prices),
            "updates": self.updates,
            "recomputes": self.recomputes,
        }
