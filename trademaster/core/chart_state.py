"""
Chart State
Bounded price, volume and indicator series for the active symbol, plus
coalesced redraw scheduling
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Deque, Dict, Iterable, Iterator, List, Optional, Set, Tuple
import logging

from .events import EventChannel
from .transport import Candle

logger = logging.getLogger(__name__)

PRICE = "price"
VOLUME = "volume"


@dataclass(frozen=True)
class SeriesPoint:
    """A single chart point; timestamp is epoch seconds"""
    timestamp: float
    value: float


@dataclass
class ChartUpdate:
    """Published when overlays are replaced, the chart is reset or a redraw is due"""
    kind: str  # "replace", "reset" or "redraw"
    symbol: str
    timeframe: str
    series: Tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Series:
    """Append-only series bounded to ``max_points``; overflow evicts from the head"""

    def __init__(self, name: str, max_points: int):
        if max_points <= 0:
            raise ValueError("max_points must be positive")
        self.name = name
        self.max_points = max_points
        self._points: Deque[SeriesPoint] = deque(maxlen=max_points)
        self.evicted = 0

    def append(self, point: SeriesPoint) -> Optional[SeriesPoint]:
        """Append a point, returning the evicted head point if any"""
        evicted = self._points[0] if len(self._points) == self.max_points else None
        self._points.append(point)
        if evicted is not None:
            self.evicted += 1
        return evicted

    def replace(self, points: Iterable[SeriesPoint]) -> None:
        """Replace all points, keeping only the newest ``max_points``"""
        self._points = deque(points, maxlen=self.max_points)

    def clear(self) -> None:
        self._points.clear()

    @property
    def points(self) -> List[SeriesPoint]:
        return list(self._points)

    def values(self) -> List[float]:
        return [p.value for p in self._points]

    @property
    def last(self) -> Optional[SeriesPoint]:
        return self._points[-1] if self._points else None

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[SeriesPoint]:
        return iter(self._points)


class ChartState:
    """
    Chart State

    Holds the price and volume series of the active symbol and one series per
    indicator overlay, all bounded to the same ``max_points``. Appends only
    set a dirty flag; redraw work is done at most once per interval by
    ``RedrawScheduler``.
    """

    def __init__(self, max_points: int = 1000, symbol: str = "EURUSD", timeframe: str = "M5"):
        self.max_points = max_points
        self.symbol = symbol
        self.timeframe = timeframe

        self.price = Series(PRICE, max_points)
        self.volume = Series(VOLUME, max_points)
        self.overlays: Dict[str, Series] = {}

        self._dirty: Set[str] = set()
        self.updates: EventChannel[ChartUpdate] = EventChannel("chart.updates")

        self.stats = {
            "price_points": 0,
            "volume_points": 0,
            "replacements": 0,
            "resets": 0,
        }

    def append_price(self, point: SeriesPoint) -> None:
        self.price.append(point)
        self.stats["price_points"] += 1
        self.mark_dirty(PRICE)

    def append_volume(self, point: SeriesPoint) -> None:
        self.volume.append(point)
        self.stats["volume_points"] += 1
        self.mark_dirty(VOLUME)

    def replace_series(self, name: str, points: Iterable[SeriesPoint]) -> None:
        """Replace an indicator overlay by name, creating it if needed"""
        if name in (PRICE, VOLUME):
            raise ValueError(f"'{name}' is not an overlay series")

        series = self.overlays.get(name)
        if series is None:
            series = self.overlays[name] = Series(name, self.max_points)
        series.replace(points)

        self.stats["replacements"] += 1
        self.mark_dirty(name)
        self.updates.publish(ChartUpdate("replace", self.symbol, self.timeframe, (name,)))

    def series(self, name: str) -> Optional[Series]:
        if name == PRICE:
            return self.price
        if name == VOLUME:
            return self.volume
        return self.overlays.get(name)

    def reset(self, symbol: Optional[str] = None, timeframe: Optional[str] = None) -> None:
        """Clear every series; used when switching symbol or timeframe"""
        self.symbol = symbol or self.symbol
        self.timeframe = timeframe or self.timeframe
        self.price.clear()
        self.volume.clear()
        self.overlays.clear()
        self.stats["resets"] += 1
        self._dirty = {PRICE, VOLUME}
        logger.info(f"Chart reset: {self.symbol} {self.timeframe}")
        self.updates.publish(ChartUpdate("reset", self.symbol, self.timeframe))

    def load_history(self, candles: List[Candle]) -> int:
        """Replace price and volume with historical bars (oldest first)"""
        ordered = sorted(candles, key=lambda c: c.timestamp)
        self.price.replace(SeriesPoint(c.timestamp.timestamp(), c.close) for c in ordered)
        self.volume.replace(SeriesPoint(c.timestamp.timestamp(), c.volume) for c in ordered)
        self.mark_dirty(PRICE)
        self.mark_dirty(VOLUME)
        logger.info(f"Loaded {len(self.price)} history points for {self.symbol} {self.timeframe}")
        return len(self.price)

    # Redraw coalescing
    def mark_dirty(self, name: str = PRICE) -> None:
        self._dirty.add(name)

    @property
    def dirty(self) -> bool:
        return bool(self._dirty)

    def consume_dirty(self) -> Optional[Set[str]]:
        """Take and clear the pending change set; None when nothing changed"""
        if not self._dirty:
            return None
        changed, self._dirty = self._dirty, set()
        return changed

    def get_stats(self) -> Dict:
        return {
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "max_points": self.max_points,
            "price_len": len(self.price),
            "volume_len": len(self.volume),
            "overlays": {name: len(s) for name, s in self.overlays.items()},
            **self.stats,
        }


class RedrawScheduler:
    """
    Runs at most one redraw per interval, only when the chart is dirty

    ``before_redraw`` receives the changed series names and may refresh
    overlays; those replacements are folded into the same redraw.
    """

    def __init__(
        self,
        chart: ChartState,
        interval: float = 1.0,
        before_redraw: Optional[Callable[[Set[str]], None]] = None
    ):
        self.chart = chart
        self.interval = interval
        self.before_redraw = before_redraw
        self.redraws = 0
        self.running = False
        self._task: Optional[asyncio.Task] = None

    def flush(self) -> bool:
        """Redraw now if anything changed since the last redraw"""
        changed = self.chart.consume_dirty()
        if changed is None:
            return False

        if self.before_redraw is not None:
            self.before_redraw(changed)
            changed |= self.chart.consume_dirty() or set()

        self.redraws += 1
        self.chart.updates.publish(
            ChartUpdate("redraw", self.chart.symbol, self.chart.timeframe, tuple(sorted(changed)))
        )
        return True

    async def start(self) -> None:
        if self.running:
            logger.warning("Redraw scheduler already running")
            return
        self.running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.interval)
                self.flush()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Redraw failed: {e}", exc_info=True)
