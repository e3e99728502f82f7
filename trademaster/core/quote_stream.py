"""
Quote Stream
Per-symbol tick handling: dedupe, spread, latest-quote map, chart feed and
subscriber fan-out
"""

import math
import time
import random
from dataclasses import replace
from typing import Callable, Dict, Optional, Set
import logging

from .chart_state import ChartState, SeriesPoint
from .events import EventChannel, OverflowPolicy, Subscription
from .indicator_engine import IndicatorEngine
from .transport import Quote, TradeSide

logger = logging.getLogger(__name__)


class QuoteStream:
    """
    Quote Stream

    Ticks arrive from the connection manager. A tick with a non-positive or
    crossed price (ask below bid) is rejected. A tick whose host timestamp is
    older than the newest one already seen for its symbol, or an exact repeat
    of the previous tick, is dropped. Every accepted tick lands in the
    latest-quote map; only chart-tracked symbols append price and volume
    points to the chart and feed the indicator engine.
    """

    def __init__(
        self,
        chart: Optional[ChartState] = None,
        indicators: Optional[IndicatorEngine] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time
    ):
        self.chart = chart
        self.indicators = indicators
        self.rng = rng or random.Random()
        self.clock = clock

        self._latest: Dict[str, Quote] = {}
        self.tracked: Set[str] = set()
        self.updates: EventChannel[Quote] = EventChannel("quotes.updates")

        self.stats = {
            "received": 0,
            "accepted": 0,
            "invalid": 0,
            "stale": 0,
            "duplicate": 0,
            "charted": 0,
        }

    # Chart tracking
    def track(self, symbol: str) -> None:
        """Route ticks for this symbol into the chart"""
        self.tracked.add(symbol.upper())

    def untrack(self, symbol: str) -> None:
        self.tracked.discard(symbol.upper())

    # Subscriptions
    def on_quote(
        self,
        handler: Callable[[Quote], None],
        symbol: Optional[str] = None
    ) -> Subscription[Quote]:
        """Push subscription; with ``symbol`` only that symbol's quotes are delivered"""
        if symbol is None:
            return self.updates.subscribe(handler)

        wanted = symbol.upper()

        def filtered(quote: Quote) -> None:
            if quote.symbol == wanted:
                handler(quote)

        return self.updates.subscribe(filtered)

    def stream(self, maxsize: int = 256) -> Subscription[Quote]:
        """Bounded async subscription; a slow consumer keeps only the newest quotes"""
        return self.updates.stream(maxsize=maxsize, overflow=OverflowPolicy.DROP_OLDEST)

    # Tick handling
    def handle_quote(self, quote: Quote) -> bool:
        """
        Process one incoming tick

        Returns:
            True if the tick was accepted
        """
        self.stats["received"] += 1
        symbol = quote.symbol.upper()

        if not self.is_valid(quote):
            self.stats["invalid"] += 1
            logger.warning(f"Invalid tick for {symbol} dropped (bid={quote.bid}, ask={quote.ask})")
            return False

        previous = self._latest.get(symbol)

        if previous is not None:
            if quote.timestamp < previous.timestamp:
                self.stats["stale"] += 1
                logger.debug(f"Stale tick for {symbol} dropped ({quote.timestamp} < {previous.timestamp})")
                return False
            if (quote.timestamp == previous.timestamp
                    and quote.bid == previous.bid
                    and quote.ask == previous.ask):
                self.stats["duplicate"] += 1
                return False

        accepted = replace(
            quote,
            symbol=symbol,
            spread=quote.ask - quote.bid,
            received_at=self.clock()
        )
        self._latest[symbol] = accepted
        self.stats["accepted"] += 1

        if symbol in self.tracked and self.chart is not None and symbol == self.chart.symbol:
            self._append_to_chart(accepted)

        self.updates.publish(accepted)
        return True

    @staticmethod
    def is_valid(quote: Quote) -> bool:
        """Both sides finite and positive, ask not below bid"""
        if not (math.isfinite(quote.bid) and math.isfinite(quote.ask)):
            return False
        return 0 < quote.bid <= quote.ask

    def _append_to_chart(self, quote: Quote) -> None:
        stamp = quote.received_at
        price_point = SeriesPoint(stamp, quote.mid)
        # Hosts that report no tick volume get a synthetic one for the volume bars
        volume = quote.volume if quote.volume is not None else self.rng.uniform(250, 750)

        self.chart.append_price(price_point)
        self.chart.append_volume(SeriesPoint(stamp, volume))
        if self.indicators is not None:
            self.indicators.update(price_point)
        self.stats["charted"] += 1

    # Queries
    def latest(self, symbol: str) -> Optional[Quote]:
        return self._latest.get(symbol.upper())

    def price_for(self, symbol: str, side: TradeSide) -> Optional[float]:
        """Execution price for a market order: ask for buys, bid for sells"""
        quote = self.latest(symbol)
        if quote is None:
            return None
        return quote.ask if side == TradeSide.BUY else quote.bid

    def clear(self, symbol: Optional[str] = None) -> None:
        if symbol is None:
            self._latest.clear()
        else:
            self._latest.pop(symbol.upper(), None)

    def get_stats(self) -> Dict:
        return {
            **self.stats,
            "symbols": sorted(self._latest),
            "tracked": sorted(self.tracked),
            "subscribers": self.updates.subscriber_count,
        }
