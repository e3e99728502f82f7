import random

import pytest

from trademaster.core.chart_state import ChartState
from trademaster.core.indicator_engine import IndicatorEngine
from trademaster.core.quote_stream import QuoteStream
from trademaster.core.transport import Quote, TradeSide


@pytest.fixture
def chart():
    return ChartState(max_points=100, symbol="EURUSD")


@pytest.fixture
def stream(chart):
    clock = iter(range(1000, 100000))
    quotes = QuoteStream(
        chart=chart,
        indicators=IndicatorEngine(max_points=100),
        rng=random.Random(1),
        clock=lambda: float(next(clock))
    )
    quotes.track("EURUSD")
    return quotes


def test_quote_computes_spread_and_mid():
    quote = Quote(symbol="EURUSD", bid=1.0850, ask=1.0852, timestamp=1.0)
    assert quote.spread == pytest.approx(0.0002)
    assert quote.mid == pytest.approx(1.0851)


def test_accepted_tick_updates_latest_and_chart(stream, chart):
    received = []
    stream.on_quote(received.append)

    assert stream.handle_quote(Quote(symbol="eurusd", bid=1.0850, ask=1.0852, timestamp=1.0))

    latest = stream.latest("EURUSD")
    assert latest.symbol == "EURUSD"
    assert latest.received_at == 1000.0
    assert chart.price.values() == pytest.approx([1.0851])
    assert len(chart.volume) == 1
    assert 250 <= chart.volume.values()[0] <= 750
    assert received == [latest]


def test_host_volume_is_used_when_present(stream, chart):
    stream.handle_quote(Quote(symbol="EURUSD", bid=1.0, ask=1.1, timestamp=1.0, volume=42.0))
    assert chart.volume.values() == [42.0]


def test_stale_tick_is_dropped(stream, chart):
    stream.handle_quote(Quote(symbol="EURUSD", bid=1.0850, ask=1.0852, timestamp=2.0))

    assert not stream.handle_quote(Quote(symbol="EURUSD", bid=1.0900, ask=1.0902, timestamp=1.0))
    assert stream.latest("EURUSD").bid == 1.0850
    assert stream.stats["stale"] == 1
    assert len(chart.price) == 1


@pytest.mark.parametrize("bid,ask", [
    (1.0852, 1.0850),
    (0.0, 1.0850),
    (-1.0, 1.0850),
    (float("nan"), 1.0850),
])
def test_invalid_tick_is_rejected(stream, chart, bid, ask):
    received = []
    stream.on_quote(received.append)

    assert not stream.handle_quote(Quote(symbol="EURUSD", bid=bid, ask=ask, timestamp=1.0))

    assert stream.latest("EURUSD") is None
    assert stream.stats["invalid"] == 1
    assert len(chart.price) == 0
    assert received == []


def test_exact_duplicate_is_dropped(stream):
    tick = Quote(symbol="EURUSD", bid=1.0850, ask=1.0852, timestamp=2.0)
    assert stream.handle_quote(tick)
    assert not stream.handle_quote(tick)
    assert stream.stats["duplicate"] == 1


def test_untracked_symbol_skips_chart(stream, chart):
    assert stream.handle_quote(Quote(symbol="GBPUSD", bid=1.2650, ask=1.2652, timestamp=1.0))
    assert stream.latest("GBPUSD") is not None
    assert len(chart.price) == 0


def test_symbol_filtered_subscription(stream):
    received = []
    stream.on_quote(received.append, symbol="GBPUSD")

    stream.handle_quote(Quote(symbol="EURUSD", bid=1.0850, ask=1.0852, timestamp=1.0))
    stream.handle_quote(Quote(symbol="GBPUSD", bid=1.2650, ask=1.2652, timestamp=1.0))

    assert [q.symbol for q in received] == ["GBPUSD"]


def test_price_for_uses_ask_for_buys_and_bid_for_sells(stream):
    stream.handle_quote(Quote(symbol="EURUSD", bid=1.0850, ask=1.0852, timestamp=1.0))

    assert stream.price_for("EURUSD", TradeSide.BUY) == 1.0852
    assert stream.price_for("EURUSD", TradeSide.SELL) == 1.0850
    assert stream.price_for("USDJPY", TradeSide.BUY) is None


def test_bounded_stream_keeps_newest_quotes(stream):
    subscription = stream.stream(maxsize=2)
    for i in range(5):
        stream.handle_quote(Quote(symbol="EURUSD", bid=1.0 + i, ask=1.1 + i, timestamp=float(i)))

    assert subscription.dropped == 3
    assert subscription.get_nowait().bid == 4.0
    assert subscription.get_nowait().bid == 5.0
