import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from trademaster.core.chart_state import (
    ChartState,
    RedrawScheduler,
    Series,
    SeriesPoint,
    PRICE,
    VOLUME
)
from trademaster.core.transport import Candle


def _point(i, value=None):
    return SeriesPoint(float(i), value if value is not None else float(i))


def test_series_evicts_oldest_point():
    series = Series("price", 3)
    for i in range(3):
        assert series.append(_point(i)) is None

    evicted = series.append(_point(3))

    assert evicted == _point(0)
    assert series.values() == [1.0, 2.0, 3.0]
    assert series.evicted == 1


def test_price_and_volume_stay_bounded():
    chart = ChartState(max_points=5)
    for i in range(12):
        chart.append_price(_point(i))
        chart.append_volume(_point(i, 500.0))

    assert len(chart.price) == 5
    assert len(chart.volume) == 5
    assert chart.price.values() == [7.0, 8.0, 9.0, 10.0, 11.0]


def test_replace_series_truncates_to_max_points():
    chart = ChartState(max_points=4)
    updates = []
    chart.updates.subscribe(updates.append)

    chart.replace_series("SMA 20", [_point(i) for i in range(10)])

    assert chart.series("SMA 20").values() == [6.0, 7.0, 8.0, 9.0]
    assert updates[-1].kind == "replace"
    assert updates[-1].series == ("SMA 20",)


def test_replace_series_rejects_base_series():
    chart = ChartState()
    with pytest.raises(ValueError):
        chart.replace_series(PRICE, [])


def test_reset_clears_everything():
    chart = ChartState(symbol="EURUSD", timeframe="M5")
    chart.append_price(_point(1))
    chart.replace_series("EMA 12", [_point(1)])

    chart.reset(symbol="GBPUSD", timeframe="H1")

    assert chart.symbol == "GBPUSD"
    assert chart.timeframe == "H1"
    assert len(chart.price) == 0
    assert chart.overlays == {}


def test_load_history_orders_candles_oldest_first():
    chart = ChartState(max_points=10)
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    candles = [
        Candle(timestamp=now + timedelta(minutes=i), open=1.0, high=1.1, low=0.9, close=1.0 + i, volume=100.0 + i)
        for i in (2, 0, 1)
    ]

    assert chart.load_history(candles) == 3
    assert chart.price.values() == [1.0, 2.0, 3.0]
    assert chart.volume.values() == [100.0, 101.0, 102.0]


def test_consume_dirty_coalesces_appends():
    chart = ChartState()
    for i in range(50):
        chart.append_price(_point(i))

    assert chart.consume_dirty() == {PRICE}
    assert chart.consume_dirty() is None


def test_flush_redraws_once_per_dirty_period():
    chart = ChartState()
    redraws = []
    chart.updates.subscribe(lambda u: redraws.append(u) if u.kind == "redraw" else None)
    scheduler = RedrawScheduler(chart, interval=1.0)

    assert scheduler.flush() is False
    for i in range(100):
        chart.append_price(_point(i))
        chart.append_volume(_point(i))

    assert scheduler.flush() is True
    assert scheduler.flush() is False
    assert len(redraws) == 1
    assert set(redraws[0].series) == {PRICE, VOLUME}


def test_before_redraw_changes_join_the_same_redraw():
    chart = ChartState()
    redraws = []
    chart.updates.subscribe(lambda u: redraws.append(u) if u.kind == "redraw" else None)

    def refresh(changed):
        chart.replace_series("SMA 20", chart.price.points)

    scheduler = RedrawScheduler(chart, interval=1.0, before_redraw=refresh)
    chart.append_price(_point(1))

    assert scheduler.flush() is True
    assert scheduler.flush() is False
    assert set(redraws[0].series) == {PRICE, "SMA 20"}


@pytest.mark.asyncio
async def test_scheduler_loop_redraws_in_background():
    chart = ChartState()
    scheduler = RedrawScheduler(chart, interval=0.01)
    await scheduler.start()

    chart.append_price(_point(1))
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert scheduler.redraws == 1
    assert not chart.dirty
