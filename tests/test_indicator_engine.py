import random

import pytest

from trademaster.core.chart_state import ChartState, SeriesPoint
from trademaster.core.indicator_engine import IndicatorEngine, IndicatorSpec, IndicatorKind
from trademaster.utils.config_loader import ChartConfig


def _prices(count, seed=3):
    rng = random.Random(seed)
    price = 1.085
    points = []
    for i in range(count):
        price += rng.gauss(0, 0.0005)
        points.append(SeriesPoint(float(i), price))
    return points


def _assert_lines_equal(actual, expected):
    assert set(actual) == set(expected)
    for name, points in expected.items():
        got = actual[name]
        assert [p.timestamp for p in got] == [p.timestamp for p in points], name
        assert [p.value for p in got] == pytest.approx([p.value for p in points], rel=1e-9, abs=1e-12), name


def test_default_line_names():
    engine = IndicatorEngine()
    assert engine.line_names == ["SMA 20", "EMA 12", "BB Upper", "BB Middle", "BB Lower"]


def test_compute_aligns_timestamps_with_window_end():
    engine = IndicatorEngine(specs=(IndicatorSpec(IndicatorKind.SMA, 3),))
    prices = [SeriesPoint(float(i), float(i + 1)) for i in range(5)]

    lines = engine.compute(prices)

    assert [p.timestamp for p in lines["SMA 3"]] == [2.0, 3.0, 4.0]
    assert [p.value for p in lines["SMA 3"]] == pytest.approx([2.0, 3.0, 4.0])


def test_incremental_matches_naive_before_window_slides():
    engine = IndicatorEngine(max_points=200)
    prices = _prices(150)
    for point in prices:
        engine.update(point)

    _assert_lines_equal(engine.lines(), engine.compute(prices))


def test_incremental_matches_naive_across_eviction():
    max_points = 60
    engine = IndicatorEngine(max_points=max_points)
    prices = _prices(250)
    for point in prices:
        engine.update(point)

    _assert_lines_equal(engine.lines(), engine.compute(prices[-max_points:]))


def test_incremental_bollinger_stays_symmetric_across_eviction():
    engine = IndicatorEngine(max_points=60)
    for point in _prices(250, seed=9):
        engine.update(point)

    lines = engine.lines()
    upper, middle, lower = lines["BB Upper"], lines["BB Middle"], lines["BB Lower"]

    assert len(middle) == 41
    for u, m, l in zip(upper, middle, lower):
        assert u.timestamp == m.timestamp == l.timestamp
        assert u.value - m.value == pytest.approx(m.value - l.value, rel=1e-9, abs=1e-12)


def test_naive_mode_recomputes_on_read():
    engine = IndicatorEngine(max_points=50, incremental=False)
    prices = _prices(80)
    for point in prices:
        engine.update(point)

    _assert_lines_equal(engine.lines(), engine.compute(prices[-50:]))
    assert engine.recomputes == 1


def test_reset_replays_prices():
    engine = IndicatorEngine(max_points=100)
    for point in _prices(40, seed=1):
        engine.update(point)

    fresh = _prices(30, seed=2)
    engine.reset(fresh)

    _assert_lines_equal(engine.lines(), engine.compute(fresh))


def test_refresh_replaces_chart_overlays():
    chart = ChartState(max_points=100)
    engine = IndicatorEngine(max_points=100)
    for point in _prices(30):
        chart.append_price(point)
        engine.update(point)

    engine.refresh(chart)

    assert len(chart.series("SMA 20")) == 11
    assert len(chart.series("EMA 12")) == 19
    assert len(chart.series("BB Upper")) == 11


def test_from_config_uses_configured_periods():
    engine = IndicatorEngine.from_config(ChartConfig(sma_period=5, ema_period=8, bollinger_period=10, bollinger_k=1.5))
    assert engine.line_names[:2] == ["SMA 5", "EMA 8"]
    assert engine.specs[2].k == 1.5


def test_insights_need_enough_prices():
    engine = IndicatorEngine()
    for point in _prices(5):
        engine.update(point)
    assert engine.insights() is None
