import pytest

from trademaster.core.performance_tracker import PerformanceTracker, PerformanceStats, TradeRecord


def _record(success=True, pnl=None, kind="open"):
    return TradeRecord(params={"symbol": "EURUSD"}, success=success, pnl=pnl, kind=kind)


def test_win_rule_prefers_pnl_over_success():
    assert _record(success=True).is_win
    assert not _record(success=False).is_win
    assert not _record(success=True, pnl=-5.0).is_win
    assert not _record(success=True, pnl=0.0).is_win
    assert _record(success=True, pnl=12.5).is_win


def test_record_params_are_read_only():
    params = {"symbol": "EURUSD"}
    record = TradeRecord(params=params, success=True)
    params["symbol"] = "GBPUSD"

    assert record.params["symbol"] == "EURUSD"
    with pytest.raises(TypeError):
        record.params["symbol"] = "USDJPY"


def test_streaks_and_extremes():
    tracker = PerformanceTracker()
    for record in (
        _record(pnl=10.0),
        _record(pnl=25.0),
        _record(pnl=-8.0),
        _record(success=False),
        _record(pnl=-30.0),
        _record(pnl=5.0),
    ):
        tracker.record(record)

    stats = tracker.stats
    assert stats.total_trades == 6
    assert stats.winning_trades == 3
    assert stats.losing_trades == 3
    assert stats.max_consecutive_wins == 2
    assert stats.max_consecutive_losses == 3
    assert stats.consecutive_wins == 1
    assert stats.consecutive_losses == 0
    assert stats.largest_win == 25.0
    assert stats.largest_loss == -30.0
    assert stats.gross_profit == pytest.approx(40.0)
    assert stats.gross_loss == pytest.approx(38.0)
    assert stats.net_pnl == pytest.approx(2.0)
    assert stats.win_rate == pytest.approx(50.0)


def test_replay_matches_incremental_stats():
    tracker = PerformanceTracker()
    outcomes = [3.0, None, -1.0, -2.0, None, 7.5, 0.0, -4.0, 2.0, 2.0]
    for i, pnl in enumerate(outcomes):
        tracker.record(_record(success=i % 3 != 1, pnl=pnl))

    assert tracker.replay() == tracker.stats
    assert PerformanceStats.replay(tracker.records).to_dict() == tracker.get_stats()


def test_empty_tracker_win_rate_is_zero():
    assert PerformanceTracker().get_stats()["win_rate"] == 0.0


def test_records_are_published_and_recent_is_bounded():
    tracker = PerformanceTracker()
    published = []
    tracker.records_added.subscribe(published.append)

    for i in range(15):
        tracker.record(_record(pnl=float(i)))

    assert len(published) == 15
    assert [r.pnl for r in tracker.recent(3)] == [12.0, 13.0, 14.0]
    assert len(tracker.records) == 15
