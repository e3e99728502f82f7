import asyncio
from unittest.mock import AsyncMock

import pytest

from trademaster.core.errors import ExecutionError
from trademaster.core.events import EventChannel
from trademaster.core.position_registry import PositionRegistry
from trademaster.core.transport import (
    CloseResult,
    ExecutionEvent,
    ExecutionType,
    Position,
    TradeSide
)


def _position(pid="P1", volume=1.0, profit=0.0, symbol="EURUSD", side=TradeSide.BUY):
    return Position(
        id=pid,
        symbol=symbol,
        side=side,
        volume=volume,
        entry_price=1.1,
        current_price=1.1,
        profit=profit
    )


def _filled(seq, position):
    return ExecutionEvent(type=ExecutionType.ORDER_FILLED, sequence=seq, position_id=position.id, position=position)


def _closed(seq, pid, remaining):
    return ExecutionEvent(type=ExecutionType.POSITION_CLOSED, sequence=seq, position_id=pid, remaining_volume=remaining)


@pytest.fixture
def registry():
    return PositionRegistry(refresher=AsyncMock(return_value=[]))


def test_reload_replaces_all_positions(registry):
    registry.reload([_position("P1"), _position("P2")])
    registry.reload([_position("P3")])

    assert [p.id for p in registry.all()] == ["P3"]
    assert "P1" not in registry


def test_reload_skips_empty_positions(registry):
    registry.reload([_position("P1", volume=0.0), _position("P2")])
    assert registry.count == 1


def test_fill_adds_position(registry):
    changes = []
    registry.changes.subscribe(changes.append)

    assert registry.apply_execution(_filled(1, _position("P1"))) is False

    assert registry.get("P1").volume == 1.0
    assert changes[-1].kind == "opened"


def test_stale_sequence_is_ignored(registry):
    registry.apply_execution(_filled(5, _position("P1")))

    assert registry.apply_execution(_closed(4, "P1", 0.0)) is False
    assert "P1" in registry
    assert registry.stats["stale_events"] == 1


def test_sequence_gap_requests_refresh(registry):
    registry.apply_execution(_filled(1, _position("P1")))

    assert registry.apply_execution(_filled(3, _position("P2"))) is True
    assert registry.last_sequence == 3
    assert registry.stats["sequence_gaps"] == 1


def test_fill_without_payload_requests_refresh(registry):
    event = ExecutionEvent(type=ExecutionType.ORDER_FILLED, sequence=1, position_id="P9")
    assert registry.apply_execution(event) is True


def test_modify_for_unknown_position_requests_refresh(registry):
    event = ExecutionEvent(type=ExecutionType.POSITION_MODIFIED, sequence=1, position_id="P9", stop_loss=1.0)
    assert registry.apply_execution(event) is True


def test_partial_close_result_and_event_are_idempotent(registry):
    registry.reload([_position("P1", volume=1.0, profit=100.0)])

    registry.apply_close_result(CloseResult(position_id="P1", closed_volume=0.4, remaining_volume=0.6))
    registry.apply_execution(_closed(1, "P1", 0.6))

    position = registry.get("P1")
    assert position.volume == pytest.approx(0.6)
    assert position.profit == pytest.approx(60.0)


def test_full_close_removes_and_late_event_is_harmless(registry):
    registry.reload([_position("P1")])

    registry.apply_close_result(CloseResult(position_id="P1", closed_volume=1.0, remaining_volume=0.0))
    assert "P1" not in registry
    assert registry.apply_execution(_closed(1, "P1", 0.0)) is False
    assert registry.count == 0


def test_no_position_with_zero_volume_is_stored(registry):
    registry.apply_execution(_filled(1, _position("P1", volume=0.0)))
    registry.reload([_position("P2")])
    registry.set_volume("P2", 0)

    assert registry.count == 0


def test_modify_result_updates_levels(registry):
    registry.reload([_position("P1")])
    registry.apply_modify_result("P1", stop_loss=1.09, take_profit=None)

    position = registry.get("P1")
    assert position.stop_loss == 1.09
    assert position.take_profit is None


def test_new_session_resets_sequence(registry):
    registry.apply_execution(_filled(40, _position("P1")))
    registry.reload([], new_session=True)

    assert registry.last_sequence is None
    assert registry.apply_execution(_filled(1, _position("P2"))) is False
    assert "P2" in registry


def test_mark_price_revalues_by_side(registry):
    registry.reload([
        _position("B", side=TradeSide.BUY),
        _position("S", side=TradeSide.SELL),
        _position("G", symbol="GBPUSD"),
    ])

    registry.mark_price("EURUSD", bid=1.101, ask=1.1012, contract_size=100000)

    assert registry.get("B").profit == pytest.approx(100.0)
    assert registry.get("S").profit == pytest.approx(-120.0)
    assert registry.get("G").profit == 0.0


@pytest.mark.asyncio
async def test_refresh_gap_triggers_single_reload():
    refresher = AsyncMock(return_value=[_position("P7")])
    registry = PositionRegistry(refresher=refresher)
    registry.apply_execution(_filled(1, _position("P1")))

    await registry.handle_execution(_filled(5, _position("P2")))

    refresher.assert_awaited_once()
    assert [p.id for p in registry.all()] == ["P7"]


@pytest.mark.asyncio
async def test_refresh_failure_keeps_current_state():
    registry = PositionRegistry(refresher=AsyncMock(side_effect=ExecutionError("host busy")))
    registry.reload([_position("P1")])

    assert await registry.refresh() is False
    assert "P1" in registry


@pytest.mark.asyncio
async def test_close_all_matching_continues_past_failures(registry):
    registry.reload([
        _position("P1", profit=10.0),
        _position("P2", profit=-5.0),
        _position("P3", profit=3.0),
        _position("P4", profit=7.0),
    ])

    class Result:
        def __init__(self, success, error=None):
            self.success = success
            self.error = error

    async def close(position_id):
        if position_id == "P1":
            raise ExecutionError("requote")
        if position_id == "P3":
            return Result(False, "market closed")
        registry.set_volume(position_id, 0)
        return Result(True)

    summary = await registry.close_all_matching(lambda p: p.profit > 0, close)

    assert summary.succeeded == 1
    assert summary.failed == 2
    assert summary.closed_ids == ["P4"]
    assert summary.message == "Closed 1 positions, 2 failed"
    assert sorted(p.id for p in registry.all()) == ["P1", "P2", "P3"]


@pytest.mark.asyncio
async def test_consumer_applies_events_in_order(registry):
    executions = EventChannel("executions")
    registry.start(executions)

    executions.publish(_filled(1, _position("P1", volume=1.0)))
    executions.publish(_closed(2, "P1", 0.25))
    executions.publish(_filled(3, _position("P2")))
    await asyncio.sleep(0.01)
    await registry.stop()

    assert registry.get("P1").volume == pytest.approx(0.25)
    assert "P2" in registry
    assert executions.subscriber_count == 0
