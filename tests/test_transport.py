import asyncio
import json
import random

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from trademaster.core.errors import ExecutionError, TransportError
from trademaster.core.transport import (
    AccountSnapshot,
    ExecutionEvent,
    ExecutionType,
    OrderSpec,
    Position,
    Quote,
    SimulatedTransport,
    TradeSide,
    WebSocketTransport
)


# Data model

def test_trade_side_parse():
    assert TradeSide.parse("LONG") == TradeSide.BUY
    assert TradeSide.parse("sell") == TradeSide.SELL
    assert TradeSide.BUY.opposite == TradeSide.SELL
    with pytest.raises(ValueError):
        TradeSide.parse("hold")


def test_quote_from_dict_converts_milliseconds():
    quote = Quote.from_dict({"symbol": "EURUSD", "bid": 1.085, "ask": 1.0852, "timestamp": 1700000000000})
    assert quote.timestamp == 1700000000.0
    assert quote.spread == pytest.approx(0.0002)


def test_host_payloads_use_camel_case():
    account = AccountSnapshot.from_dict({"balance": 1000, "equity": 1010, "margin": 50, "freeMargin": 960})
    assert account.free_margin == 960.0

    position = Position.from_dict({
        "id": 7, "symbol": "EURUSD", "side": "BUY", "volume": 0.1,
        "entryPrice": 1.08, "stopLoss": 1.07
    })
    assert position.id == "7"
    assert position.current_price == 1.08
    assert position.stop_loss == 1.07

    event = ExecutionEvent.from_dict({"type": "POSITION_CLOSED", "sequence": 3, "positionId": "7", "remainingVolume": 0})
    assert event.type == ExecutionType.POSITION_CLOSED
    assert event.remaining_volume == 0.0


def test_order_spec_wire_format():
    spec = OrderSpec(symbol="EURUSD", side=TradeSide.SELL, volume=0.5, stop_loss=1.09)
    assert spec.to_dict() == {
        "symbol": "EURUSD",
        "orderType": "MARKET",
        "tradeSide": "sell",
        "volume": 0.5,
        "stopLoss": 1.09,
    }


# Simulated host

@pytest.fixture
def sim():
    return SimulatedTransport(quote_interval=0, rng=random.Random(5))


@pytest.mark.asyncio
async def test_simulated_requires_connection(sim):
    with pytest.raises(TransportError):
        await sim.get_account()


@pytest.mark.asyncio
async def test_simulated_fill_emits_execution_and_account(sim):
    await sim.connect()
    executions = []
    accounts = []
    sim.events.execution.subscribe(executions.append)
    sim.events.account.subscribe(accounts.append)

    result = await sim.create_order(OrderSpec(symbol="EURUSD", side=TradeSide.BUY, volume=0.1))

    assert result.order_id == "ORD-1"
    assert executions[0].type == ExecutionType.ORDER_FILLED
    assert executions[0].position.id == result.position_id
    assert accounts[-1].margin > 0
    assert len(await sim.get_positions()) == 3


@pytest.mark.asyncio
async def test_simulated_partial_then_full_close(sim):
    await sim.connect()
    sim.push_quote("EURUSD", 1.0855, 1.08565)

    partial = await sim.close_position("SIM-1001", 0.04)
    assert partial.remaining_volume == pytest.approx(0.06)
    assert partial.profit == pytest.approx(0.04 * 100000 * (1.0855 - 1.0845))

    full = await sim.close_position("SIM-1001")
    assert full.remaining_volume == 0.0
    assert "SIM-1001" not in sim.positions

    with pytest.raises(ExecutionError):
        await sim.close_position("SIM-1001")


@pytest.mark.asyncio
async def test_simulated_rejection(sim):
    await sim.connect()
    sim.reject_orders = "Market closed"
    executions = []
    sim.events.execution.subscribe(executions.append)

    with pytest.raises(ExecutionError):
        await sim.create_order(OrderSpec(symbol="EURUSD", side=TradeSide.BUY, volume=0.1))
    assert executions[0].type == ExecutionType.ORDER_REJECTED
    assert executions[0].reason == "Market closed"


@pytest.mark.asyncio
async def test_simulated_history_is_bounded(sim):
    await sim.connect()
    candles = await sim.get_history("EURUSD", "M5", 200)

    assert len(candles) == 200
    assert all(c.timestamp < candles[i + 1].timestamp for i, c in enumerate(candles[:-1]))
    assert all(1.0850 * 0.97 < c.close < 1.0850 * 1.03 for c in candles)


@pytest.mark.asyncio
async def test_simulated_quote_loop_ticks_subscribed_symbols():
    sim = SimulatedTransport(quote_interval=0.01, rng=random.Random(2))
    quotes = []
    sim.events.quote.subscribe(quotes.append)
    await sim.connect()
    await sim.subscribe_quotes(["EURUSD"])

    await asyncio.sleep(0.05)
    await sim.disconnect()

    assert quotes
    assert {q.symbol for q in quotes} == {"EURUSD"}


# WebSocket bridge

async def _bridge(request):
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    async for msg in ws:
        frame = json.loads(msg.data)
        request_type = frame["type"]
        if request_type == "register":
            await ws.send_json({"id": frame["id"], "ok": True, "result": {"clientName": frame["payload"]["clientName"]}})
        elif request_type == "getAccount":
            await ws.send_json({"id": frame["id"], "ok": True, "result": {
                "balance": 5000, "equity": 5000, "margin": 0, "freeMargin": 5000
            }})
        elif request_type == "subscribeQuotes":
            await ws.send_json({"id": frame["id"], "ok": True, "result": None})
            await ws.send_json({"event": "quote", "data": {
                "symbol": "EURUSD", "bid": 1.085, "ask": 1.0852, "timestamp": 1700000000000
            }})
        elif request_type == "closePosition":
            # Host reports only what it closed
            closed = frame["payload"].get("volume", 0.1)
            await ws.send_json({"id": frame["id"], "ok": True, "result": {"closedVolume": closed, "profit": 3.5}})
        elif request_type == "createOrder":
            await ws.send_json({"id": frame["id"], "ok": False, "error": "Market closed"})
        elif request_type == "ping":
            pass  # never answered
    return ws


@pytest_asyncio.fixture
async def bridge_url():
    app = web.Application()
    app.router.add_get("/ws", _bridge)
    server = TestServer(app)
    await server.start_server()
    yield str(server.make_url("/ws"))
    await server.close()


@pytest.mark.asyncio
async def test_websocket_request_response_and_events(bridge_url):
    transport = WebSocketTransport(bridge_url, request_timeout=1.0)
    quotes = []
    transport.events.quote.subscribe(quotes.append)

    await transport.connect()
    registration = await transport.register("TradeMaster")
    account = await transport.get_account()
    await transport.subscribe_quotes(["EURUSD"])
    await asyncio.sleep(0.05)

    assert registration == {"clientName": "TradeMaster"}
    assert account.free_margin == 5000.0
    assert quotes[0].timestamp == 1700000000.0

    with pytest.raises(ExecutionError, match="Market closed"):
        await transport.create_order(OrderSpec(symbol="EURUSD", side=TradeSide.BUY, volume=0.1))

    await transport.disconnect()


@pytest.mark.asyncio
async def test_websocket_request_timeout(bridge_url):
    transport = WebSocketTransport(bridge_url, request_timeout=0.05)
    await transport.connect()

    with pytest.raises(TransportError):
        await transport.ping()
    await transport.disconnect()


@pytest.mark.asyncio
async def test_websocket_connect_failure():
    transport = WebSocketTransport("http://127.0.0.1:9/ws", request_timeout=0.5)
    with pytest.raises(TransportError):
        await transport.connect()
    await transport.disconnect()


@pytest.mark.asyncio
async def test_websocket_close_without_remaining_volume(bridge_url):
    transport = WebSocketTransport(bridge_url, request_timeout=1.0)
    await transport.connect()

    partial = await transport.close_position("P1", 0.05)
    full = await transport.close_position("P2")

    assert partial.closed_volume == 0.05
    assert partial.remaining_volume is None
    assert partial.profit == 3.5
    assert full.remaining_volume == 0.0
    await transport.disconnect()
