"""
Host Platform Transport
Data model, the abstract transport contract, and its two bindings:
a simulated in-memory host and a WebSocket bridge client
"""

import json
import time
import asyncio
import random
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace, asdict
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

import aiohttp

from .errors import TransportError, ExecutionError
from .events import EventChannel
from ..utils.config_loader import TIMEFRAME_MINUTES

logger = logging.getLogger(__name__)


class TradeSide(Enum):
    """Order / position direction"""
    BUY = "buy"
    SELL = "sell"

    @classmethod
    def parse(cls, value: Any) -> "TradeSide":
        if isinstance(value, TradeSide):
            return value
        text = str(value).strip().lower()
        if text in ("buy", "long"):
            return cls.BUY
        if text in ("sell", "short"):
            return cls.SELL
        raise ValueError(f"Unknown trade side: {value}")

    @property
    def opposite(self) -> "TradeSide":
        return TradeSide.SELL if self == TradeSide.BUY else TradeSide.BUY


class ExecutionType(Enum):
    """Execution event kinds reported by the host"""
    ORDER_FILLED = "ORDER_FILLED"
    POSITION_CLOSED = "POSITION_CLOSED"
    POSITION_MODIFIED = "POSITION_MODIFIED"
    ORDER_REJECTED = "ORDER_REJECTED"
    ORDER_CANCELLED = "ORDER_CANCELLED"


def _parse_time(value: Any) -> Optional[datetime]:
    """Accept datetimes, epoch seconds/milliseconds or ISO strings"""
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e11 else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _optional_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass
class Quote:
    """Bid/ask sample for a symbol; timestamp is host time in epoch seconds"""
    symbol: str
    bid: float
    ask: float
    timestamp: float
    spread: Optional[float] = None
    received_at: Optional[float] = None
    volume: Optional[float] = None

    def __post_init__(self):
        if self.spread is None:
            self.spread = self.ask - self.bid

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2

    @classmethod
    def from_dict(cls, data: Dict) -> "Quote":
        ts = data.get("timestamp")
        if ts is None:
            ts = time.time()
        elif ts > 1e11:
            ts = ts / 1000.0
        return cls(
            symbol=data["symbol"],
            bid=float(data["bid"]),
            ask=float(data["ask"]),
            timestamp=float(ts),
            volume=_optional_float(data.get("volume")),
        )


@dataclass
class AccountSnapshot:
    """Account balances; replaced wholesale on every update"""
    balance: float
    equity: float
    margin: float
    free_margin: float
    margin_level: float = 0.0
    profit: float = 0.0
    account_id: Optional[str] = None
    currency: str = "USD"

    @classmethod
    def from_dict(cls, data: Dict) -> "AccountSnapshot":
        return cls(
            balance=float(data.get("balance", 0)),
            equity=float(data.get("equity", 0)),
            margin=float(data.get("margin", 0)),
            free_margin=float(data.get("freeMargin", data.get("free_margin", 0))),
            margin_level=float(data.get("marginLevel", data.get("margin_level", 0))),
            profit=float(data.get("profit", 0)),
            account_id=data.get("id"),
            currency=data.get("currency", "USD"),
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class Position:
    """Open position as reported by the host"""
    id: str
    symbol: str
    side: TradeSide
    volume: float
    entry_price: float
    current_price: float
    profit: float = 0.0
    swap: float = 0.0
    commission: float = 0.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    open_time: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "Position":
        def pick(camel: str, snake: str, default=None):
            return data.get(camel, data.get(snake, default))

        entry = float(pick("entryPrice", "entry_price", 0))
        return cls(
            id=str(data["id"]),
            symbol=data["symbol"],
            side=TradeSide.parse(data["side"]),
            volume=float(data["volume"]),
            entry_price=entry,
            current_price=float(pick("currentPrice", "current_price", entry)),
            profit=float(data.get("profit", 0)),
            swap=float(data.get("swap", 0)),
            commission=float(data.get("commission", 0)),
            stop_loss=_optional_float(pick("stopLoss", "stop_loss")),
            take_profit=_optional_float(pick("takeProfit", "take_profit")),
            open_time=_parse_time(pick("openTime", "open_time")),
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "volume": self.volume,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "profit": self.profit,
            "swap": self.swap,
            "commission": self.commission,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "open_time": self.open_time.isoformat() if self.open_time else None,
        }


@dataclass
class SymbolInfo:
    name: str
    description: str = ""
    digits: int = 5
    pip_position: int = 4
    min_volume: float = 0.01
    max_volume: float = 100.0
    volume_step: float = 0.01

    @property
    def pip_size(self) -> float:
        return 10 ** -self.pip_position

    @classmethod
    def from_dict(cls, data: Dict) -> "SymbolInfo":
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            digits=int(data.get("digits", 5)),
            pip_position=int(data.get("pipPosition", data.get("pip_position", 4))),
            min_volume=float(data.get("minVolume", data.get("min_volume", 0.01))),
            max_volume=float(data.get("maxVolume", data.get("max_volume", 100.0))),
            volume_step=float(data.get("volumeStep", data.get("volume_step", 0.01))),
        )


@dataclass
class Candle:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_dict(cls, data: Dict) -> "Candle":
        return cls(
            timestamp=_parse_time(data["timestamp"]),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(data.get("volume", 0)),
        )


@dataclass
class ExecutionEvent:
    """
    Execution report pushed by the host

    ``sequence`` increases by one per event when the host supports it; events
    without a sequence number are applied as they arrive.
    """
    type: ExecutionType
    sequence: Optional[int] = None
    order_id: Optional[str] = None
    position_id: Optional[str] = None
    position: Optional[Position] = None
    remaining_volume: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_dict(cls, data: Dict) -> "ExecutionEvent":
        position = data.get("position")
        return cls(
            type=ExecutionType(data["type"]),
            sequence=data.get("sequence"),
            order_id=data.get("orderId"),
            position_id=data.get("positionId") or (position or {}).get("id"),
            position=Position.from_dict(position) if position else None,
            remaining_volume=_optional_float(data.get("remainingVolume")),
            stop_loss=_optional_float(data.get("stopLoss")),
            take_profit=_optional_float(data.get("takeProfit")),
            reason=data.get("reason"),
            timestamp=_parse_time(data.get("timestamp")) or datetime.now(timezone.utc),
        )


@dataclass
class OrderSpec:
    """Market order submitted to the host"""
    symbol: str
    side: TradeSide
    volume: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    order_type: str = "MARKET"

    def to_dict(self) -> Dict:
        data = {
            "symbol": self.symbol,
            "orderType": self.order_type,
            "tradeSide": self.side.value,
            "volume": self.volume,
        }
        if self.stop_loss is not None:
            data["stopLoss"] = self.stop_loss
        if self.take_profit is not None:
            data["takeProfit"] = self.take_profit
        return data


@dataclass
class OrderResult:
    order_id: str
    position_id: Optional[str] = None
    price: Optional[float] = None
    status: str = "FILLED"


@dataclass
class CloseResult:
    """
    Outcome of a close request

    ``remaining_volume`` is absolute, or None when the host did not report it
    for a partial close.
    """
    position_id: str
    closed_volume: float
    remaining_volume: Optional[float]
    price: Optional[float] = None
    profit: Optional[float] = None


class TransportEvents:
    """Event channels every transport publishes on"""

    def __init__(self):
        self.opened: EventChannel[None] = EventChannel("transport.opened")
        self.closed: EventChannel[str] = EventChannel("transport.closed")
        self.quote: EventChannel[Quote] = EventChannel("transport.quote")
        self.execution: EventChannel[ExecutionEvent] = EventChannel("transport.execution")
        self.account: EventChannel[AccountSnapshot] = EventChannel("transport.account")


class Transport(ABC):
    """
    Contract between the connection manager and a host platform binding

    Transport-level failures raise TransportError. Requests the host accepted
    but refused raise ExecutionError with the host's reason.
    """

    name = "transport"

    def __init__(self):
        self.events = TransportEvents()

    @abstractmethod
    async def connect(self) -> None:
        """Open the channel to the host"""

    @abstractmethod
    async def register(self, client_name: str) -> Dict:
        """Handshake: register this client and return the host's acknowledgement"""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the channel"""

    @abstractmethod
    async def subscribe_quotes(self, symbols: List[str]) -> None:
        pass

    @abstractmethod
    async def unsubscribe_quotes(self, symbols: List[str]) -> None:
        pass

    @abstractmethod
    async def get_account(self) -> AccountSnapshot:
        pass

    @abstractmethod
    async def get_positions(self) -> List[Position]:
        pass

    @abstractmethod
    async def get_symbols(self) -> List[SymbolInfo]:
        pass

    @abstractmethod
    async def create_order(self, spec: OrderSpec) -> OrderResult:
        pass

    @abstractmethod
    async def close_position(self, position_id: str, volume: Optional[float] = None) -> CloseResult:
        pass

    @abstractmethod
    async def modify_position(
        self,
        position_id: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None
    ) -> None:
        pass

    @abstractmethod
    async def ping(self) -> bool:
        pass

    async def get_history(self, symbol: str, timeframe: str, count: int = 100) -> List[Candle]:
        """Historical bars; bindings without history support return nothing"""
        return []


class WebSocketTransport(Transport):
    """
    JSON bridge to the host platform over a WebSocket

    Requests:  {"id": n, "type": "...", "payload": {...}}
    Responses: {"id": n, "ok": true, "result": ...} or {"id": n, "ok": false, "error": "..."}
    Events:    {"event": "quote" | "execution" | "account", "data": {...}}
    """

    name = "websocket"

    def __init__(
        self,
        url: str,
        request_timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None
    ):
        super().__init__()
        self.url = url
        self.request_timeout = request_timeout
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._listener: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._closing = False

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def connect(self) -> None:
        session = await self._get_session()
        self._closing = False
        try:
            self._ws = await session.ws_connect(self.url)
        except (aiohttp.ClientError, OSError) as e:
            raise TransportError(f"WebSocket connect failed: {e}") from e

        self._listener = asyncio.create_task(self._listen())
        logger.info(f"WebSocket connected to {self.url}")
        self.events.opened.publish(None)

    async def register(self, client_name: str) -> Dict:
        return await self._request("register", {"clientName": client_name}) or {}

    async def disconnect(self) -> None:
        self._closing = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        self._fail_pending("Connection closed")
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        logger.info("WebSocket closed")

    async def _request(self, request_type: str, payload: Optional[Dict] = None) -> Any:
        """Send a request frame and wait for the matching response"""
        if self._ws is None or self._ws.closed:
            raise TransportError("WebSocket not connected")

        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            await self._ws.send_json({"id": request_id, "type": request_type, "payload": payload or {}})
            return await asyncio.wait_for(future, self.request_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Request '{request_type}' timed out") from e
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise TransportError(f"Request '{request_type}' failed: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def _listen(self) -> None:
        """Read frames until the socket closes"""
        reason = "Connection closed by host"
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        self._dispatch(json.loads(msg.data))
                    except (ValueError, KeyError, TypeError) as e:
                        logger.warning(f"Malformed frame ignored: {e}")
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    reason = f"WebSocket error: {self._ws.exception()}"
                    logger.error(reason)
                    break
        finally:
            self._fail_pending(reason)
            if not self._closing:
                self.events.closed.publish(reason)

    def _dispatch(self, data: Dict) -> None:
        if "id" in data:
            future = self._pending.get(data["id"])
            if future is None or future.done():
                return
            if data.get("ok", False):
                future.set_result(data.get("result"))
            else:
                future.set_exception(ExecutionError(data.get("error") or "Request failed"))
            return

        event = data.get("event")
        payload = data.get("data") or {}
        if event == "quote":
            self.events.quote.publish(Quote.from_dict(payload))
        elif event == "execution":
            self.events.execution.publish(ExecutionEvent.from_dict(payload))
        elif event == "account":
            self.events.account.publish(AccountSnapshot.from_dict(payload))
        else:
            logger.debug(f"Unhandled event frame: {event}")

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError(reason))
        self._pending.clear()

    async def subscribe_quotes(self, symbols: List[str]) -> None:
        await self._request("subscribeQuotes", {"symbols": list(symbols)})

    async def unsubscribe_quotes(self, symbols: List[str]) -> None:
        await self._request("unsubscribeQuotes", {"symbols": list(symbols)})

    async def get_account(self) -> AccountSnapshot:
        return AccountSnapshot.from_dict(await self._request("getAccount"))

    async def get_positions(self) -> List[Position]:
        result = await self._request("getPositions") or []
        return [Position.from_dict(p) for p in result]

    async def get_symbols(self) -> List[SymbolInfo]:
        result = await self._request("getSymbols") or []
        return [SymbolInfo.from_dict(s) for s in result]

    async def get_history(self, symbol: str, timeframe: str, count: int = 100) -> List[Candle]:
        result = await self._request("getHistory", {"symbol": symbol, "timeframe": timeframe, "count": count}) or []
        return [Candle.from_dict(c) for c in result]

    async def create_order(self, spec: OrderSpec) -> OrderResult:
        result = await self._request("createOrder", spec.to_dict()) or {}
        return OrderResult(
            order_id=str(result.get("id", result.get("orderId", ""))),
            position_id=result.get("positionId"),
            price=_optional_float(result.get("price")),
            status=result.get("status", "FILLED"),
        )

    async def close_position(self, position_id: str, volume: Optional[float] = None) -> CloseResult:
        payload = {"positionId": position_id}
        if volume is not None:
            payload["volume"] = volume
        result = await self._request("closePosition", payload) or {}
        remaining = _optional_float(result.get("remainingVolume"))
        if remaining is None and volume is None:
            remaining = 0.0
        return CloseResult(
            position_id=position_id,
            closed_volume=float(result.get("closedVolume", volume or 0)),
            remaining_volume=remaining,
            price=_optional_float(result.get("price")),
            profit=_optional_float(result.get("profit")),
        )

    async def modify_position(
        self,
        position_id: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None
    ) -> None:
        payload = {"positionId": position_id}
        if stop_loss is not None:
            payload["stopLoss"] = stop_loss
        if take_profit is not None:
            payload["takeProfit"] = take_profit
        await self._request("modifyPosition", payload)

    async def ping(self) -> bool:
        await self._request("ping")
        return True


# Simulated host for development, demos and tests
class SimulatedTransport(Transport):
    """
    In-memory host platform

    Quotes follow a bounded random walk, orders fill immediately at the
    current bid/ask and every fill, close and amendment is reported through
    execution and account events just like a real host would.
    """

    name = "simulated"

    BASE_PRICES = {
        "EURUSD": 1.0850,
        "GBPUSD": 1.2650,
        "USDJPY": 149.50,
        "AUDUSD": 0.6550,
        "USDCHF": 0.8750,
        "USDCAD": 1.3650,
        "NZDUSD": 0.6050,
        "EURGBP": 0.8580,
    }

    def __init__(
        self,
        balance: float = 10000.0,
        leverage: float = 100,
        contract_size: float = 100000,
        quote_interval: float = 1.0,
        seed_positions: bool = True,
        rng: Optional[random.Random] = None
    ):
        super().__init__()
        self.balance = balance
        self.leverage = leverage
        self.contract_size = contract_size
        self.quote_interval = quote_interval
        self.rng = rng or random.Random()

        self.connected = False
        self.registered = False
        self.subscriptions: set = set()
        self.positions: Dict[str, Position] = {}
        self.prices: Dict[str, float] = dict(self.BASE_PRICES)

        # Failure injection
        self.fail_connect = False
        self.connect_delay = 0.0
        self.fail_ping = False
        self.reject_orders: Optional[str] = None

        self.calls: Dict[str, int] = {}
        self._sequence = 0
        self._ids = itertools.count(1)
        self._quote_task: Optional[asyncio.Task] = None

        if seed_positions:
            self._seed_positions()

    def _seed_positions(self) -> None:
        now = datetime.now(timezone.utc)
        for pos_id, symbol, side, volume, entry in (
            ("SIM-1001", "EURUSD", TradeSide.BUY, 0.1, 1.0845),
            ("SIM-1002", "GBPUSD", TradeSide.SELL, 0.05, 1.2650),
        ):
            position = Position(
                id=pos_id,
                symbol=symbol,
                side=side,
                volume=volume,
                entry_price=entry,
                current_price=entry,
                open_time=now - timedelta(hours=2),
            )
            self._mark(position)
            self.positions[pos_id] = position

    def _count(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    def _require_connection(self) -> None:
        if not self.connected:
            raise TransportError("Simulated host not connected")

    @staticmethod
    def pip_size(symbol: str) -> float:
        return 0.01 if "JPY" in symbol else 0.0001

    def _spread(self, symbol: str) -> float:
        return self.pip_size(symbol) * 1.5

    def bid_ask(self, symbol: str) -> tuple:
        mid = self.prices.get(symbol, 1.0)
        half = self._spread(symbol) / 2
        return mid - half, mid + half

    def _mark(self, position: Position) -> None:
        """Mark a position to market at the price it would close at"""
        bid, ask = self.bid_ask(position.symbol)
        position.current_price = bid if position.side == TradeSide.BUY else ask
        direction = 1 if position.side == TradeSide.BUY else -1
        position.profit = (
            (position.current_price - position.entry_price)
            * direction * position.volume * self.contract_size
        )

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _account(self) -> AccountSnapshot:
        profit = sum(p.profit for p in self.positions.values())
        margin = sum(
            p.volume * self.contract_size * p.entry_price / self.leverage
            for p in self.positions.values()
        )
        equity = self.balance + profit
        return AccountSnapshot(
            balance=self.balance,
            equity=equity,
            margin=margin,
            free_margin=equity - margin,
            margin_level=(equity / margin * 100) if margin > 0 else 0.0,
            profit=profit,
            account_id="SIM-ACCOUNT",
        )

    # Connection
    async def connect(self) -> None:
        self._count("connect")
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.fail_connect:
            raise TransportError("Simulated connection refused")
        self.connected = True
        self.events.opened.publish(None)

    async def register(self, client_name: str) -> Dict:
        self._count("register")
        self._require_connection()
        self.registered = True
        logger.info(f"Simulated host registered client '{client_name}'")
        return {"clientName": client_name, "accountId": "SIM-ACCOUNT"}

    async def disconnect(self) -> None:
        self._count("disconnect")
        self.connected = False
        self.registered = False
        self._stop_quotes()

    def drop_connection(self, reason: str = "Connection lost") -> None:
        """Simulate a host-initiated disconnect"""
        self.connected = False
        self.registered = False
        self._stop_quotes()
        self.events.closed.publish(reason)

    async def ping(self) -> bool:
        self._count("ping")
        self._require_connection()
        if self.fail_ping:
            raise TransportError("Heartbeat timeout")
        return True

    # Quotes
    async def subscribe_quotes(self, symbols: List[str]) -> None:
        self._count("subscribe_quotes")
        self._require_connection()
        self.subscriptions.update(symbols)
        if self.quote_interval > 0 and self._quote_task is None:
            self._quote_task = asyncio.create_task(self._quote_loop())

    async def unsubscribe_quotes(self, symbols: List[str]) -> None:
        self._count("unsubscribe_quotes")
        self.subscriptions.difference_update(symbols)

    def _stop_quotes(self) -> None:
        if self._quote_task is not None:
            self._quote_task.cancel()
            self._quote_task = None

    async def _quote_loop(self) -> None:
        while self.connected:
            await asyncio.sleep(self.quote_interval)
            for symbol in list(self.subscriptions):
                self.tick(symbol)

    def tick(self, symbol: str) -> Quote:
        """Advance the random walk one step and publish the quote"""
        base = self.BASE_PRICES.get(symbol, self.prices.get(symbol, 1.0))
        price = self.prices.get(symbol, base)
        price += self.rng.gauss(0, self.pip_size(symbol) * 2)
        self.prices[symbol] = min(max(price, base * 0.975), base * 1.025)
        bid, ask = self.bid_ask(symbol)
        return self.push_quote(symbol, bid, ask, volume=self.rng.uniform(250, 750))

    def push_quote(
        self,
        symbol: str,
        bid: float,
        ask: float,
        timestamp: Optional[float] = None,
        volume: Optional[float] = None
    ) -> Quote:
        """Publish an explicit quote and mark open positions to it"""
        self.prices[symbol] = (bid + ask) / 2
        for position in self.positions.values():
            if position.symbol == symbol:
                self._mark(position)

        quote = Quote(
            symbol=symbol,
            bid=bid,
            ask=ask,
            timestamp=timestamp if timestamp is not None else time.time(),
            volume=volume,
        )
        self.events.quote.publish(quote)
        return quote

    # Account data
    async def get_account(self) -> AccountSnapshot:
        self._count("get_account")
        self._require_connection()
        return self._account()

    async def get_positions(self) -> List[Position]:
        self._count("get_positions")
        self._require_connection()
        return [replace(p) for p in self.positions.values()]

    async def get_symbols(self) -> List[SymbolInfo]:
        self._count("get_symbols")
        self._require_connection()
        return [
            SymbolInfo(
                name=name,
                description=f"{name[:3]}/{name[3:]}",
                digits=3 if "JPY" in name else 5,
                pip_position=2 if "JPY" in name else 4,
            )
            for name in self.BASE_PRICES
        ]

    async def get_history(self, symbol: str, timeframe: str, count: int = 100) -> List[Candle]:
        """Random-walk bars ending at the current price"""
        self._count("get_history")
        self._require_connection()
        base = self.BASE_PRICES.get(symbol, self.prices.get(symbol, 1.0))
        low_bound, high_bound = base * 0.977, base * 1.023
        step = timedelta(minutes=TIMEFRAME_MINUTES.get(timeframe, 5))
        now = datetime.now(timezone.utc)

        candles = []
        price = base
        for i in range(count):
            open_price = price
            price = min(max(price + (self.rng.random() - 0.5) * base * 0.002, low_bound), high_bound)
            wick = abs(self.rng.gauss(0, base * 0.0002))
            candles.append(Candle(
                timestamp=now - step * (count - i),
                open=open_price,
                high=max(open_price, price) + wick,
                low=min(open_price, price) - wick,
                close=price,
                volume=self.rng.uniform(500, 1500),
            ))
        return candles

    # Orders
    async def create_order(self, spec: OrderSpec) -> OrderResult:
        self._count("create_order")
        self._require_connection()

        if self.reject_orders:
            self.events.execution.publish(ExecutionEvent(
                type=ExecutionType.ORDER_REJECTED,
                sequence=self._next_sequence(),
                reason=self.reject_orders,
            ))
            raise ExecutionError(self.reject_orders)

        bid, ask = self.bid_ask(spec.symbol)
        price = ask if spec.side == TradeSide.BUY else bid
        n = next(self._ids)
        order_id = f"ORD-{n}"
        position = Position(
            id=f"SIM-{2000 + n}",
            symbol=spec.symbol,
            side=spec.side,
            volume=spec.volume,
            entry_price=price,
            current_price=price,
            stop_loss=spec.stop_loss,
            take_profit=spec.take_profit,
            open_time=datetime.now(timezone.utc),
        )
        self._mark(position)
        self.positions[position.id] = position

        logger.info(f"Simulated {spec.side.value} order: {spec.volume} {spec.symbol} @ {price:.5f}")
        self.events.execution.publish(ExecutionEvent(
            type=ExecutionType.ORDER_FILLED,
            sequence=self._next_sequence(),
            order_id=order_id,
            position_id=position.id,
            position=replace(position),
        ))
        self.events.account.publish(self._account())
        return OrderResult(order_id=order_id, position_id=position.id, price=price)

    async def close_position(self, position_id: str, volume: Optional[float] = None) -> CloseResult:
        self._count("close_position")
        self._require_connection()

        position = self.positions.get(position_id)
        if position is None:
            raise ExecutionError(f"Position {position_id} not found")

        close_volume = position.volume if volume is None else volume
        if close_volume <= 0 or close_volume > position.volume + 1e-9:
            raise ExecutionError(f"Invalid close volume {close_volume}")

        self._mark(position)
        realized = position.profit * close_volume / position.volume
        remaining = round(position.volume - close_volume, 8)
        self.balance += realized

        if remaining <= 0:
            del self.positions[position_id]
            remaining = 0.0
        else:
            position.volume = remaining
            self._mark(position)

        self.events.execution.publish(ExecutionEvent(
            type=ExecutionType.POSITION_CLOSED,
            sequence=self._next_sequence(),
            position_id=position_id,
            remaining_volume=remaining,
        ))
        self.events.account.publish(self._account())
        return CloseResult(
            position_id=position_id,
            closed_volume=close_volume,
            remaining_volume=remaining,
            price=position.current_price,
            profit=realized,
        )

    async def modify_position(
        self,
        position_id: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None
    ) -> None:
        self._count("modify_position")
        self._require_connection()

        position = self.positions.get(position_id)
        if position is None:
            raise ExecutionError(f"Position {position_id} not found")

        if stop_loss is not None:
            position.stop_loss = stop_loss
        if take_profit is not None:
            position.take_profit = take_profit

        self.events.execution.publish(ExecutionEvent(
            type=ExecutionType.POSITION_MODIFIED,
            sequence=self._next_sequence(),
            position_id=position_id,
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
        ))
