"""
Connection Manager
Owns the lifecycle of the host connection: connect, handshake, heartbeat,
quote subscriptions and reconnection with backoff
"""

import time
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import logging

from .errors import TradingError, TransportError, ConnectionTimeout
from .events import EventChannel
from .transport import (
    Transport,
    Quote,
    ExecutionEvent,
    AccountSnapshot,
    Position,
    SymbolInfo,
    Candle,
    OrderSpec,
    OrderResult,
    CloseResult
)
from ..utils.config_loader import ConnectionConfig

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection lifecycle states"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


# DISCONNECTED is reachable from every state (manual disconnect)
_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.HANDSHAKING, ConnectionState.RECONNECTING},
    ConnectionState.HANDSHAKING: {ConnectionState.CONNECTED, ConnectionState.RECONNECTING},
    ConnectionState.CONNECTED: {ConnectionState.RECONNECTING},
    ConnectionState.RECONNECTING: {ConnectionState.CONNECTING, ConnectionState.FAILED},
    ConnectionState.FAILED: {ConnectionState.CONNECTING},
}


@dataclass
class ConnectionStatus:
    """Published on every state change"""
    state: ConnectionState
    previous: ConnectionState
    attempt: int = 0
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class SessionSnapshot:
    """Initial data loaded right after the handshake"""
    account: AccountSnapshot
    positions: List[Position]
    symbols: List[SymbolInfo]
    registration: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class BackoffPolicy:
    """
    Exponential reconnect delay

    delay(n) = base_delay * multiplier ** (n - 1), capped at max_delay.
    A multiplier of 1.0 gives a fixed interval.
    """
    base_delay: float = 5.0
    multiplier: float = 2.0
    max_delay: float = 60.0

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * self.multiplier ** max(attempt - 1, 0), self.max_delay)


class ConnectionManager:
    """
    Connection Manager

    The only component that sets the connection state and the only one that
    decides about reconnection. Every transport failure, whether a failed
    connect attempt or a host-initiated disconnect, goes through
    ``_handle_transport_error``.
    """

    def __init__(
        self,
        transport: Transport,
        client_name: str = "TradeMaster",
        connect_timeout: float = 30.0,
        heartbeat_interval: float = 30.0,
        max_reconnect_attempts: int = 5,
        backoff: Optional[BackoffPolicy] = None
    ):
        self.transport = transport
        self.client_name = client_name
        self.connect_timeout = connect_timeout
        self.heartbeat_interval = heartbeat_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.backoff = backoff or BackoffPolicy()

        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self.registration: Dict[str, Any] = {}
        self.account: Optional[AccountSnapshot] = None
        self.symbols: Dict[str, SymbolInfo] = {}
        self.last_symbol: Optional[str] = None
        self.last_heartbeat: Optional[float] = None
        self.connected_at: Optional[datetime] = None

        self._symbol_refs: Dict[str, int] = {}
        self._reconnect_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

        self.stats = {
            "connects": 0,
            "disconnects": 0,
            "reconnect_attempts": 0,
            "heartbeat_failures": 0,
            "transport_errors": 0,
        }

        # Outbound channels
        self.status: EventChannel[ConnectionStatus] = EventChannel("connection.status")
        self.quotes: EventChannel[Quote] = EventChannel("connection.quotes")
        self.executions: EventChannel[ExecutionEvent] = EventChannel("connection.executions")
        self.account_updates: EventChannel[AccountSnapshot] = EventChannel("connection.account")
        self.session: EventChannel[SessionSnapshot] = EventChannel("connection.session")
        self.errors: EventChannel[TradingError] = EventChannel("connection.errors")

        events = transport.events
        events.closed.subscribe(self._on_transport_closed)
        events.quote.subscribe(self.quotes.publish)
        events.execution.subscribe(self.executions.publish)
        events.account.subscribe(self._on_account)

    @classmethod
    def from_config(cls, transport: Transport, config: ConnectionConfig) -> "ConnectionManager":
        return cls(
            transport=transport,
            client_name=config.client_name,
            connect_timeout=config.connect_timeout_ms / 1000,
            heartbeat_interval=config.heartbeat_interval_ms / 1000,
            max_reconnect_attempts=config.max_reconnect_attempts,
            backoff=BackoffPolicy(
                base_delay=config.reconnect_interval_ms / 1000,
                multiplier=config.backoff_multiplier,
                max_delay=config.max_reconnect_delay_ms / 1000
            )
        )

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def active_symbols(self) -> List[str]:
        return list(self._symbol_refs)

    def _set_state(self, new_state: ConnectionState, reason: Optional[str] = None) -> None:
        if new_state == self.state:
            return
        if new_state != ConnectionState.DISCONNECTED and new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal connection transition {self.state.value} -> {new_state.value}")

        previous = self.state
        self.state = new_state
        suffix = f" ({reason})" if reason else ""
        logger.info(f"Connection {previous.value} -> {new_state.value}{suffix}")

        self.status.publish(ConnectionStatus(
            state=new_state,
            previous=previous,
            attempt=self.attempts,
            reason=reason
        ))

    # Lifecycle
    async def connect(self) -> bool:
        """
        Connect and register with the host

        A manual connect from DISCONNECTED or FAILED starts a fresh attempt
        budget. Failures are handed to the reconnection path.

        Returns:
            True if the session reached CONNECTED
        """
        if self.state in (ConnectionState.CONNECTING, ConnectionState.HANDSHAKING, ConnectionState.CONNECTED):
            logger.warning(f"Connect ignored, already {self.state.value}")
            return self.is_connected

        if self.state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
            self.attempts = 0
        await self._cancel_task(self._reconnect_task)
        self._reconnect_task = None

        return await self._attempt()

    async def _attempt(self) -> bool:
        self._set_state(ConnectionState.CONNECTING)
        self.stats["connects"] += 1

        try:
            await asyncio.wait_for(self._open_and_register(), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            await self._close_transport_quietly()
            self._handle_transport_error(
                ConnectionTimeout(f"Connect timed out after {self.connect_timeout:.1f}s")
            )
            return False
        except TransportError as e:
            self._handle_transport_error(e)
            return False
        except TradingError as e:
            # Host answered but refused the client; the channel is open
            await self._close_transport_quietly()
            self._handle_transport_error(TransportError(f"Registration refused: {e}"))
            return False

        # A manual disconnect may have landed while we were waiting
        if self.state != ConnectionState.HANDSHAKING:
            await self._close_transport_quietly()
            return False

        self.attempts = 0
        self.connected_at = datetime.now(timezone.utc)
        self._set_state(ConnectionState.CONNECTED)
        self._start_heartbeat()
        await self._on_connected()
        return self.is_connected

    async def _open_and_register(self) -> None:
        await self.transport.connect()
        if self.state != ConnectionState.CONNECTING:
            return
        self._set_state(ConnectionState.HANDSHAKING)
        self.registration = await self.transport.register(self.client_name) or {}

    async def _on_connected(self) -> None:
        """Initial data load and resubscription after the handshake"""
        try:
            account = await self.transport.get_account()
            positions = await self.transport.get_positions()
            symbols = await self.transport.get_symbols()
        except TradingError as e:
            logger.error(f"Initial data load failed: {e}")
            self.errors.publish(e)
            return

        if not self.is_connected:
            return

        self.account = account
        self.symbols = {s.name: s for s in symbols}
        logger.info(
            f"Session ready: balance={account.balance:.2f} "
            f"positions={len(positions)} symbols={len(symbols)}"
        )
        self.account_updates.publish(account)
        self.session.publish(SessionSnapshot(
            account=account,
            positions=positions,
            symbols=symbols,
            registration=self.registration
        ))

        active = self.active_symbols
        if active:
            try:
                await self.transport.subscribe_quotes(active)
                logger.info(f"Resubscribed to {active}")
            except TransportError as e:
                logger.error(f"Resubscribe failed: {e}")
                self.errors.publish(e)

    def _handle_transport_error(self, error: TransportError) -> None:
        """Single failure path: count the attempt, then retry or give up"""
        if self.state == ConnectionState.DISCONNECTED:
            return

        self.stats["transport_errors"] += 1
        self.errors.publish(error)
        self._stop_heartbeat()

        self.attempts += 1
        self._set_state(ConnectionState.RECONNECTING, str(error))

        if self.attempts >= self.max_reconnect_attempts:
            logger.error(f"Max reconnection attempts reached ({self.max_reconnect_attempts})")
            self._set_state(ConnectionState.FAILED, str(error))
            return

        delay = self.backoff.delay(self.attempts)
        logger.info(
            f"Reconnection attempt {self.attempts}/{self.max_reconnect_attempts} in {delay:.1f}s"
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.state != ConnectionState.RECONNECTING:
            return
        self.stats["reconnect_attempts"] += 1
        await self._attempt()

    def _on_transport_closed(self, reason: str) -> None:
        if self.state != ConnectionState.CONNECTED:
            logger.debug(f"Transport closed while {self.state.value}, ignored: {reason}")
            return
        self.stats["disconnects"] += 1
        self._handle_transport_error(TransportError(f"Transport disconnected: {reason}"))

    def _on_account(self, snapshot: AccountSnapshot) -> None:
        self.account = snapshot
        self.account_updates.publish(snapshot)

    async def disconnect(self, reason: str = "Manual disconnect") -> None:
        """Disconnect from any state, cancelling reconnect and heartbeat timers"""
        previous = self.state
        self._set_state(ConnectionState.DISCONNECTED, reason)
        self.attempts = 0

        await self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        await self._cancel_task(self._heartbeat_task)
        self._heartbeat_task = None

        if previous != ConnectionState.DISCONNECTED:
            await self._close_transport_quietly()

    async def _close_transport_quietly(self) -> None:
        try:
            await self.transport.disconnect()
        except Exception as e:
            logger.warning(f"Transport disconnect raised: {e}")

    @staticmethod
    async def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # Heartbeat
    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        if self.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self) -> None:
        """Ping while connected; failures are soft and never change state"""
        while self.is_connected:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.is_connected:
                break
            try:
                await self.transport.ping()
                self.last_heartbeat = time.time()
            except Exception as e:
                self.stats["heartbeat_failures"] += 1
                logger.warning(f"Heartbeat failed: {e}")

    # Quote subscriptions
    async def subscribe(self, symbol: str) -> None:
        """Register interest in a symbol; the host is told on first interest only"""
        symbol = symbol.upper()
        count = self._symbol_refs.get(symbol, 0)
        self._symbol_refs[symbol] = count + 1
        self.last_symbol = symbol

        if count == 0 and self.is_connected:
            await self._call("subscribe_quotes", [symbol])
            logger.info(f"Subscribed to {symbol}")

    async def unsubscribe(self, symbol: str) -> bool:
        """
        Release interest in a symbol

        Returns:
            False if nobody was subscribed (no-op), True otherwise
        """
        symbol = symbol.upper()
        count = self._symbol_refs.get(symbol, 0)
        if count == 0:
            logger.debug(f"Unsubscribe {symbol}: no active subscription")
            return False

        if count > 1:
            self._symbol_refs[symbol] = count - 1
            return True

        del self._symbol_refs[symbol]
        if self.is_connected:
            await self._call("unsubscribe_quotes", [symbol])
            logger.info(f"Unsubscribed from {symbol}")
        return True

    # Transport calls
    async def _call(self, method: str, *args, **kwargs) -> Any:
        """Run a transport request; transport failures are reported in one place"""
        if not self.is_connected:
            raise TransportError(f"Not connected (state: {self.state.value})")
        try:
            return await getattr(self.transport, method)(*args, **kwargs)
        except TransportError as e:
            self.stats["transport_errors"] += 1
            logger.error(f"Transport call {method} failed: {e}")
            self.errors.publish(e)
            raise

    async def get_account(self) -> AccountSnapshot:
        account = await self._call("get_account")
        self._on_account(account)
        return account

    async def get_positions(self) -> List[Position]:
        return await self._call("get_positions")

    async def get_symbols(self) -> List[SymbolInfo]:
        symbols = await self._call("get_symbols")
        self.symbols = {s.name: s for s in symbols}
        return symbols

    async def get_history(self, symbol: str, timeframe: str, count: int = 100) -> List[Candle]:
        return await self._call("get_history", symbol, timeframe, count)

    async def create_order(self, spec: OrderSpec) -> OrderResult:
        return await self._call("create_order", spec)

    async def close_position(self, position_id: str, volume: Optional[float] = None) -> CloseResult:
        return await self._call("close_position", position_id, volume)

    async def modify_position(
        self,
        position_id: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None
    ) -> None:
        await self._call("modify_position", position_id, stop_loss, take_profit)

    def get_status(self) -> Dict:
        return {
            "state": self.state.value,
            "transport": self.transport.name,
            "attempts": self.attempts,
            "max_attempts": self.max_reconnect_attempts,
            "symbols": self.active_symbols,
            "last_heartbeat": self.last_heartbeat,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "stats": dict(self.stats),
        }
