"""
Trading Assistant
Builds every service from configuration, wires their channels together and
owns the streaming lifecycle
"""

import asyncio
import random
import signal
from typing import Dict, Optional, Set
import logging

from .chart_state import ChartState, RedrawScheduler, PRICE
from .confirmation import ConfirmationProvider
from .connection_manager import ConnectionManager, ConnectionStatus, SessionSnapshot
from .errors import TradingError
from .indicator_engine import IndicatorEngine
from .order_executor import OrderExecutor, ExecutionResult
from .performance_tracker import PerformanceTracker
from .position_registry import PositionRegistry
from .quote_stream import QuoteStream
from .risk_manager import RiskManager
from .transport import Quote, SimulatedTransport, Transport, WebSocketTransport
from ..utils.config_loader import ConfigManager, TIMEFRAME_MINUTES
from ..utils.logger import TradeLogger

logger = logging.getLogger(__name__)


def create_transport(config: ConfigManager, rng: Optional[random.Random] = None) -> Transport:
    """Pick the host transport named in the connection config"""
    connection = config.connection
    kind = connection.transport.lower()

    if kind == "websocket":
        if not connection.url:
            raise ValueError("WebSocket transport selected but no connection url configured")
        return WebSocketTransport(
            url=connection.url,
            request_timeout=connection.connect_timeout_ms / 1000
        )

    if kind == "simulated":
        simulation = config.simulation
        trading = config.trading
        return SimulatedTransport(
            balance=simulation.balance,
            leverage=trading.leverage,
            contract_size=trading.contract_size,
            quote_interval=simulation.quote_interval_ms / 1000,
            seed_positions=simulation.seed_positions,
            rng=rng
        )

    raise ValueError(f"Unknown transport '{connection.transport}'")


class TradingAssistant:
    """
    Trading Assistant

    Wiring:
    - connection quotes -> quote stream -> chart + indicators, registry marks
    - connection session -> registry reload (and first history load)
    - connection executions -> registry consumer task
    - redraw scheduler -> indicator overlays refreshed once per redraw
    - connection status and trade results -> trade log files
    """

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        transport: Optional[Transport] = None,
        confirmer: Optional[ConfirmationProvider] = None,
        trade_logger: Optional[TradeLogger] = None,
        rng: Optional[random.Random] = None
    ):
        self.config = config or ConfigManager()
        self.transport = transport or create_transport(self.config, rng)

        chart_config = self.config.chart
        trading_config = self.config.trading
        self.history_points = chart_config.history_points

        # Connection
        self.connection = ConnectionManager.from_config(self.transport, self.config.connection)

        # Market data
        self.chart = ChartState(
            max_points=chart_config.max_points,
            symbol=chart_config.default_symbol.upper(),
            timeframe=chart_config.default_timeframe
        )
        self.indicators = IndicatorEngine.from_config(chart_config)
        self.quotes = QuoteStream(chart=self.chart, indicators=self.indicators, rng=rng)
        self.redraw = RedrawScheduler(
            self.chart,
            interval=chart_config.redraw_interval_ms / 1000,
            before_redraw=self._before_redraw
        )

        # Trading
        self.positions = PositionRegistry(refresher=self.connection.get_positions)
        self.risk = RiskManager.from_config(self.config.risk, trading_config)
        self.tracker = PerformanceTracker()
        self.executor = OrderExecutor.from_config(
            trading_config,
            default_symbol=self.chart.symbol,
            connection=self.connection,
            quotes=self.quotes,
            positions=self.positions,
            risk=self.risk,
            tracker=self.tracker,
            confirmer=confirmer
        )

        # Trade log
        if trade_logger is None and self.config.logging.trade_log_dir:
            trade_logger = TradeLogger(self.config.logging.trade_log_dir)
        self.trade_logger = trade_logger

        self._wire()

        self.running = False
        self._history_task: Optional[asyncio.Task] = None

        logger.info(
            f"Trading assistant created ({self.transport.name} transport, "
            f"{self.chart.symbol} {self.chart.timeframe})"
        )

    def _wire(self) -> None:
        self.connection.quotes.subscribe(self._on_quote)
        self.connection.session.subscribe(self._on_session)
        self.connection.status.subscribe(self._on_status)
        self.executor.trade_results.subscribe(self._on_trade_result)

    # Channel handlers
    def _on_quote(self, quote: Quote) -> None:
        if self.quotes.handle_quote(quote):
            self.positions.mark_price(quote.symbol, quote.bid, quote.ask, self.risk.contract_size)

    def _on_session(self, snapshot: SessionSnapshot) -> None:
        self.positions.reload(snapshot.positions, new_session=True)
        if len(self.chart.price) == 0 and (self._history_task is None or self._history_task.done()):
            self._history_task = asyncio.create_task(self.load_history())

    def _on_status(self, status: ConnectionStatus) -> None:
        if self.trade_logger is None:
            return
        self.trade_logger.log_connection({
            "state": status.state.value,
            "previous": status.previous.value if status.previous else None,
            "attempt": status.attempt,
            "reason": status.reason,
        })

    def _on_trade_result(self, result: ExecutionResult) -> None:
        if self.trade_logger is not None:
            self.trade_logger.log_trade(result.to_dict())

    def _before_redraw(self, changed: Set[str]) -> None:
        if PRICE in changed:
            self.indicators.refresh(self.chart)

    # Lifecycle
    async def start(self) -> bool:
        """
        Connect, subscribe the chart symbol and start background work

        Returns:
            True if the connection reached CONNECTED; otherwise the
            connection manager keeps retrying in the background
        """
        if self.running:
            logger.warning("Trading assistant already running")
            return self.connection.is_connected

        logger.info("=" * 60)
        logger.info("TRADING ASSISTANT STARTING")
        logger.info(f"Symbol: {self.chart.symbol} {self.chart.timeframe}")
        logger.info(f"Transport: {self.transport.name}")
        logger.info("=" * 60)

        self.running = True
        self.positions.start(self.connection.executions)
        self.quotes.track(self.chart.symbol)
        await self.connection.subscribe(self.chart.symbol)

        connected = await self.connection.connect()
        if self._history_task is not None:
            await self._history_task

        await self.redraw.start()
        return connected

    async def stop(self) -> None:
        """Stop background work and disconnect"""
        logger.info("Stopping trading assistant...")
        self.running = False

        if self._history_task is not None and not self._history_task.done():
            self._history_task.cancel()
            try:
                await self._history_task
            except asyncio.CancelledError:
                pass
        self._history_task = None

        await self.redraw.stop()
        await self.positions.stop()
        await self.connection.disconnect("Assistant stopped")

        performance = self.tracker.get_stats()
        if self.trade_logger is not None:
            self.trade_logger.log_performance(performance)

        logger.info("=" * 60)
        logger.info("TRADING ASSISTANT STOPPED")
        logger.info(f"Total Trades: {performance['total_trades']}")
        logger.info(f"Win Rate: {performance['win_rate']:.1f}%")
        logger.info("=" * 60)

    async def run_assistant(self, install_signal_handlers: bool = True) -> None:
        """Stream until cancelled or interrupted"""
        await self.start()
        if install_signal_handlers:
            self._setup_signal_handlers()

        try:
            while self.running:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown handlers"""
        def handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown...")
            self.running = False

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

    # Chart
    async def load_history(self) -> int:
        """Load history bars for the chart symbol and rebuild the overlays"""
        symbol, timeframe = self.chart.symbol, self.chart.timeframe

        if not self.connection.is_connected:
            self.indicators.reset()
            return 0

        try:
            candles = await self.connection.get_history(symbol, timeframe, self.history_points)
        except TradingError as e:
            logger.error(f"History load failed for {symbol} {timeframe}: {e}")
            self.indicators.reset()
            return 0

        if (self.chart.symbol, self.chart.timeframe) != (symbol, timeframe):
            logger.debug(f"Discarding history for {symbol} {timeframe}, chart moved on")
            return 0

        count = self.chart.load_history(candles)
        self.indicators.reset(self.chart.price.points)
        self.indicators.refresh(self.chart)
        return count

    async def change_symbol(self, symbol: str) -> bool:
        """
        Switch the chart to another symbol

        Returns:
            False if the chart already shows that symbol
        """
        symbol = symbol.upper()
        previous = self.chart.symbol
        if symbol == previous:
            return False

        logger.info(f"Changing symbol {previous} -> {symbol}")
        self.quotes.untrack(previous)
        self.chart.reset(symbol=symbol)
        self.indicators.reset()
        self.executor.set_symbol(symbol)
        self.quotes.track(symbol)

        try:
            await self.connection.unsubscribe(previous)
            await self.connection.subscribe(symbol)
        except TradingError as e:
            logger.error(f"Quote subscription change failed: {e}")

        await self.load_history()
        return True

    async def change_timeframe(self, timeframe: str) -> bool:
        timeframe = timeframe.upper()
        if timeframe not in TIMEFRAME_MINUTES:
            raise ValueError(f"Unknown timeframe '{timeframe}'")
        if timeframe == self.chart.timeframe:
            return False

        logger.info(f"Changing timeframe {self.chart.timeframe} -> {timeframe}")
        self.chart.reset(timeframe=timeframe)
        self.indicators.reset()
        await self.load_history()
        return True

    # Status
    def get_status(self) -> Dict:
        account = self.connection.account
        return {
            "running": self.running,
            "connection": self.connection.get_status(),
            "account": account.to_dict() if account else None,
            "chart": self.chart.get_stats(),
            "indicators": self.indicators.get_stats(),
            "quotes": self.quotes.get_stats(),
            "positions": self.positions.get_stats(),
            "risk": self.risk.get_stats(),
            "execution": self.executor.get_stats(),
            "performance": self.tracker.get_stats(),
        }
