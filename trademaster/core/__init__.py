"""
Trading Assistant Core Module
"""

from .errors import (
    TradingError,
    TransportError,
    ConnectionTimeout,
    ValidationError,
    RiskRejection,
    ExecutionError,
    OperationInProgress
)
from .events import EventChannel, Subscription, OverflowPolicy
from .transport import (
    Transport,
    WebSocketTransport,
    SimulatedTransport,
    TradeSide,
    ExecutionType,
    Quote,
    AccountSnapshot,
    Position,
    SymbolInfo,
    Candle,
    ExecutionEvent,
    OrderSpec,
    OrderResult,
    CloseResult
)
from .connection_manager import (
    ConnectionManager,
    ConnectionState,
    ConnectionStatus,
    SessionSnapshot,
    BackoffPolicy
)
from .chart_state import ChartState, ChartUpdate, Series, SeriesPoint, RedrawScheduler
from .indicator_engine import IndicatorEngine, IndicatorSpec, IndicatorKind
from .quote_stream import QuoteStream
from .position_registry import PositionRegistry, PositionChange, CloseSummary
from .risk_manager import RiskManager, RiskCheck, TradeRequest
from .confirmation import (
    ConfirmationProvider,
    ConfirmationRequest,
    AutoConfirm,
    PendingConfirmations
)
from .performance_tracker import PerformanceTracker, PerformanceStats, TradeRecord
from .order_executor import OrderExecutor, ExecutionResult
from .trading_assistant import TradingAssistant, create_transport

__all__ = [
    # Errors
    "TradingError",
    "TransportError",
    "ConnectionTimeout",
    "ValidationError",
    "RiskRejection",
    "ExecutionError",
    "OperationInProgress",
    # Events
    "EventChannel",
    "Subscription",
    "OverflowPolicy",
    # Transport
    "Transport",
    "WebSocketTransport",
    "SimulatedTransport",
    "TradeSide",
    "ExecutionType",
    "Quote",
    "AccountSnapshot",
    "Position",
    "SymbolInfo",
    "Candle",
    "ExecutionEvent",
    "OrderSpec",
    "OrderResult",
    "CloseResult",
    # Connection
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "SessionSnapshot",
    "BackoffPolicy",
    # Chart
    "ChartState",
    "ChartUpdate",
    "Series",
    "SeriesPoint",
    "RedrawScheduler",
    "IndicatorEngine",
    "IndicatorSpec",
    "IndicatorKind",
    "QuoteStream",
    # Positions and Risk
    "PositionRegistry",
    "PositionChange",
    "CloseSummary",
    "RiskManager",
    "RiskCheck",
    "TradeRequest",
    # Execution
    "ConfirmationProvider",
    "ConfirmationRequest",
    "AutoConfirm",
    "PendingConfirmations",
    "OrderExecutor",
    "ExecutionResult",
    # Performance
    "PerformanceTracker",
    "PerformanceStats",
    "TradeRecord",
    # Main System
    "TradingAssistant",
    "create_transport"
]
