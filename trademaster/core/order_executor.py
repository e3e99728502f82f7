"""
Order Executor
Validates, risk-checks, confirms and submits orders; closes and amends
positions under a per-position in-flight guard
"""

import re
import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Set
import logging

from .confirmation import ConfirmationProvider, AutoConfirm
from .connection_manager import ConnectionManager
from .errors import (
    TradingError,
    ValidationError,
    RiskRejection,
    ExecutionError,
    OperationInProgress
)
from .events import EventChannel
from .performance_tracker import PerformanceTracker, TradeRecord
from .position_registry import PositionRegistry
from .quote_stream import QuoteStream
from .risk_manager import RiskManager, RiskCheck, TradeRequest
from .transport import OrderSpec, TradeSide
from ..utils.config_loader import TradingConfig

logger = logging.getLogger(__name__)

SYMBOL_PATTERN = re.compile(r"^[A-Z0-9._/]{6,}$")


@dataclass
class ExecutionResult:
    """Outcome of a trade, close or modify request"""
    success: bool
    order_id: Optional[str] = None
    position_id: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    cancelled: bool = False
    request: Optional[TradeRequest] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: TradingError, **kwargs) -> "ExecutionResult":
        return cls(success=False, error=str(error), error_type=error.error_type, **kwargs)

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "order_id": self.order_id,
            "position_id": self.position_id,
            "error": self.error,
            "error_type": self.error_type,
            "cancelled": self.cancelled,
            "request": self.request.to_dict() if self.request else None,
        }


class OrderExecutor:
    """
    Order Executor

    execute(side, params):
    1. build and validate the request; failures never reach the transport
    2. risk gate; a rejection is recorded as a failed trade
    3. confirmation above the volume threshold; a decline is a cancellation
    4. submit; positions change only when the host reports the execution
    5. transport failures are recorded and not retried
    """

    def __init__(
        self,
        connection: ConnectionManager,
        quotes: QuoteStream,
        positions: PositionRegistry,
        risk: RiskManager,
        tracker: PerformanceTracker,
        confirmer: Optional[ConfirmationProvider] = None,
        default_symbol: str = "EURUSD",
        default_volume: float = 0.01,
        min_volume: float = 0.01,
        max_volume: float = 100.0,
        volume_step: float = 0.01,
        confirmation_threshold: float = 1.0
    ):
        self.connection = connection
        self.quotes = quotes
        self.positions = positions
        self.risk = risk
        self.tracker = tracker
        # Large trades are declined unless a provider is supplied
        self.confirmer = confirmer or AutoConfirm(approve=False)

        self.current_symbol = default_symbol.upper()
        self.default_volume = default_volume
        self.min_volume = min_volume
        self.max_volume = max_volume
        self.volume_step = volume_step
        self.confirmation_threshold = confirmation_threshold

        self._in_flight: Set[str] = set()
        self.trade_results: EventChannel[ExecutionResult] = EventChannel("executor.results")

        self.stats = {
            "submitted": 0,
            "succeeded": 0,
            "failed": 0,
            "validation_failures": 0,
            "risk_rejections": 0,
            "cancelled": 0,
            "in_flight_rejections": 0,
        }

    @classmethod
    def from_config(cls, config: TradingConfig, default_symbol: str, **components) -> "OrderExecutor":
        return cls(
            default_symbol=default_symbol,
            default_volume=config.default_volume,
            min_volume=config.min_volume,
            max_volume=config.max_volume,
            volume_step=config.volume_step,
            confirmation_threshold=config.confirmation_threshold,
            **components
        )

    def set_symbol(self, symbol: str) -> None:
        self.current_symbol = symbol.upper()

    def is_in_flight(self, position_id: str) -> bool:
        return position_id in self._in_flight

    # Validation
    def build_request(self, side: Any, params: Optional[Dict] = None) -> TradeRequest:
        """Turn raw trade parameters into a priced request, or raise ValidationError"""
        params = params or {}
        errors: List[str] = []

        try:
            trade_side = TradeSide.parse(side)
        except ValueError:
            raise ValidationError([f"Invalid side '{side}'"])

        symbol = str(params.get("symbol") or self.current_symbol).upper()
        volume = self._to_float(params.get("volume", self.default_volume))
        if volume is not None:
            volume = self.normalize_volume(volume)
        stop_loss = self._to_float(params.get("stop_loss"))
        take_profit = self._to_float(params.get("take_profit"))

        if params.get("stop_loss") is not None and stop_loss is None:
            errors.append("Invalid stop loss level")
        if params.get("take_profit") is not None and take_profit is None:
            errors.append("Invalid take profit level")

        price = self.quotes.price_for(symbol, trade_side)

        request = TradeRequest(
            symbol=symbol,
            side=trade_side,
            volume=volume if volume is not None else 0.0,
            price=price if price is not None else 0.0,
            stop_loss=stop_loss,
            take_profit=take_profit
        )
        errors.extend(self.validate(request, has_price=price is not None))
        if errors:
            raise ValidationError(errors)
        return request

    def normalize_volume(self, volume: float) -> float:
        """Round to the nearest volume step; sub-step volumes are left for validation"""
        if self.volume_step <= 0 or volume <= 0:
            return volume
        steps = round(volume / self.volume_step)
        if steps == 0:
            return volume
        return round(steps * self.volume_step, 8)

    @staticmethod
    def _to_float(value: Any) -> Optional[float]:
        if value is None or value == "":
            return None
        try:
            result = float(value)
        except (TypeError, ValueError):
            return None
        return result if math.isfinite(result) else None

    def validate(self, request: TradeRequest, has_price: bool = True) -> List[str]:
        """Structural checks; returns every violation found"""
        errors = []

        if not SYMBOL_PATTERN.match(request.symbol):
            errors.append("Invalid symbol")

        if request.volume <= 0:
            errors.append("Invalid volume")
        elif request.volume < self.min_volume:
            errors.append(f"Volume below minimum ({self.min_volume:g})")
        elif request.volume > self.max_volume:
            errors.append(f"Volume above maximum ({self.max_volume:g})")

        if not has_price:
            errors.append(f"No quote available for {request.symbol}")
            return errors

        price = request.price
        is_buy = request.side == TradeSide.BUY
        if request.stop_loss is not None:
            if (is_buy and request.stop_loss >= price) or (not is_buy and request.stop_loss <= price):
                errors.append("Invalid stop loss level")
        if request.take_profit is not None:
            if (is_buy and request.take_profit <= price) or (not is_buy and request.take_profit >= price):
                errors.append("Invalid take profit level")

        return errors

    # Trading
    async def execute(self, side: Any, params: Optional[Dict] = None) -> ExecutionResult:
        """Run one trade attempt through validation, risk, confirmation and submission"""
        try:
            request = self.build_request(side, params)
        except ValidationError as e:
            self.stats["validation_failures"] += 1
            logger.warning(f"Trade validation failed: {e}")
            return self._finish(ExecutionResult.failure(e))

        logger.info(f"Executing {request.side.value} {request.volume} {request.symbol} @ {request.price:.5f}")

        check = self._check_risk(request)
        if not check.allowed:
            return self._reject_risk(request, check)

        if request.volume > self.confirmation_threshold:
            approved = await self.confirmer.confirm(
                f"Execute {request.side.value.upper()} {request.volume} lots of {request.symbol}?",
                request.to_dict()
            )
            if not approved:
                self.stats["cancelled"] += 1
                logger.info("Trade cancelled by user")
                return self._finish(ExecutionResult(
                    success=False,
                    cancelled=True,
                    error="Trade cancelled by user",
                    error_type="cancelled",
                    request=request
                ))

            # Account and positions may have moved while waiting for the answer
            check = self._check_risk(request)
            if not check.allowed:
                return self._reject_risk(request, check)

        self.stats["submitted"] += 1
        spec = OrderSpec(
            symbol=request.symbol,
            side=request.side,
            volume=request.volume,
            stop_loss=request.stop_loss,
            take_profit=request.take_profit
        )

        try:
            order = await self.connection.create_order(spec)
        except TradingError as e:
            self.stats["failed"] += 1
            logger.error(f"Order failed: {e}")
            self._record(request.to_dict(), success=False, error=str(e))
            return self._finish(ExecutionResult.failure(e, request=request))

        self.stats["succeeded"] += 1
        logger.info(f"Order executed: {order.order_id} ({request.side.value} {request.volume} {request.symbol})")
        self._record(request.to_dict(), success=True, order_id=order.order_id)
        return self._finish(ExecutionResult(
            success=True,
            order_id=order.order_id,
            position_id=order.position_id,
            request=request,
            metadata={"fill_price": order.price, "status": order.status}
        ))

    async def buy(self, **params) -> ExecutionResult:
        return await self.execute(TradeSide.BUY, params)

    async def sell(self, **params) -> ExecutionResult:
        return await self.execute(TradeSide.SELL, params)

    def _check_risk(self, request: TradeRequest) -> RiskCheck:
        account = self.connection.account
        if account is None:
            return RiskCheck(allowed=False, reason="Account information unavailable", rule="account")
        return self.risk.check_trade(request, account, self.positions.count)

    def _reject_risk(self, request: TradeRequest, check: RiskCheck) -> ExecutionResult:
        self.stats["risk_rejections"] += 1
        error = RiskRejection(check.reason, check.rule)
        self._record(request.to_dict(), success=False, error=check.reason)
        return self._finish(ExecutionResult.failure(
            error,
            request=request,
            metadata={"rule": check.rule, "risk_percent": check.risk_percent}
        ))

    # Position management
    async def close_position(self, position_id: str, volume: Optional[float] = None) -> ExecutionResult:
        """Close a position fully, or partially when ``volume`` is given"""
        if position_id in self._in_flight:
            self.stats["in_flight_rejections"] += 1
            return self._finish(ExecutionResult.failure(OperationInProgress(position_id), position_id=position_id))

        position = self.positions.get(position_id)
        if position is None:
            return self._finish(ExecutionResult.failure(
                ExecutionError(f"Position {position_id} not found"), position_id=position_id
            ))
        if volume is not None and (volume <= 0 or volume > position.volume):
            return self._finish(ExecutionResult.failure(
                ValidationError([f"Invalid close volume ({volume})"]), position_id=position_id
            ))

        params = {"position_id": position_id, "symbol": position.symbol, "side": position.side.value,
                  "volume": volume if volume is not None else position.volume}
        profit_before, volume_before = position.profit, position.volume

        logger.info(f"Closing position {position_id}{f' ({volume} lots)' if volume else ''}")
        self._in_flight.add(position_id)
        try:
            result = await self.connection.close_position(position_id, volume)
        except TradingError as e:
            logger.error(f"Close failed for {position_id}: {e}")
            self._record(params, success=False, error=str(e), kind="close")
            return self._finish(ExecutionResult.failure(e, position_id=position_id))
        finally:
            self._in_flight.discard(position_id)

        if result.remaining_volume is None:
            remaining = round(max(volume_before - result.closed_volume, 0.0), 8)
            result = replace(result, remaining_volume=remaining)

        pnl = result.profit
        if pnl is None and volume_before > 0:
            pnl = profit_before * result.closed_volume / volume_before

        self.positions.apply_close_result(result)
        self._record(params, success=True, kind="close", pnl=pnl)
        return self._finish(ExecutionResult(
            success=True,
            position_id=position_id,
            metadata={
                "closed_volume": result.closed_volume,
                "remaining_volume": result.remaining_volume,
                "pnl": pnl
            }
        ))

    async def modify_position(
        self,
        position_id: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None
    ) -> ExecutionResult:
        """Amend stop-loss and/or take-profit of an open position"""
        if position_id in self._in_flight:
            self.stats["in_flight_rejections"] += 1
            return self._finish(ExecutionResult.failure(OperationInProgress(position_id), position_id=position_id))

        position = self.positions.get(position_id)
        if position is None:
            return self._finish(ExecutionResult.failure(
                ExecutionError(f"Position {position_id} not found"), position_id=position_id
            ))

        errors = []
        if stop_loss is None and take_profit is None:
            errors.append("Nothing to modify")
        is_buy = position.side == TradeSide.BUY
        price = position.current_price
        if stop_loss is not None and ((is_buy and stop_loss >= price) or (not is_buy and stop_loss <= price)):
            errors.append("Invalid stop loss level")
        if take_profit is not None and ((is_buy and take_profit <= price) or (not is_buy and take_profit >= price)):
            errors.append("Invalid take profit level")
        if errors:
            return self._finish(ExecutionResult.failure(ValidationError(errors), position_id=position_id))

        logger.info(f"Modifying position {position_id}: SL={stop_loss} TP={take_profit}")
        self._in_flight.add(position_id)
        try:
            await self.connection.modify_position(position_id, stop_loss, take_profit)
        except TradingError as e:
            logger.error(f"Modify failed for {position_id}: {e}")
            return self._finish(ExecutionResult.failure(e, position_id=position_id))
        finally:
            self._in_flight.discard(position_id)

        self.positions.apply_modify_result(position_id, stop_loss, take_profit)
        return self._finish(ExecutionResult(
            success=True,
            position_id=position_id,
            metadata={"stop_loss": stop_loss, "take_profit": take_profit}
        ))

    async def close_all_profitable(self) -> ExecutionResult:
        """Confirm once, then close every position currently in profit"""
        profitable = [p for p in self.positions.all() if p.profit > 0]
        if not profitable:
            return self._finish(ExecutionResult(success=False, error="No profitable positions found"))

        approved = await self.confirmer.confirm(
            f"Close {len(profitable)} profitable positions?",
            {"position_ids": [p.id for p in profitable]}
        )
        if not approved:
            return self._finish(ExecutionResult(
                success=False, cancelled=True, error="Cancelled by user", error_type="cancelled"
            ))

        summary = await self.positions.close_all_matching(lambda p: p.profit > 0, self.close_position)
        return self._finish(ExecutionResult(
            success=summary.failed == 0,
            error=None if summary.failed == 0 else summary.message,
            error_type=None if summary.failed == 0 else "execution",
            metadata={"summary": summary, "message": summary.message}
        ))

    # Bookkeeping
    def _record(
        self,
        params: Dict,
        success: bool,
        order_id: Optional[str] = None,
        error: Optional[str] = None,
        kind: str = "open",
        pnl: Optional[float] = None
    ) -> TradeRecord:
        return self.tracker.record(TradeRecord(
            params=params,
            success=success,
            kind=kind,
            order_id=order_id,
            error=error,
            pnl=pnl
        ))

    def _finish(self, result: ExecutionResult) -> ExecutionResult:
        self.trade_results.publish(result)
        return result

    def get_stats(self) -> Dict:
        return {
            **self.stats,
            "in_flight": sorted(self._in_flight),
            "current_symbol": self.current_symbol,
        }
