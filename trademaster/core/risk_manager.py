"""
Risk Management Module
Pre-trade gate for position count, margin and per-trade risk, plus position
sizing built on the same risk formula
"""

import math
from dataclasses import dataclass
from typing import Dict, Optional
import logging

from .transport import AccountSnapshot, TradeSide
from ..utils.config_loader import RiskConfig, TradingConfig

logger = logging.getLogger(__name__)


@dataclass
class TradeRequest:
    """Order parameters after validation, priced at the current quote"""
    symbol: str
    side: TradeSide
    volume: float
    price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "volume": self.volume,
            "price": self.price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
        }


@dataclass
class RiskCheck:
    """Outcome of a pre-trade risk check"""
    allowed: bool
    reason: Optional[str] = None
    rule: Optional[str] = None
    required_margin: float = 0.0
    risk_amount: float = 0.0
    risk_percent: float = 0.0


class RiskManager:
    """
    Risk Manager

    ``check_trade`` is synchronous and side-effect free. Checks run in a
    fixed order and the first failure wins:

    1. open positions >= max_positions
    2. required margin > free margin
    3. with a stop-loss: risk percent of balance > max_risk_percent

    Risk amount is always price distance x volume x contract size.
    """

    def __init__(
        self,
        max_positions: int = 10,
        max_risk_percent: float = 5.0,
        default_risk_percent: float = 1.0,
        contract_size: float = 100000,
        leverage: float = 100,
        min_volume: float = 0.01,
        max_volume: float = 100.0,
        volume_step: float = 0.01
    ):
        self.max_positions = max_positions
        self.max_risk_percent = max_risk_percent
        self.default_risk_percent = default_risk_percent
        self.contract_size = contract_size
        self.leverage = leverage
        self.min_volume = min_volume
        self.max_volume = max_volume
        self.volume_step = volume_step

        self.checks = 0
        self.rejections: Dict[str, int] = {}

    @classmethod
    def from_config(cls, risk: RiskConfig, trading: TradingConfig) -> "RiskManager":
        return cls(
            max_positions=risk.max_positions,
            max_risk_percent=risk.max_risk_percent,
            default_risk_percent=risk.default_risk_percent,
            contract_size=trading.contract_size,
            leverage=trading.leverage,
            min_volume=trading.min_volume,
            max_volume=trading.max_volume,
            volume_step=trading.volume_step
        )

    def required_margin(self, volume: float, price: float) -> float:
        return volume * self.contract_size * price / self.leverage

    def risk_amount(self, entry_price: float, stop_loss: float, volume: float) -> float:
        """Loss if the stop-loss is hit"""
        return abs(entry_price - stop_loss) * volume * self.contract_size

    def position_pnl(self, side: TradeSide, entry_price: float, current_price: float, volume: float) -> float:
        direction = 1 if side == TradeSide.BUY else -1
        return (current_price - entry_price) * direction * volume * self.contract_size

    def check_trade(
        self,
        request: TradeRequest,
        account: AccountSnapshot,
        open_position_count: int
    ) -> RiskCheck:
        """Run the pre-trade checks against an account snapshot"""
        self.checks += 1

        if open_position_count >= self.max_positions:
            return self._reject(
                "max_positions",
                f"Maximum positions limit reached ({self.max_positions})"
            )

        margin = self.required_margin(request.volume, request.price)
        if margin > account.free_margin:
            return self._reject(
                "margin",
                "Insufficient margin",
                required_margin=margin
            )

        risk_amount = 0.0
        risk_percent = 0.0
        if request.stop_loss is not None:
            risk_amount = self.risk_amount(request.price, request.stop_loss, request.volume)
            risk_percent = risk_amount / account.balance * 100 if account.balance > 0 else math.inf
            if risk_percent > self.max_risk_percent:
                return self._reject(
                    "risk_percent",
                    f"Risk too high ({risk_percent:.2f}% > {self.max_risk_percent:g}%)",
                    required_margin=margin,
                    risk_amount=risk_amount,
                    risk_percent=risk_percent
                )

        return RiskCheck(
            allowed=True,
            required_margin=margin,
            risk_amount=risk_amount,
            risk_percent=risk_percent
        )

    def _reject(self, rule: str, reason: str, **values) -> RiskCheck:
        self.rejections[rule] = self.rejections.get(rule, 0) + 1
        logger.warning(f"Risk check failed: {reason}")
        return RiskCheck(allowed=False, reason=reason, rule=rule, **values)

    def suggest_volume(
        self,
        balance: float,
        entry_price: float,
        stop_loss: float,
        risk_percent: Optional[float] = None
    ) -> float:
        """
        Volume that risks ``risk_percent`` of the balance if the stop is hit

        Uses the same risk formula as ``check_trade``, rounds down to the
        volume step and clamps to the allowed volume range.
        """
        risk_percent = self.default_risk_percent if risk_percent is None else risk_percent
        distance = abs(entry_price - stop_loss)
        if distance == 0 or balance <= 0:
            return self.min_volume

        raw = (balance * risk_percent / 100) / (distance * self.contract_size)
        steps = math.floor(raw / self.volume_step + 1e-9)
        volume = round(steps * self.volume_step, 8)
        return min(max(volume, self.min_volume), self.max_volume)

    def get_stats(self) -> Dict:
        return {
            "checks": self.checks,
            "rejections": dict(self.rejections),
            "max_positions": self.max_positions,
            "max_risk_percent": self.max_risk_percent,
        }
