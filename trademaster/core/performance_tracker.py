"""
Performance Tracker
Append-only trade log with incrementally maintained outcome statistics
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional
import logging

from .events import EventChannel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeRecord:
    """Immutable log entry for one executed or failed trade attempt"""
    params: Mapping[str, Any]
    success: bool
    kind: str = "open"  # "open" or "close"
    order_id: Optional[str] = None
    error: Optional[str] = None
    pnl: Optional[float] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    @property
    def is_win(self) -> bool:
        """P&L decides when known; otherwise a successful attempt counts as a win"""
        if self.pnl is not None:
            return self.pnl > 0
        return self.success

    def to_dict(self) -> Dict:
        return {
            "params": dict(self.params),
            "success": self.success,
            "kind": self.kind,
            "order_id": self.order_id,
            "error": self.error,
            "pnl": self.pnl,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PerformanceStats:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    consecutive_wins: int = 0
    consecutive_losses: int = 0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0

    @property
    def win_rate(self) -> float:
        if self.total_trades == 0:
            return 0.0
        return self.winning_trades / self.total_trades * 100

    @property
    def net_pnl(self) -> float:
        return self.gross_profit - self.gross_loss

    def apply(self, record: TradeRecord) -> None:
        """O(1) update with one more record"""
        self.total_trades += 1

        if record.is_win:
            self.winning_trades += 1
            self.consecutive_wins += 1
            self.consecutive_losses = 0
            self.max_consecutive_wins = max(self.max_consecutive_wins, self.consecutive_wins)
        else:
            self.losing_trades += 1
            self.consecutive_losses += 1
            self.consecutive_wins = 0
            self.max_consecutive_losses = max(self.max_consecutive_losses, self.consecutive_losses)

        if record.pnl is not None:
            if record.pnl > 0:
                self.gross_profit += record.pnl
                self.largest_win = max(self.largest_win, record.pnl)
            elif record.pnl < 0:
                self.gross_loss += -record.pnl
                self.largest_loss = min(self.largest_loss, record.pnl)

    @classmethod
    def replay(cls, records: Iterable[TradeRecord]) -> "PerformanceStats":
        """Rebuild statistics from a full log"""
        stats = cls()
        for record in records:
            stats.apply(record)
        return stats

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["win_rate"] = self.win_rate
        data["net_pnl"] = self.net_pnl
        return data


class PerformanceTracker:
    """Keeps the trade log and running statistics in step"""

    def __init__(self):
        self._records: List[TradeRecord] = []
        self.stats = PerformanceStats()
        self.records_added: EventChannel[TradeRecord] = EventChannel("performance.records")

    def record(self, record: TradeRecord) -> TradeRecord:
        self._records.append(record)
        self.stats.apply(record)
        self.records_added.publish(record)
        logger.debug(
            f"Trade recorded: {record.kind} success={record.success} pnl={record.pnl} "
            f"(total={self.stats.total_trades}, win rate={self.stats.win_rate:.1f}%)"
        )
        return record

    @property
    def records(self) -> List[TradeRecord]:
        return list(self._records)

    def replay(self) -> PerformanceStats:
        return PerformanceStats.replay(self._records)

    def recent(self, limit: int = 10) -> List[TradeRecord]:
        return self._records[-limit:]

    def get_stats(self) -> Dict:
        return self.stats.to_dict()
