"""
Position Registry
Authoritative map of open positions, kept current by full reloads,
sequenced execution deltas and explicit close/modify results
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import logging

from .errors import TradingError
from .events import EventChannel, Subscription
from .transport import CloseResult, ExecutionEvent, ExecutionType, Position, TradeSide

logger = logging.getLogger(__name__)


@dataclass
class PositionChange:
    """Published after every registry mutation"""
    kind: str  # "reload", "opened", "updated", "modified" or "closed"
    position_ids: Tuple[str, ...]
    open_count: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class CloseSummary:
    """Aggregated outcome of a bulk close"""
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    closed_ids: List[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.succeeded + self.failed

    @property
    def message(self) -> str:
        if self.failed:
            return f"Closed {self.succeeded} positions, {self.failed} failed"
        return f"Closed {self.succeeded} positions"


class PositionRegistry:
    """
    Position Registry

    Execution events are applied as deltas ordered by their sequence number.
    An event older than the last applied one is ignored. A gap in the
    sequence, a fill without a position payload, or an update for a position
    the registry does not know triggers exactly one explicit ``refresh``.

    Invariant: no position with volume <= 0 is ever stored; it is removed in
    the same step its volume reaches zero.
    """

    def __init__(self, refresher: Optional[Callable[[], Awaitable[List[Position]]]] = None):
        self.refresher = refresher
        self._positions: Dict[str, Position] = {}
        self.last_sequence: Optional[int] = None
        self.changes: EventChannel[PositionChange] = EventChannel("positions.changes")
        self._consumer: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription[ExecutionEvent]] = None

        self.stats = {
            "reloads": 0,
            "refreshes": 0,
            "deltas": 0,
            "stale_events": 0,
            "sequence_gaps": 0,
        }

    # Queries
    def get(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def all(self) -> List[Position]:
        return list(self._positions.values())

    @property
    def count(self) -> int:
        return len(self._positions)

    def __contains__(self, position_id: str) -> bool:
        return position_id in self._positions

    def __len__(self) -> int:
        return len(self._positions)

    @property
    def total_profit(self) -> float:
        return sum(p.profit for p in self._positions.values())

    def _publish(self, kind: str, ids: List[str]) -> None:
        self.changes.publish(PositionChange(kind=kind, position_ids=tuple(ids), open_count=self.count))

    # Full reload
    def reload(
        self,
        positions: List[Position],
        sequence: Optional[int] = None,
        new_session: bool = False
    ) -> None:
        """Replace the whole map with the host's position list"""
        self._positions = {p.id: replace(p) for p in positions if p.volume > 0}
        if new_session:
            # Hosts restart execution numbering per session
            self.last_sequence = None
        if sequence is not None:
            self.last_sequence = sequence
        self.stats["reloads"] += 1
        logger.info(f"Positions reloaded: {self.count} open")
        self._publish("reload", list(self._positions))

    async def refresh(self) -> bool:
        """Explicit, bounded refresh: one position-list request"""
        if self.refresher is None:
            logger.warning("Position refresh requested but no refresher configured")
            return False
        self.stats["refreshes"] += 1
        try:
            positions = await self.refresher()
        except TradingError as e:
            logger.error(f"Position refresh failed: {e}")
            return False
        self.reload(positions)
        return True

    # Deltas
    def apply_execution(self, event: ExecutionEvent) -> bool:
        """
        Apply one execution event

        Returns:
            True if the registry could not apply the event and needs a refresh
        """
        if event.sequence is not None:
            if self.last_sequence is not None and event.sequence <= self.last_sequence:
                self.stats["stale_events"] += 1
                logger.debug(f"Stale execution #{event.sequence} ignored (last #{self.last_sequence})")
                return False
            gap = self.last_sequence is not None and event.sequence > self.last_sequence + 1
            self.last_sequence = event.sequence
            if gap:
                self.stats["sequence_gaps"] += 1
                logger.warning(f"Execution sequence gap before #{event.sequence}, refresh needed")
                return True

        self.stats["deltas"] += 1

        if event.type == ExecutionType.ORDER_FILLED:
            if event.position is None:
                return True
            self._upsert(event.position)
            return False

        if event.type == ExecutionType.POSITION_CLOSED:
            if event.position_id not in self._positions:
                # Already removed by the close result unless volume remains
                return bool(event.remaining_volume)
            if event.remaining_volume is None:
                return True
            self.set_volume(event.position_id, event.remaining_volume)
            return False

        if event.type == ExecutionType.POSITION_MODIFIED:
            if event.position_id not in self._positions:
                return True
            self.apply_modify_result(event.position_id, event.stop_loss, event.take_profit)
            return False

        # Rejections and cancellations leave positions untouched
        return False

    async def handle_execution(self, event: ExecutionEvent) -> None:
        if self.apply_execution(event):
            await self.refresh()

    def _upsert(self, position: Position) -> None:
        if position.volume <= 0:
            self._remove(position.id)
            return
        kind = "updated" if position.id in self._positions else "opened"
        self._positions[position.id] = replace(position)
        logger.info(f"Position {kind}: {position.id} {position.side.value} {position.volume} {position.symbol}")
        self._publish(kind, [position.id])

    def _remove(self, position_id: str) -> Optional[Position]:
        position = self._positions.pop(position_id, None)
        if position is not None:
            logger.info(f"Position closed: {position_id}")
            self._publish("closed", [position_id])
        return position

    # Explicit results
    def set_volume(self, position_id: str, remaining_volume: float) -> Optional[Position]:
        """
        Set an absolute remaining volume; removes the position at zero

        Idempotent, so a close result and the matching execution event may
        both be applied.
        """
        if remaining_volume <= 0:
            self._remove(position_id)
            return None

        position = self._positions.get(position_id)
        if position is None:
            return None
        if position.volume != remaining_volume:
            if position.volume > 0:
                position.profit = position.profit * remaining_volume / position.volume
            position.volume = remaining_volume
            self._publish("updated", [position_id])
        return position

    def apply_close_result(self, result: CloseResult) -> Optional[Position]:
        return self.set_volume(result.position_id, result.remaining_volume)

    def apply_modify_result(
        self,
        position_id: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None
    ) -> Optional[Position]:
        position = self._positions.get(position_id)
        if position is None:
            return None
        if stop_loss is not None:
            position.stop_loss = stop_loss
        if take_profit is not None:
            position.take_profit = take_profit
        self._publish("modified", [position_id])
        return position

    def mark_price(self, symbol: str, bid: float, ask: float, contract_size: float) -> None:
        """Revalue open positions on a new quote"""
        for position in self._positions.values():
            if position.symbol != symbol:
                continue
            position.current_price = bid if position.side == TradeSide.BUY else ask
            direction = 1 if position.side == TradeSide.BUY else -1
            position.profit = (
                (position.current_price - position.entry_price)
                * direction * position.volume * contract_size
            )

    # Bulk close
    async def close_all_matching(
        self,
        predicate: Callable[[Position], bool],
        close: Callable[[str], Awaitable[Any]]
    ) -> CloseSummary:
        """
        Close every matching position one after another

        A failure never stops the run. ``close`` returns an object with
        ``success`` and ``error`` attributes or raises a TradingError.
        """
        summary = CloseSummary()
        targets = [p.id for p in self.all() if predicate(p)]

        for position_id in targets:
            if position_id not in self._positions:
                logger.debug(f"Position {position_id} gone before bulk close reached it")
                continue
            try:
                result = await close(position_id)
            except TradingError as e:
                summary.failed += 1
                summary.errors.append(f"{position_id}: {e}")
                continue

            if getattr(result, "success", False):
                summary.succeeded += 1
                summary.closed_ids.append(position_id)
            else:
                summary.failed += 1
                summary.errors.append(f"{position_id}: {getattr(result, 'error', 'unknown error')}")

        logger.info(summary.message)
        return summary

    # Execution consumer
    def start(self, executions: EventChannel[ExecutionEvent]) -> None:
        """Consume execution events in arrival order on a background task"""
        if self._consumer is not None:
            return
        self._subscription = executions.stream(maxsize=0)
        self._consumer = asyncio.create_task(self.consume_executions(self._subscription))

    async def consume_executions(self, subscription: Subscription[ExecutionEvent]) -> None:
        async for event in subscription:
            try:
                await self.handle_execution(event)
            except Exception as e:
                logger.error(f"Execution event {event.type.value} failed to apply: {e}", exc_info=True)

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None

    def get_stats(self) -> Dict:
        return {
            "open": self.count,
            "total_profit": self.total_profit,
            "last_sequence": self.last_sequence,
            **self.stats,
        }
