"""
Trade Confirmation
Asynchronous yes/no confirmation for large trades, independent of any UI
"""

import asyncio
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional
import logging

from .events import EventChannel

logger = logging.getLogger(__name__)


@dataclass
class ConfirmationRequest:
    id: str
    message: str
    details: Dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConfirmationProvider(ABC):
    """Answers whether a trade that needs confirmation may proceed"""

    @abstractmethod
    async def confirm(self, message: str, details: Optional[Dict] = None) -> bool:
        pass


class AutoConfirm(ConfirmationProvider):
    """Fixed answer, for unattended runs and tests"""

    def __init__(self, approve: bool = True):
        self.approve = approve
        self.asked = 0

    async def confirm(self, message: str, details: Optional[Dict] = None) -> bool:
        self.asked += 1
        logger.info(f"Auto-{'approved' if self.approve else 'declined'}: {message}")
        return self.approve


class PendingConfirmations(ConfirmationProvider):
    """
    Request/response channel for confirmations

    Each request is published on ``requests`` and resolved by ``respond``.
    With a timeout set, an unanswered request counts as declined.
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout
        self.requests: EventChannel[ConfirmationRequest] = EventChannel("confirmation.requests")
        self._pending: Dict[str, asyncio.Future] = {}
        self._ids = itertools.count(1)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def confirm(self, message: str, details: Optional[Dict] = None) -> bool:
        request = ConfirmationRequest(id=f"confirm-{next(self._ids)}", message=message, details=details or {})
        future = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future

        try:
            self.requests.publish(request)
            if self.timeout is None:
                return await future
            return await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError:
            logger.info(f"Confirmation {request.id} timed out, treated as declined")
            return False
        finally:
            self._pending.pop(request.id, None)

    def respond(self, request_id: str, approved: bool) -> bool:
        """
        Answer an outstanding request

        Returns:
            False if the request is unknown or already answered
        """
        future = self._pending.get(request_id)
        if future is None or future.done():
            return False
        future.set_result(bool(approved))
        return True

    def decline_all(self) -> int:
        count = 0
        for request_id in list(self._pending):
            if self.respond(request_id, False):
                count += 1
        return count
