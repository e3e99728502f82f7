"""
Error Taxonomy
Exceptions raised across the connection, risk and execution layers
"""

from typing import List, Optional


class TradingError(Exception):
    """Base class for all trading assistant errors"""

    error_type = "error"


class TransportError(TradingError):
    """Connect, subscribe or ping failure, or a transport-initiated disconnect"""

    error_type = "transport"


class ConnectionTimeout(TransportError):
    """Connecting exceeded the configured timeout"""

    error_type = "timeout"


class ValidationError(TradingError):
    """Malformed trade parameters; carries every violation found"""

    error_type = "validation"

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(", ".join(self.errors))


class RiskRejection(TradingError):
    """Trade failed a risk check"""

    error_type = "risk"

    def __init__(self, reason: str, rule: Optional[str] = None):
        self.reason = reason
        self.rule = rule
        super().__init__(reason)


class ExecutionError(TradingError):
    """Host accepted the request but reported a failure"""

    error_type = "execution"


class OperationInProgress(TradingError):
    """Another close/modify request for the same position is still pending"""

    error_type = "in_progress"

    def __init__(self, position_id: str):
        self.position_id = position_id
        super().__init__(f"Operation already in progress for position {position_id}")
