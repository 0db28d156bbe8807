"""
Error taxonomy for the trading core.

Every per-agent failure is one of these; the orchestrator catches them at the
agent boundary, records the outcome and moves on.
"""
from typing import Optional


class TradingError(Exception):
    """Base class for all trading-core errors."""


class DecisionValidationError(TradingError):
    """Raised when a decision payload does not conform to the Decision schema."""

    def __init__(self, message: str, raw: Optional[object] = None):
        self.raw = raw
        super().__init__(message)


class SizingRejection(TradingError):
    """Business-rule violation. `code` is a stable machine-readable reason."""

    code = "SIZING_REJECTED"

    def __init__(self, message: str, code: Optional[str] = None):
        if code:
            self.code = code
        super().__init__(message)


class InsufficientBalance(SizingRejection):
    code = "INSUFFICIENT_BALANCE"


class SubMinimumNotional(SizingRejection):
    code = "SUB_MINIMUM_NOTIONAL"


class MaxPositionsReached(SizingRejection):
    code = "MAX_POSITIONS_REACHED"


class ExecutionFailure(TradingError):
    """Network or exchange error while talking to an external collaborator."""

    def __init__(self, message: str, operation: str = "", timed_out: bool = False):
        self.operation = operation
        self.timed_out = timed_out
        super().__init__(message)


class AnomalyDetected(TradingError):
    """Implausible balance swing reported by the exchange."""

    def __init__(self, agent_id: str, prior_value: float, reported_value: float, change_percent: float):
        self.agent_id = agent_id
        self.prior_value = prior_value
        self.reported_value = reported_value
        self.change_percent = change_percent
        super().__init__(
            f"Balance anomaly for '{agent_id}': ${prior_value:.2f} -> ${reported_value:.2f} "
            f"({change_percent:+.1f}%)"
        )


class PositionNotFound(TradingError):
    """Stale or unknown position reference."""

    def __init__(self, position_ref: str):
        self.position_ref = position_ref
        super().__init__(f"Position '{position_ref}' not found")


class AgentNotFound(TradingError):
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent '{agent_id}' not found")
