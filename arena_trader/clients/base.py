"""
Contracts for the exchange and decision provider.

Implementations are blocking; the engine runs them in worker threads under a
timeout and a per-provider call gate. Any exception means the call failed;
nothing is ever treated as an implicit success.
"""
from abc import ABC, abstractmethod
from typing import Any, List

from ..schemas import (
    AccountState,
    Candle,
    DecisionContext,
    ExchangePosition,
    ExecutableOrder,
    MarketQuote,
    OrderFill,
    Position,
)

_INTERVAL_SECONDS = {"m": 60, "h": 3600, "d": 86400}


def interval_seconds(interval: str) -> int:
    """Candle interval string to seconds: '3m' -> 180, '4h' -> 14400."""
    unit = interval[-1:].lower()
    if unit not in _INTERVAL_SECONDS or not interval[:-1].isdigit():
        raise ValueError(f"Unsupported candle interval '{interval}'")
    return int(interval[:-1]) * _INTERVAL_SECONDS[unit]


class ExchangeClient(ABC):
    """One agent's view of a trading venue."""

    #: Call-gate key; clients sharing a name share one rate limit.
    provider_name: str = "exchange"

    @abstractmethod
    def get_quote(self, instrument: str) -> MarketQuote:
        ...

    @abstractmethod
    def get_markets(self, limit: int) -> List[MarketQuote]:
        """Most liquid tradable instruments, highest volume first."""

    @abstractmethod
    def place_order(self, order: ExecutableOrder) -> OrderFill:
        """Open a position. Must only return once the fill is confirmed."""

    @abstractmethod
    def close_position(self, position: Position) -> OrderFill:
        ...

    @abstractmethod
    def place_protective_order(self, position: Position, kind: str, trigger_price: float) -> str:
        """Place a stop-loss (`kind="stop_loss"`) or take-profit order; returns its id."""

    @abstractmethod
    def cancel_order(self, order_id: str) -> None:
        ...

    @abstractmethod
    def get_account_state(self) -> AccountState:
        ...

    @abstractmethod
    def get_open_positions(self) -> List[ExchangePosition]:
        """Every position the venue holds for this account, whoever opened it."""

    @abstractmethod
    def get_klines(self, instrument: str, interval: str, limit: int) -> List[Candle]:
        """Most recent `limit` candles, oldest first. `interval` is e.g. "3m" or "4h"."""


class DecisionProvider(ABC):
    """Produces a raw, untrusted decision payload for one agent."""

    provider_name: str = "decision"

    @abstractmethod
    def get_decision(self, agent_id: str, context: DecisionContext) -> Any:
        """Return a dict or JSON string; validation happens downstream."""
