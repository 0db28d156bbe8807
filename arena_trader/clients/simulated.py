"""
In-process venue and decision provider for SIMULATED mode and tests.

SimulatedExchange fills every order at the current quote and keeps its own
account so balance sync has an independent number to reconcile against.
Prices are held in a market book that several exchanges (one per agent) can
share.
"""
import logging
import math
import threading
import time
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..errors import ExecutionFailure
from ..schemas import (
    AccountState,
    Candle,
    DecisionContext,
    Direction,
    ExchangePosition,
    ExecutableOrder,
    MarketQuote,
    OrderFill,
    Position,
    utc_now,
)
from .base import DecisionProvider, ExchangeClient, interval_seconds

logger = logging.getLogger("arena_trader.clients.simulated")


def default_market_book() -> Dict[str, MarketQuote]:
    seed = [
        ("BTCUSDT", 65000.0, 2.1e9, 1.2, 3),
        ("ETHUSDT", 3200.0, 1.1e9, -0.8, 3),
        ("SOLUSDT", 150.0, 4.5e8, 3.4, 1),
        ("XRPUSDT", 0.55, 3.2e8, 0.4, 0),
        ("DOGEUSDT", 0.12, 2.8e8, 5.1, 0),
        ("BNBUSDT", 580.0, 2.2e8, 0.2, 2),
    ]
    return {
        symbol: MarketQuote(
            instrument=symbol,
            price=price,
            volume=volume,
            change_24h=change,
            quantity_precision=precision,
        )
        for symbol, price, volume, change, precision in seed
    }


def synthetic_candles(price: float, interval: str, limit: int) -> List[Candle]:
    """A gentle deterministic wave that ends exactly at `price`."""
    step = timedelta(seconds=interval_seconds(interval))
    end = utc_now()
    closes = [price * (1 + 0.01 * math.sin((i - limit + 1) / 4)) for i in range(limit)]
    candles = []
    for i, close in enumerate(closes):
        open_ = closes[i - 1] if i else close
        candles.append(Candle(
            timestamp=end - step * (limit - 1 - i),
            open=open_,
            high=max(open_, close) * 1.001,
            low=min(open_, close) * 0.999,
            close=close,
            volume=1000.0 + 100 * (i % 7),
        ))
    return candles


class SimulatedExchange(ExchangeClient):
    """
    Exchange double with settable prices and failure injection.

    `fail_on("place_order")` makes the next call raise; `latency["close_position"] = 2`
    makes that call block, which is how call timeouts are exercised.
    """

    provider_name = "simulated"

    def __init__(
        self,
        initial_balance: float = 500.0,
        book: Optional[Dict[str, MarketQuote]] = None,
        fee_rate: float = 0.0,
    ):
        self.book = book if book is not None else default_market_book()
        self.fee_rate = fee_rate
        self.cash = initial_balance
        self.reported_value_override: Optional[float] = None
        self.latency: Dict[str, float] = {}
        self.open_positions: Dict[str, Dict[str, Any]] = {}
        self.protective_orders: Dict[str, Dict[str, Any]] = {}
        self.klines: Dict[Tuple[str, str], List[Candle]] = {}
        self.calls: List[str] = []
        self._failures: Dict[str, List[Exception]] = {}
        self._lock = threading.Lock()

    # -- test hooks ---------------------------------------------------------

    def set_price(self, instrument: str, price: float, **fields: Any) -> None:
        instrument = instrument.upper()
        current = self.book.get(instrument)
        if current is None:
            self.book[instrument] = MarketQuote(instrument=instrument, price=price, **fields)
        else:
            self.book[instrument] = current.model_copy(
                update={"price": price, "refreshed_at": utc_now(), **fields}
            )

    def fail_on(self, operation: str, exc: Optional[Exception] = None, times: int = 1) -> None:
        error = exc or ExecutionFailure(f"Simulated {operation} failure", operation=operation)
        self._failures.setdefault(operation, []).extend([error] * times)

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        delay = self.latency.get(operation, 0.0)
        if delay:
            time.sleep(delay)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _price(self, instrument: str) -> float:
        quote = self.book.get(instrument.upper())
        if quote is None:
            raise ValueError(f"Unknown instrument '{instrument}'")
        return quote.price

    # -- ExchangeClient -----------------------------------------------------

    def get_quote(self, instrument: str) -> MarketQuote:
        self._enter("get_quote")
        quote = self.book.get(instrument.upper())
        if quote is None:
            raise ValueError(f"Unknown instrument '{instrument}'")
        return quote.model_copy()

    def get_markets(self, limit: int) -> List[MarketQuote]:
        self._enter("get_markets")
        quotes = sorted(self.book.values(), key=lambda q: q.volume, reverse=True)
        return [q.model_copy() for q in quotes[:limit]]

    def place_order(self, order: ExecutableOrder) -> OrderFill:
        self._enter("place_order")
        with self._lock:
            price = self._price(order.instrument)
            notional = order.quantity * price
            fee = round(notional * self.fee_rate, 8)
            order_id = f"sim-{uuid.uuid4().hex[:12]}"
            self.cash -= order.stake + fee
            self.open_positions[order_id] = {
                "instrument": order.instrument,
                "direction": Direction(order.direction),
                "quantity": order.quantity,
                "entry_price": price,
                "collateral": order.stake,
            }
        logger.info(f"SIM FILL: {order.direction} {order.quantity} {order.instrument} @ {price} -> {order_id}")
        return OrderFill(order_id=order_id, filled_quantity=order.quantity, avg_price=price, fee=fee)

    def close_position(self, position: Position) -> OrderFill:
        self._enter("close_position")
        with self._lock:
            price = self._price(position.instrument)
            fee = round(position.quantity * price * self.fee_rate, 8)
            self.cash += position.collateral + position.price_pnl(price) - fee
            same_side = [
                order_id for order_id, held in self.open_positions.items()
                if held["instrument"] == position.instrument and held["direction"] == position.direction
            ]
            exact = [o for o in same_side if abs(self.open_positions[o]["quantity"] - position.quantity) < 1e-12]
            if exact or same_side:
                del self.open_positions[(exact or same_side)[0]]
        order_id = f"sim-{uuid.uuid4().hex[:12]}"
        return OrderFill(order_id=order_id, filled_quantity=position.quantity, avg_price=price, fee=fee)

    def place_protective_order(self, position: Position, kind: str, trigger_price: float) -> str:
        self._enter("place_protective_order")
        order_id = f"sim-{kind}-{uuid.uuid4().hex[:8]}"
        self.protective_orders[order_id] = {
            "instrument": position.instrument,
            "kind": kind,
            "trigger_price": trigger_price,
        }
        return order_id

    def cancel_order(self, order_id: str) -> None:
        self._enter("cancel_order")
        self.protective_orders.pop(order_id, None)

    def get_account_state(self) -> AccountState:
        self._enter("get_account_state")
        with self._lock:
            unrealized = 0.0
            for held in self.open_positions.values():
                sign = 1 if held["direction"] == Direction.LONG else -1
                unrealized += sign * held["quantity"] * (self._price(held["instrument"]) - held["entry_price"])
            value = self.cash + unrealized
        if self.reported_value_override is not None:
            value = self.reported_value_override
        return AccountState(account_value=value, cash=self.cash, unrealized_pnl=unrealized)

    def get_open_positions(self) -> List[ExchangePosition]:
        self._enter("get_open_positions")
        with self._lock:
            held = list(self.open_positions.values())
        positions = []
        for item in held:
            sign = 1 if item["direction"] == Direction.LONG else -1
            positions.append(ExchangePosition(
                instrument=item["instrument"],
                direction=item["direction"],
                quantity=item["quantity"],
                entry_price=item["entry_price"],
                unrealized_pnl=sign * item["quantity"] * (self._price(item["instrument"]) - item["entry_price"]),
            ))
        return positions

    def get_klines(self, instrument: str, interval: str, limit: int) -> List[Candle]:
        self._enter("get_klines")
        scripted = self.klines.get((instrument.upper(), interval))
        if scripted is not None:
            return [c.model_copy() for c in scripted[-limit:]]
        return synthetic_candles(self._price(instrument), interval, limit)


class ScriptedDecisionProvider(DecisionProvider):
    """
    Replays queued payloads, then falls back to HOLD.

    `script` may be a list of payloads or a callable taking (agent_id, context).
    Exceptions placed in the list are raised instead of returned.
    """

    provider_name = "scripted"

    def __init__(self, script: Union[Sequence[Any], Callable[[str, DecisionContext], Any], None] = None):
        self._callable = script if callable(script) else None
        self._queue: List[Any] = [] if callable(script) or script is None else list(script)
        self.contexts: List[DecisionContext] = []

    def push(self, payload: Any) -> None:
        self._queue.append(payload)

    def get_decision(self, agent_id: str, context: DecisionContext) -> Any:
        self.contexts.append(context)
        if self._callable is not None:
            return self._callable(agent_id, context)
        if not self._queue:
            return {"action": "HOLD", "rationale": "No scripted decision"}
        payload = self._queue.pop(0)
        if isinstance(payload, Exception):
            raise payload
        return payload
