"""
Pydantic schemas for the trading core - strict contract between the decision
provider, the ledger, the exchange and the audit trail.
"""
import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import DecisionValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class InstrumentClass(str, Enum):
    PERPETUAL = "perpetual"
    BINARY = "binary"


class TradeAction(str, Enum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"
    HOLD = "HOLD"


class ExecutionState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    SIZED = "SIZED"
    SUBMITTED = "SUBMITTED"
    SETTLED = "SETTLED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


TERMINAL_STATES = {ExecutionState.SETTLED, ExecutionState.REJECTED, ExecutionState.FAILED}


class Agent(BaseModel):
    """Mutable per-agent account record."""
    id: str
    name: str
    persona: str = ""
    cash_balance: float
    account_value: float
    initial_balance: float
    total_return: float = Field(default=0.0, description="Percent return vs initial balance")
    pnl_history: List[float] = Field(default_factory=list, description="Ring buffer contents, oldest first")
    pnl_24h: float = 0.0
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    last_decision: Optional[str] = None
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def win_rate(self) -> float:
        return self.wins / self.total_trades if self.total_trades else 0.0


class Position(BaseModel):
    """Open position. Identity fields are fixed at creation."""
    id: str
    agent_id: str
    instrument: str
    instrument_class: InstrumentClass = InstrumentClass.PERPETUAL
    direction: Direction
    quantity: float = Field(gt=0)
    entry_price: float = Field(gt=0)
    leverage: int = Field(default=1, ge=1)
    collateral: float = Field(ge=0, description="Margin committed")
    notional: float = Field(ge=0, description="collateral x leverage")
    fees_paid: float = Field(default=0.0, ge=0)
    cost_basis: float = Field(ge=0, description="Capital actually committed, including entry fees")
    mark_price: float
    unrealized_pnl: float = 0.0
    unrealized_pnl_percent: float = 0.0
    opened_at: datetime = Field(default_factory=utc_now)
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    stop_loss_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None

    class Config:
        use_enum_values = True

    @property
    def sign(self) -> int:
        return 1 if self.direction == Direction.LONG else -1

    def price_pnl(self, price: float) -> float:
        """PnL from the price move alone; fees are accounted in cost_basis."""
        return self.sign * self.quantity * (price - self.entry_price)

    def price_move_percent(self, price: float) -> float:
        return self.sign * (price - self.entry_price) / self.entry_price * 100


class OpenSpec(BaseModel):
    """Settled fill details handed to the ledger to create a position."""
    instrument: str
    instrument_class: InstrumentClass = InstrumentClass.PERPETUAL
    direction: Direction
    quantity: float = Field(gt=0)
    entry_price: float = Field(gt=0)
    leverage: int = Field(default=1, ge=1)
    collateral: float = Field(gt=0)
    fees: float = Field(default=0.0, ge=0)
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    stop_loss_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None

    class Config:
        use_enum_values = True

    @property
    def notional(self) -> float:
        return self.collateral * self.leverage

    @property
    def cost_basis(self) -> float:
        return self.collateral + self.fees


class CloseResult(BaseModel):
    position_id: str
    agent_id: str
    instrument: str
    direction: Direction
    quantity: float
    leverage: int
    entry_price: float
    exit_price: float
    collateral: float
    notional: float
    pnl: float
    pnl_percent: float
    fees: float = 0.0
    cash_credited: float
    holding_minutes: int
    holding_time: str
    closed_at: datetime = Field(default_factory=utc_now)

    class Config:
        use_enum_values = True


class BalanceSnapshot(BaseModel):
    """Immutable point-in-time balance record."""
    agent_id: str
    cash: float
    unrealized_pnl: float
    account_value: float
    return_percent: float
    open_count: int
    timestamp: datetime = Field(default_factory=utc_now)

    class Config:
        frozen = True


class TradeLogEntry(BaseModel):
    """Immutable outcome of one decision. The only observable record of a cycle."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    agent_id: str
    action: TradeAction
    outcome: ExecutionState = ExecutionState.SETTLED
    requested_action: Optional[str] = None
    instrument: Optional[str] = None
    direction: Optional[Direction] = None
    quantity: Optional[float] = None
    leverage: Optional[int] = None
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    notional: Optional[float] = None
    collateral: Optional[float] = None
    fees: Optional[float] = None
    pnl: Optional[float] = None
    pnl_percent: Optional[float] = None
    holding_minutes: Optional[int] = None
    holding_time: Optional[str] = None
    order_id: Optional[str] = None
    rationale: str = ""
    reason: Optional[str] = None
    outcome_unknown: bool = Field(default=False, description="Submission timed out; the order may still have filled")
    timestamp: datetime = Field(default_factory=utc_now)

    class Config:
        frozen = True
        use_enum_values = True

    @property
    def is_genuine_hold(self) -> bool:
        return self.action == TradeAction.HOLD and self.outcome == ExecutionState.SETTLED


class MarketQuote(BaseModel):
    """Replaceable cache entry for one tradable instrument."""
    instrument: str
    instrument_class: InstrumentClass = InstrumentClass.PERPETUAL
    price: float
    volume: float = 0.0
    change_24h: float = 0.0
    quantity_precision: int = 3
    refreshed_at: datetime = Field(default_factory=utc_now)

    class Config:
        use_enum_values = True


class BalanceAnomaly(BaseModel):
    agent_id: str
    prior_value: float
    reported_value: float
    change_percent: float
    threshold_percent: float
    detected_at: datetime = Field(default_factory=utc_now)

    class Config:
        # non-finite reports are anomalies too and must survive a JSONL round trip
        ser_json_inf_nan = "strings"


class ReconciledBalance(BaseModel):
    agent_id: str
    prior_value: float
    account_value: float
    cash_balance: float
    change_percent: float
    total_return: float
    pnl_24h: float
    snapshot: BalanceSnapshot


# ---------------------------------------------------------------------------
# Decisions (untrusted input)
# ---------------------------------------------------------------------------


class HoldDecision(BaseModel):
    """Decision to do nothing this cycle."""
    action: Literal["HOLD"] = "HOLD"
    rationale: str = ""


class OpenDecision(BaseModel):
    """Decision to open a new position."""
    action: Literal["OPEN"] = "OPEN"
    direction: Direction
    instrument: str = Field(..., min_length=1, max_length=128)
    stake: Optional[float] = Field(default=None, gt=0, description="Collateral in USD")
    leverage: Optional[int] = Field(default=None, ge=1)
    stop_loss: Optional[float] = Field(default=None, gt=0)
    take_profit: Optional[float] = Field(default=None, gt=0)
    rationale: str = ""

    class Config:
        use_enum_values = True

    @field_validator("instrument")
    @classmethod
    def uppercase_instrument(cls, v: str) -> str:
        return v.upper().strip()


class CloseDecision(BaseModel):
    """Decision to close an open position, by position id or instrument."""
    action: Literal["CLOSE"] = "CLOSE"
    position_ref: str = Field(..., min_length=1)
    rationale: str = ""

    @field_validator("position_ref")
    @classmethod
    def strip_ref(cls, v: str) -> str:
        return v.strip()


Decision = Union[OpenDecision, CloseDecision, HoldDecision]

_DECISION_MODELS = {
    "HOLD": HoldDecision,
    "OPEN": OpenDecision,
    "CLOSE": CloseDecision,
}

_FIELD_ALIASES = {
    "symbol": "instrument",
    "market": "instrument",
    "size": "stake",
    "stopLoss": "stop_loss",
    "takeProfit": "take_profit",
    "side": "direction",
}


def _normalise(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map the provider's loose field names onto the Decision schema."""
    data = {}
    for key, value in raw.items():
        data[_FIELD_ALIASES.get(key, key)] = value

    action = str(data.get("action", "")).upper().strip()
    if action == "PASS":
        action = "HOLD"
    if action in ("LONG", "SHORT"):
        data["direction"] = action
        action = "OPEN"
    data["action"] = action

    if isinstance(data.get("direction"), str):
        data["direction"] = data["direction"].upper().strip()

    if not data.get("rationale"):
        data["rationale"] = str(data.get("reasoning") or data.get("message") or "")

    if action == "CLOSE" and "position_ref" not in data:
        ref = data.get("position_id") or data.get("instrument")
        if ref is not None:
            data["position_ref"] = str(ref)

    return data


def parse_decision(raw: Union[str, bytes, Dict[str, Any]]) -> Decision:
    """
    Validate an untrusted decision payload.

    Raises:
        DecisionValidationError: payload is not JSON, not an object, has an
            unknown action, or fails field validation for its action.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DecisionValidationError(f"Decision is not valid JSON: {e}", raw=raw)

    if not isinstance(raw, dict):
        raise DecisionValidationError(f"Decision must be an object, got {type(raw).__name__}", raw=raw)

    data = _normalise(raw)
    model = _DECISION_MODELS.get(data["action"])
    if model is None:
        raise DecisionValidationError(f"Unknown action '{raw.get('action')}'", raw=raw)

    try:
        return model.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise DecisionValidationError(f"Invalid {data['action']} decision: {problems}", raw=raw)


# ---------------------------------------------------------------------------
# Sizing / execution
# ---------------------------------------------------------------------------


class ExecutableOrder(BaseModel):
    """Output of the sizing policy - safe to submit as-is."""
    agent_id: str
    action: TradeAction
    instrument: str
    instrument_class: InstrumentClass = InstrumentClass.PERPETUAL
    direction: Direction
    stake: float = 0.0
    leverage: int = 1
    notional: float = 0.0
    quantity: float
    reference_price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    position_id: Optional[str] = None
    notes: List[str] = Field(default_factory=list)

    class Config:
        use_enum_values = True


class Rejection(BaseModel):
    """Sizing refused the decision. `noop` rejections are not errors."""
    code: str
    message: str
    noop: bool = False


class OrderFill(BaseModel):
    """Exchange confirmation of an executed order."""
    order_id: str
    filled_quantity: float
    avg_price: float
    fee: float = 0.0


class ExchangePosition(BaseModel):
    """An open position as the exchange reports it, independent of the ledger."""
    instrument: str
    direction: Direction
    quantity: float = Field(gt=0)
    entry_price: float = Field(gt=0)
    unrealized_pnl: float = 0.0

    class Config:
        use_enum_values = True


class PositionDrift(BaseModel):
    """Difference between the exchange's open positions and the ledger's."""
    agent_id: str
    untracked: List[ExchangePosition] = Field(default_factory=list, description="On the exchange, not in the ledger")
    missing: List[str] = Field(default_factory=list, description="Ledger position ids the exchange no longer holds")
    adopted: List[str] = Field(default_factory=list, description="Ledger position ids created from untracked fills")

    @property
    def clean(self) -> bool:
        return not self.untracked and not self.missing


class AccountState(BaseModel):
    """
    Exchange-reported account figures.

    `account_value` follows the ledger convention: free cash after the
    collateral committed to open positions, plus their unrealized PnL. Venues
    that only know total equity (cash plus the full value of open positions)
    report `equity` and leave `account_value` unset; `ledger_value` converts.
    """
    account_value: Optional[float] = None
    equity: Optional[float] = None
    cash: Optional[float] = None
    unrealized_pnl: Optional[float] = None
    timestamp: datetime = Field(default_factory=utc_now)

    def ledger_value(self, committed_collateral: float) -> float:
        if self.account_value is not None:
            return self.account_value
        if self.equity is not None:
            return self.equity - committed_collateral
        raise ValueError("Account state carries neither account_value nor equity")


class Candle(BaseModel):
    """One OHLCV bar."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class IntervalIndicators(BaseModel):
    """Indicator readings for one candle interval. None means too little history."""
    interval: str
    candles: int = 0
    ema20: Optional[float] = None
    ema50: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_histogram: Optional[float] = None
    rsi7: Optional[float] = None
    rsi14: Optional[float] = None
    atr3: Optional[float] = None
    atr14: Optional[float] = None
    current_volume: float = 0.0
    avg_volume: float = 0.0
    recent_closes: List[float] = Field(default_factory=list)


class TechnicalSnapshot(BaseModel):
    """Short and long timeframe indicators for one instrument."""
    instrument: str
    current_price: float
    intraday: Optional[IntervalIndicators] = None
    long_term: Optional[IntervalIndicators] = None
    computed_at: datetime = Field(default_factory=utc_now)


class DecisionContext(BaseModel):
    """Everything the decision provider sees for one cycle."""
    agent_id: str
    name: str
    persona: str = ""
    cash_balance: float
    account_value: float
    total_return: float
    positions: List[Position] = Field(default_factory=list)
    quotes: List[MarketQuote] = Field(default_factory=list)
    available_instruments: List[str] = Field(default_factory=list)
    max_open_positions: int
    max_leverage: int
    max_stake_fraction: float
    technical: Dict[str, TechnicalSnapshot] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class ExecutionOutcome(BaseModel):
    """Final state of one decision plus the single audit entry it produced."""
    state: ExecutionState
    history: List[ExecutionState] = Field(default_factory=list)
    entry: TradeLogEntry
    decision: Optional[Decision] = None
    order: Optional[ExecutableOrder] = None
    rejection: Optional[Rejection] = None
    position: Optional[Position] = None
    close_result: Optional[CloseResult] = None
    follow_up_errors: List[str] = Field(default_factory=list)

    class Config:
        use_enum_values = True

    @field_validator("state")
    @classmethod
    def _terminal(cls, v):
        if ExecutionState(v) not in TERMINAL_STATES:
            raise ValueError(f"{v} is not a terminal execution state")
        return v


class CycleResult(BaseModel):
    """Complete result from one agent's decision cycle."""
    cycle_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    agent_id: str
    started_at: datetime = Field(default_factory=utc_now)
    skipped: bool = False
    raw_decision: Optional[Any] = None
    outcome: Optional[ExecutionOutcome] = None
    auto_closed: List[ExecutionOutcome] = Field(default_factory=list)
    drift: Optional[PositionDrift] = None
    errors: List[str] = Field(default_factory=list)
    duration_ms: float = 0.0
