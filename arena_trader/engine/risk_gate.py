"""
Risk & sizing policy - deterministic gatekeeper.

Purpose: Turn a validated Decision into an ExecutableOrder or a Rejection.
This is the hard wall between the decision provider and the exchange.

Rules enforced (in order):
- balance must be positive
- max open positions
- a positive quote must exist
- binary instruments: LONG only, leverage 1
- leverage ceiling (hard cap, applied first)
- stake = requested or default fraction, capped by max fraction and per-trade ceiling
- minimum notional on the rounded quantity (never upsized unless auto_raise_leverage
  is enabled, which picks the lowest leverage within the ceiling that clears it)
- protective levels on perpetuals, on the correct side of the quote
- quantity rounded down to the instrument precision

Pure function: no I/O, no clock, no mutation of its inputs.
"""
import math
from decimal import ROUND_DOWN, Decimal
from typing import List, Optional, Union

from ..config import RiskLimits
from ..schemas import (
    CloseDecision,
    Decision,
    Direction,
    ExecutableOrder,
    HoldDecision,
    InstrumentClass,
    MarketQuote,
    OpenDecision,
    Position,
    Rejection,
    TradeAction,
)

SizingResult = Union[ExecutableOrder, Rejection]

_EPSILON = 1e-9


def round_quantity(quantity: float, precision: int) -> float:
    """Round down to `precision` decimal places."""
    step = Decimal(1).scaleb(-max(precision, 0))
    return float(Decimal(str(quantity)).quantize(step, rounding=ROUND_DOWN))


def find_position(positions: List[Position], position_ref: str) -> Optional[Position]:
    """Resolve a CLOSE reference: exact id first, then the oldest position on that instrument."""
    for position in positions:
        if position.id == position_ref:
            return position
    ref = position_ref.upper()
    matches = [p for p in positions if p.instrument.upper() == ref]
    if not matches:
        return None
    return min(matches, key=lambda p: p.opened_at)


def _rounded_notional(stake: float, leverage: int, price: float, precision: int) -> float:
    return round_quantity(stake * leverage / price, precision) * price


def _lowest_clearing_leverage(
    stake: float,
    leverage: int,
    price: float,
    precision: int,
    floor: float,
    max_leverage: int,
) -> Optional[int]:
    """Lowest leverage up to `max_leverage` whose rounded notional clears `floor`."""
    if stake <= 0:
        return None
    start = max(leverage + 1, math.ceil(floor / stake))
    for candidate in range(start, max_leverage + 1):
        if _rounded_notional(stake, candidate, price, precision) + _EPSILON >= floor:
            return candidate
    return None


def size_decision(
    agent_id: str,
    decision: Decision,
    balance: float,
    open_positions: List[Position],
    quote: Optional[MarketQuote],
    limits: RiskLimits,
) -> SizingResult:
    """
    Size one decision for one agent.

    Args:
        agent_id: Agent the order is for
        decision: Validated OPEN or CLOSE decision
        balance: Agent's available cash
        open_positions: Agent's open positions
        quote: Current quote for the decision's instrument (None if unknown)
        limits: Agent's risk limits

    Returns:
        ExecutableOrder when accepted, Rejection with a stable code otherwise
    """
    if isinstance(decision, HoldDecision):
        return Rejection(code="NOTHING_TO_SIZE", message="HOLD needs no sizing", noop=True)
    if isinstance(decision, CloseDecision):
        return _size_close(agent_id, decision, open_positions, quote)
    return _size_open(agent_id, decision, balance, open_positions, quote, limits)


def _size_close(
    agent_id: str,
    decision: CloseDecision,
    open_positions: List[Position],
    quote: Optional[MarketQuote],
) -> SizingResult:
    position = find_position(open_positions, decision.position_ref)
    if position is None:
        return Rejection(
            code="POSITION_NOT_FOUND",
            message=f"No open position matches '{decision.position_ref}'",
            noop=True,
        )

    reference_price = quote.price if quote and quote.price > 0 else position.mark_price
    return ExecutableOrder(
        agent_id=agent_id,
        action=TradeAction.CLOSE,
        instrument=position.instrument,
        instrument_class=position.instrument_class,
        direction=position.direction,
        stake=position.collateral,
        leverage=position.leverage,
        notional=position.notional,
        quantity=position.quantity,
        reference_price=reference_price,
        position_id=position.id,
    )


def _size_open(
    agent_id: str,
    decision: OpenDecision,
    balance: float,
    open_positions: List[Position],
    quote: Optional[MarketQuote],
    limits: RiskLimits,
) -> SizingResult:
    notes: List[str] = []

    if not math.isfinite(balance) or balance <= 0:
        return Rejection(code="INSUFFICIENT_BALANCE", message=f"Balance ${balance:.2f} is not positive")

    if len(open_positions) >= limits.max_open_positions:
        return Rejection(
            code="MAX_POSITIONS_REACHED",
            message=f"{len(open_positions)} positions open (max {limits.max_open_positions})",
        )

    if quote is None or not quote.price > 0:
        return Rejection(code="NO_QUOTE", message=f"No price available for {decision.instrument}")

    price = quote.price
    is_binary = quote.instrument_class == InstrumentClass.BINARY
    direction = Direction(decision.direction)

    if is_binary:
        if direction != Direction.LONG:
            return Rejection(
                code="UNSUPPORTED_DIRECTION",
                message=f"Binary instrument {decision.instrument} can only be bought",
            )
        leverage = 1
    else:
        requested = decision.leverage or limits.default_leverage
        leverage = max(1, min(requested, limits.max_leverage))
        if leverage != requested:
            notes.append(f"Leverage clamped from {requested}x to {leverage}x")

    stake = decision.stake if decision.stake else balance * limits.default_stake_fraction
    max_stake = min(balance * limits.max_stake_fraction, limits.max_stake_per_trade)
    if stake > max_stake:
        notes.append(f"Stake capped from ${stake:.2f} to ${max_stake:.2f}")
        stake = max_stake

    floor = limits.min_notional_binary if is_binary else limits.min_notional
    precision = quote.quantity_precision
    if _rounded_notional(stake, leverage, price, precision) + _EPSILON < floor:
        can_raise = limits.auto_raise_leverage and not is_binary
        raised = None
        if can_raise:
            raised = _lowest_clearing_leverage(stake, leverage, price, precision, floor, limits.max_leverage)
        if raised is None:
            notional = stake * (limits.max_leverage if can_raise else leverage)
            if notional + _EPSILON < floor:
                message = f"Notional ${notional:.2f} below minimum ${floor:.2f}"
            else:
                quantity = round_quantity(notional / price, precision)
                message = (
                    f"Rounded quantity {quantity} gives ${quantity * price:.2f}, below minimum ${floor:.2f}"
                )
            return Rejection(code="SUB_MINIMUM_NOTIONAL", message=message)
        notes.append(f"Leverage raised from {leverage}x to {raised}x to meet ${floor:.2f} minimum notional")
        leverage = raised
    notional = stake * leverage

    if not is_binary:
        if decision.stop_loss is None or decision.take_profit is None:
            return Rejection(
                code="MISSING_PROTECTIVE_LEVELS",
                message="Perpetual positions require stop_loss and take_profit",
            )
        if direction == Direction.LONG:
            valid = decision.stop_loss < price < decision.take_profit
        else:
            valid = decision.take_profit < price < decision.stop_loss
        if not valid:
            return Rejection(
                code="INVALID_PROTECTIVE_LEVELS",
                message=(
                    f"{direction.value} at ${price:,.4f} needs stop_loss and take_profit on opposite sides "
                    f"(got SL ${decision.stop_loss:,.4f}, TP ${decision.take_profit:,.4f})"
                ),
            )

    quantity = round_quantity(notional / price, precision)
    filled_notional = quantity * price
    if quantity <= 0:
        return Rejection(code="SUB_MINIMUM_NOTIONAL", message=f"Quantity rounds to zero at ${price:,.4f}")
    if filled_notional + _EPSILON < notional:
        notes.append(f"Quantity rounded to {quantity} (notional ${filled_notional:.2f})")
        notional = filled_notional
        stake = notional / leverage

    return ExecutableOrder(
        agent_id=agent_id,
        action=TradeAction.OPEN,
        instrument=decision.instrument,
        instrument_class=quote.instrument_class,
        direction=direction,
        stake=stake,
        leverage=leverage,
        notional=notional,
        quantity=quantity,
        reference_price=price,
        stop_loss=decision.stop_loss,
        take_profit=decision.take_profit,
        notes=notes,
    )
