"""
PositionLedger - authoritative per-agent record of cash and open positions.

Purpose: Open, mark and close positions while keeping
    account_value == cash_balance + sum(unrealized_pnl of open positions)
true after every operation.

Accounting policy (both instrument classes):
- price PnL = sign(direction) * quantity * (price - entry_price); fees never enter PnL
- open:  cash -= cost_basis (collateral + entry fee)
- close: cash += collateral + pnl - exit fee

The ledger is synchronous and does no locking. Callers hold the agent's state
lock around every read-modify-write.
"""
import logging
import math
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from ..config import AgentProfile, RiskLimits, TradingConfig
from ..errors import AgentNotFound, InsufficientBalance, MaxPositionsReached, PositionNotFound, SubMinimumNotional
from ..ring_buffer import RingBuffer
from ..schemas import Agent, CloseResult, InstrumentClass, OpenSpec, Position, utc_now
from ..store import Store

logger = logging.getLogger("arena_trader.engine.ledger")


def format_holding_time(minutes: int) -> str:
    """Format whole minutes as e.g. '1H 5M'."""
    return f"{minutes // 60}H {minutes % 60}M"


def holding_minutes(opened_at: datetime, now: datetime) -> int:
    """Whole minutes elapsed, floored, never negative."""
    return max(0, int((now - opened_at).total_seconds() // 60))


class PositionLedger:
    """Open/close/mark operations over the Store."""

    def __init__(self, config: TradingConfig, store: Store, clock: Callable[[], datetime] = utc_now):
        self.config = config
        self.store = store
        self.clock = clock

    # -- agents -------------------------------------------------------------

    def ensure_agent(self, profile: AgentProfile) -> Agent:
        """Create the agent record on first start; an existing record is left untouched."""
        existing = self.store.get_agent(profile.agent_id)
        if existing is not None:
            return existing

        history = RingBuffer(self.config.pnl_history_length, fill=profile.initial_balance)
        agent = Agent(
            id=profile.agent_id,
            name=profile.name,
            persona=profile.persona,
            cash_balance=profile.initial_balance,
            account_value=profile.initial_balance,
            initial_balance=profile.initial_balance,
            pnl_history=history.snapshot(),
            updated_at=self.clock(),
        )
        self.store.save_agent(agent)
        logger.info(f"Initialized agent '{agent.id}' with ${agent.initial_balance:.2f}")
        return agent

    def get_agent(self, agent_id: str) -> Agent:
        agent = self.store.get_agent(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)
        return agent

    def list_open(self, agent_id: str) -> List[Position]:
        return self.store.list_positions(agent_id)

    def get_position(self, position_id: str) -> Position:
        position = self.store.get_position(position_id)
        if position is None:
            raise PositionNotFound(position_id)
        return position

    def set_last_decision(self, agent_id: str, text: str) -> Agent:
        agent = self.get_agent(agent_id)
        agent.last_decision = text
        agent.updated_at = self.clock()
        self.store.save_agent(agent)
        return agent

    def _limits(self, agent_id: str) -> RiskLimits:
        try:
            return self.config.get_profile(agent_id).limits
        except KeyError:
            raise AgentNotFound(agent_id)

    def _refresh_totals(self, agent: Agent, positions: List[Position]) -> None:
        """Re-derive account_value and total_return from cash and open positions."""
        agent.account_value = agent.cash_balance + sum(p.unrealized_pnl for p in positions)
        if agent.initial_balance > 0:
            agent.total_return = (agent.account_value - agent.initial_balance) / agent.initial_balance * 100
        agent.updated_at = self.clock()

    # -- positions ----------------------------------------------------------

    def open_position(self, agent_id: str, spec: OpenSpec, enforce_limits: bool = True) -> Position:
        """
        Record a settled OPEN fill.

        `enforce_limits=False` books a fill that already happened on the exchange
        (an order whose submission timed out) and skips the pre-trade guards.

        Raises:
            MaxPositionsReached: agent already at its open-position cap
            SubMinimumNotional: notional below the instrument class floor
            InsufficientBalance: cost basis exceeds available cash
        """
        agent = self.get_agent(agent_id)
        limits = self._limits(agent_id)
        positions = self.store.list_positions(agent_id)

        if enforce_limits:
            self._check_open_limits(agent_id, agent, limits, positions, spec)
        elif spec.cost_basis > agent.cash_balance + 1e-9:
            logger.warning(
                f"{agent_id}: booking untracked fill of ${spec.cost_basis:.2f} with only ${agent.cash_balance:.2f} cash"
            )

        position = Position(
            id=uuid.uuid4().hex,
            agent_id=agent_id,
            instrument=spec.instrument,
            instrument_class=spec.instrument_class,
            direction=spec.direction,
            quantity=spec.quantity,
            entry_price=spec.entry_price,
            leverage=spec.leverage,
            collateral=spec.collateral,
            notional=spec.notional,
            fees_paid=spec.fees,
            cost_basis=spec.cost_basis,
            mark_price=spec.entry_price,
            opened_at=self.clock(),
            stop_loss=spec.stop_loss,
            take_profit=spec.take_profit,
            stop_loss_order_id=spec.stop_loss_order_id,
            take_profit_order_id=spec.take_profit_order_id,
        )

        agent.cash_balance -= spec.cost_basis
        self._refresh_totals(agent, positions + [position])
        self.store.commit(agent, upsert=[position])

        logger.info(
            f"{agent_id}: OPENED {position.direction} {position.quantity} {position.instrument} "
            f"@ ${position.entry_price:,.4f} {position.leverage}x | notional ${position.notional:.2f} | "
            f"cash ${agent.cash_balance:.2f}"
        )
        return position

    @staticmethod
    def _check_open_limits(
        agent_id: str,
        agent: Agent,
        limits: RiskLimits,
        positions: List[Position],
        spec: OpenSpec,
    ) -> None:
        if len(positions) >= limits.max_open_positions:
            raise MaxPositionsReached(
                f"{agent_id} has {len(positions)} open positions (max {limits.max_open_positions})"
            )

        floor = limits.min_notional_binary if spec.instrument_class == InstrumentClass.BINARY else limits.min_notional
        if spec.notional + 1e-9 < floor:
            raise SubMinimumNotional(f"Notional ${spec.notional:.2f} below minimum ${floor:.2f}")

        if spec.cost_basis > agent.cash_balance + 1e-9:
            raise InsufficientBalance(
                f"{agent_id} needs ${spec.cost_basis:.2f} but has ${agent.cash_balance:.2f}"
            )

    def close_position(self, position_id: str, exit_price: float, exit_fee: float = 0.0) -> CloseResult:
        """
        Record a confirmed close. Removal, cash credit and counters commit together.

        Raises:
            PositionNotFound: position already closed or never existed
        """
        position = self.get_position(position_id)
        agent = self.get_agent(position.agent_id)
        now = self.clock()

        pnl = position.price_pnl(exit_price)
        cash_credited = position.collateral + pnl - exit_fee
        minutes = holding_minutes(position.opened_at, now)

        agent.cash_balance += cash_credited
        agent.total_trades += 1
        if pnl > 0:
            agent.wins += 1
        else:
            agent.losses += 1

        remaining = [p for p in self.store.list_positions(agent.id) if p.id != position.id]
        self._refresh_totals(agent, remaining)
        self.store.commit(agent, remove=[position.id])

        result = CloseResult(
            position_id=position.id,
            agent_id=agent.id,
            instrument=position.instrument,
            direction=position.direction,
            quantity=position.quantity,
            leverage=position.leverage,
            entry_price=position.entry_price,
            exit_price=exit_price,
            collateral=position.collateral,
            notional=position.notional,
            pnl=pnl,
            pnl_percent=position.price_move_percent(exit_price),
            fees=position.fees_paid + exit_fee,
            cash_credited=cash_credited,
            holding_minutes=minutes,
            holding_time=format_holding_time(minutes),
            closed_at=now,
        )
        logger.info(
            f"{agent.id}: CLOSED {position.direction} {position.instrument} | "
            f"Entry: ${position.entry_price:,.4f} -> Exit: ${exit_price:,.4f} | "
            f"P&L: ${pnl:.2f} ({result.pnl_percent:.2f}%) | Held: {result.holding_time}"
        )
        return result

    def mark_to_market(self, position_id: str, mark_price: float) -> Position:
        """
        Re-price one position. Idempotent; identity fields never change.

        Raises:
            PositionNotFound: unknown position
        """
        position = self.get_position(position_id)
        if not math.isfinite(mark_price) or mark_price <= 0:
            logger.warning(f"Ignoring invalid mark price {mark_price} for {position.instrument}")
            return position

        position.mark_price = mark_price
        position.unrealized_pnl = position.price_pnl(mark_price)
        position.unrealized_pnl_percent = position.price_move_percent(mark_price)

        agent = self.get_agent(position.agent_id)
        positions = [position if p.id == position.id else p for p in self.store.list_positions(agent.id)]
        self._refresh_totals(agent, positions)
        self.store.commit(agent, upsert=[position])
        return position

    def set_protective_orders(
        self,
        position_id: str,
        stop_loss_order_id: Optional[str] = None,
        take_profit_order_id: Optional[str] = None,
    ) -> Position:
        """Attach the resting stop-loss / take-profit order ids to a position."""
        position = self.get_position(position_id)
        if stop_loss_order_id:
            position.stop_loss_order_id = stop_loss_order_id
        if take_profit_order_id:
            position.take_profit_order_id = take_profit_order_id
        self.store.save_position(position)
        return position

    def expired_positions(self, agent_id: str, max_holding_minutes: Optional[int]) -> List[Position]:
        """Open positions held longer than `max_holding_minutes`."""
        if not max_holding_minutes:
            return []
        now = self.clock()
        return [
            p for p in self.store.list_positions(agent_id)
            if (now - p.opened_at).total_seconds() > max_holding_minutes * 60
        ]
