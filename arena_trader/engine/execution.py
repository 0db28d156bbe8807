"""
DecisionExecutor - drives one decision to a terminal state.

Purpose: RECEIVED -> VALIDATED -> SIZED -> SUBMITTED -> SETTLED | REJECTED | FAILED

- Malformed payloads are REJECTED with the validation reason.
- HOLD settles immediately as a genuine no-op.
- Sizing rejections are REJECTED, including an OPEN whose quote cannot be fetched
  (NO_QUOTE). A CLOSE on a missing position is a no-op rejection.
- Order submission is never retried. Any exchange error or timeout is FAILED.
  A timed-out submission may still fill, so its entry is marked
  `outcome_unknown`; the next position sync adopts the fill if it landed.
- The ledger only changes after the exchange confirms the fill.
- Protective orders are best-effort follow-ups; their failures never roll back
  the settlement.

Every terminal state produces exactly one TradeLogEntry. FAILED and REJECTED
entries carry action HOLD and are told apart from a real HOLD by `outcome`.

Callers hold the agent's state lock for the whole call.
"""
import logging
from typing import Any, List, Optional

from ..config import TradingConfig
from ..errors import DecisionValidationError, ExecutionFailure, SizingRejection
from ..registry import AgentContext
from ..resilience import gated_call
from ..schemas import (
    CloseDecision,
    ExecutableOrder,
    ExecutionOutcome,
    ExecutionState,
    HoldDecision,
    InstrumentClass,
    OpenDecision,
    OpenSpec,
    Position,
    Rejection,
    TradeAction,
    TradeLogEntry,
    parse_decision,
)
from .ledger import PositionLedger
from .market_data import MarketDataCache
from .observability import AuditTrail
from .risk_gate import find_position, size_decision

logger = logging.getLogger("arena_trader.engine.execution")


def _requested_action(raw: Any) -> Optional[str]:
    if isinstance(raw, dict) and raw.get("action") is not None:
        return str(raw["action"]).upper()[:32]
    return None


class DecisionExecutor:
    """Validation, sizing, submission and settlement of one decision."""

    def __init__(
        self,
        config: TradingConfig,
        ledger: PositionLedger,
        audit: AuditTrail,
        market: MarketDataCache,
    ):
        self.config = config
        self.ledger = ledger
        self.audit = audit
        self.market = market

    async def execute(self, ctx: AgentContext, raw: Any) -> ExecutionOutcome:
        """
        Run one raw decision payload through the state machine.

        Returns:
            ExecutionOutcome with the terminal state, state history and audit entry
        """
        agent_id = ctx.agent_id
        history: List[ExecutionState] = [ExecutionState.RECEIVED]
        requested = _requested_action(raw)

        try:
            decision = parse_decision(raw)
        except DecisionValidationError as e:
            logger.warning(f"{agent_id}: invalid decision rejected: {e}")
            return self._finish(
                ExecutionState.REJECTED,
                history,
                self._hold_entry(agent_id, ExecutionState.REJECTED, requested, f"INVALID_DECISION: {e}"),
                rejection=Rejection(code="INVALID_DECISION", message=str(e)),
            )

        history.append(ExecutionState.VALIDATED)
        requested = decision.action

        if isinstance(decision, HoldDecision):
            entry = TradeLogEntry(
                agent_id=agent_id,
                action=TradeAction.HOLD,
                outcome=ExecutionState.SETTLED,
                requested_action=requested,
                rationale=decision.rationale,
            )
            return self._finish(ExecutionState.SETTLED, history, entry, decision=decision)

        agent = self.ledger.get_agent(agent_id)
        positions = self.ledger.list_open(agent_id)

        try:
            if isinstance(decision, OpenDecision):
                quote = await self.market.quote(ctx.exchange, ctx.exchange_gate, decision.instrument)
            else:
                target = find_position(positions, decision.position_ref)
                quote = self.market.get(target.instrument) if target else None
        except Exception as e:
            logger.error(f"{agent_id}: quote unavailable: {e}")
            quote = None

        sized = size_decision(agent_id, decision, agent.cash_balance, positions, quote, ctx.profile.limits)
        if isinstance(sized, Rejection):
            instrument = getattr(decision, "instrument", None) or getattr(decision, "position_ref", None)
            if sized.noop:
                logger.info(f"{agent_id}: {sized.code} - {sized.message} (no-op)")
            else:
                logger.warning(f"{agent_id}: {decision.action} rejected {sized.code} - {sized.message}")
            return self._finish(
                ExecutionState.REJECTED,
                history,
                self._hold_entry(
                    agent_id, ExecutionState.REJECTED, requested, f"{sized.code}: {sized.message}",
                    instrument=instrument, rationale=decision.rationale,
                ),
                decision=decision,
                rejection=sized,
            )

        history.append(ExecutionState.SIZED)
        for note in sized.notes:
            logger.info(f"{agent_id}: sizing note - {note}")

        if not self.config.can_execute_orders():
            return self._failed(agent_id, history, sized, decision, "EXECUTION_DISABLED: order execution is latched off")

        history.append(ExecutionState.SUBMITTED)
        if isinstance(decision, CloseDecision):
            return await self._settle_close(ctx, decision, sized, history)
        return await self._settle_open(ctx, decision, sized, history)

    async def _settle_open(
        self,
        ctx: AgentContext,
        decision: OpenDecision,
        order: ExecutableOrder,
        history: List[ExecutionState],
    ) -> ExecutionOutcome:
        agent_id = ctx.agent_id
        try:
            fill = await gated_call(
                ctx.exchange_gate,
                ctx.exchange.place_order,
                order,
                timeout=self.config.call_timeout_seconds,
                operation="place_order",
            )
            if fill.filled_quantity <= 0 or fill.avg_price <= 0:
                raise ValueError(f"empty fill {fill.order_id}")
        except ExecutionFailure as e:
            if e.timed_out:
                return self._failed(
                    agent_id, history, order, decision, f"ORDER_OUTCOME_UNKNOWN: {e}", outcome_unknown=True
                )
            return self._failed(agent_id, history, order, decision, f"ORDER_FAILED: {e}")
        except Exception as e:
            return self._failed(agent_id, history, order, decision, f"ORDER_FAILED: {e}")

        spec = OpenSpec(
            instrument=order.instrument,
            instrument_class=order.instrument_class,
            direction=order.direction,
            quantity=fill.filled_quantity,
            entry_price=fill.avg_price,
            leverage=order.leverage,
            collateral=fill.filled_quantity * fill.avg_price / order.leverage,
            fees=fill.fee,
            stop_loss=order.stop_loss,
            take_profit=order.take_profit,
        )
        try:
            position = self.ledger.open_position(agent_id, spec)
        except SizingRejection as e:
            logger.error(f"{agent_id}: exchange filled {fill.order_id} but the ledger refused it: {e}")
            return self._failed(agent_id, history, order, decision, f"LEDGER_REFUSED_FILL {e.code}: {e}")

        follow_up_errors = await self._place_protective_orders(ctx, position)
        if follow_up_errors:
            position = self.ledger.get_position(position.id)

        reason_parts = order.notes + follow_up_errors
        entry = TradeLogEntry(
            agent_id=agent_id,
            action=TradeAction.OPEN,
            outcome=ExecutionState.SETTLED,
            requested_action=decision.action,
            instrument=position.instrument,
            direction=position.direction,
            quantity=position.quantity,
            leverage=position.leverage,
            entry_price=position.entry_price,
            notional=position.notional,
            collateral=position.collateral,
            fees=position.fees_paid,
            order_id=fill.order_id,
            rationale=decision.rationale,
            reason="; ".join(reason_parts) or None,
        )
        return self._finish(
            ExecutionState.SETTLED,
            history,
            entry,
            decision=decision,
            order=order,
            position=position,
            follow_up_errors=follow_up_errors,
        )

    async def _place_protective_orders(self, ctx: AgentContext, position: Position) -> List[str]:
        if position.instrument_class == InstrumentClass.BINARY:
            return []

        order_ids = {}
        errors = []
        for kind, price in (("stop_loss", position.stop_loss), ("take_profit", position.take_profit)):
            if price is None:
                continue
            try:
                order_ids[kind] = await gated_call(
                    ctx.exchange_gate,
                    ctx.exchange.place_protective_order,
                    position,
                    kind,
                    price,
                    timeout=self.config.call_timeout_seconds,
                    operation=f"place_{kind}",
                )
            except Exception as e:
                logger.warning(f"{ctx.agent_id}: could not place {kind} for {position.instrument}: {e}")
                errors.append(f"{kind.upper()}_NOT_PLACED: {e}")

        if order_ids:
            self.ledger.set_protective_orders(
                position.id,
                stop_loss_order_id=order_ids.get("stop_loss"),
                take_profit_order_id=order_ids.get("take_profit"),
            )
        return errors

    async def _settle_close(
        self,
        ctx: AgentContext,
        decision: CloseDecision,
        order: ExecutableOrder,
        history: List[ExecutionState],
    ) -> ExecutionOutcome:
        agent_id = ctx.agent_id
        position = self.ledger.get_position(order.position_id)

        try:
            fill = await gated_call(
                ctx.exchange_gate,
                ctx.exchange.close_position,
                position,
                timeout=self.config.call_timeout_seconds,
                operation="close_position",
            )
        except ExecutionFailure as e:
            if e.timed_out:
                return self._failed(
                    agent_id, history, order, decision, f"CLOSE_OUTCOME_UNKNOWN: {e}", outcome_unknown=True
                )
            return self._failed(agent_id, history, order, decision, f"CLOSE_FAILED: {e}")
        except Exception as e:
            return self._failed(agent_id, history, order, decision, f"CLOSE_FAILED: {e}")

        exit_price = fill.avg_price if fill.avg_price > 0 else order.reference_price
        result = self.ledger.close_position(position.id, exit_price, exit_fee=fill.fee)

        follow_up_errors = []
        for kind, order_id in (
            ("stop_loss", position.stop_loss_order_id),
            ("take_profit", position.take_profit_order_id),
        ):
            if not order_id:
                continue
            try:
                await gated_call(
                    ctx.exchange_gate,
                    ctx.exchange.cancel_order,
                    order_id,
                    timeout=self.config.call_timeout_seconds,
                    operation="cancel_order",
                )
            except Exception as e:
                logger.warning(f"{agent_id}: could not cancel {kind} order {order_id}: {e}")
                follow_up_errors.append(f"{kind.upper()}_NOT_CANCELLED: {e}")

        entry = TradeLogEntry(
            agent_id=agent_id,
            action=TradeAction.CLOSE,
            outcome=ExecutionState.SETTLED,
            requested_action=decision.action,
            instrument=result.instrument,
            direction=result.direction,
            quantity=result.quantity,
            leverage=result.leverage,
            entry_price=result.entry_price,
            exit_price=result.exit_price,
            notional=result.notional,
            collateral=result.collateral,
            fees=result.fees,
            pnl=result.pnl,
            pnl_percent=result.pnl_percent,
            holding_minutes=result.holding_minutes,
            holding_time=result.holding_time,
            order_id=fill.order_id,
            rationale=decision.rationale,
            reason="; ".join(follow_up_errors) or None,
        )
        return self._finish(
            ExecutionState.SETTLED,
            history,
            entry,
            decision=decision,
            order=order,
            close_result=result,
            follow_up_errors=follow_up_errors,
        )

    def _failed(
        self,
        agent_id: str,
        history: List[ExecutionState],
        order: ExecutableOrder,
        decision,
        reason: str,
        outcome_unknown: bool = False,
    ) -> ExecutionOutcome:
        logger.error(f"{agent_id}: {order.action} {order.instrument} failed - {reason}")
        entry = self._hold_entry(
            agent_id,
            ExecutionState.FAILED,
            decision.action,
            reason,
            instrument=order.instrument,
            rationale=decision.rationale,
            direction=order.direction,
            quantity=order.quantity,
            leverage=order.leverage,
            notional=order.notional,
            outcome_unknown=outcome_unknown,
        )
        return self._finish(ExecutionState.FAILED, history, entry, decision=decision, order=order)

    @staticmethod
    def _hold_entry(
        agent_id: str,
        outcome: ExecutionState,
        requested: Optional[str],
        reason: str,
        rationale: str = "",
        **fields: Any,
    ) -> TradeLogEntry:
        return TradeLogEntry(
            agent_id=agent_id,
            action=TradeAction.HOLD,
            outcome=outcome,
            requested_action=requested,
            rationale=rationale,
            reason=reason,
            **fields,
        )

    def _finish(
        self,
        state: ExecutionState,
        history: List[ExecutionState],
        entry: TradeLogEntry,
        **details: Any,
    ) -> ExecutionOutcome:
        history.append(state)
        self.audit.record(entry)
        return ExecutionOutcome(state=state, history=history, entry=entry, **details)
