"""
CycleOrchestrator - per-agent decision cycle and balance sync.

Purpose: Run one agent's cycle end to end and return a single result.

Handoffs (strict order, one agent at a time):
  position sync -> time-limit auto-close -> context (quotes, indicators)
    -> DecisionProvider -> DecisionExecutor -> AuditTrail

The decision provider is called without the agent's state lock (it can take
a long time and never touches the ledger). Ledger state is re-read under the
lock before anything is executed, so a timed-out earlier cycle or a balance
sync in between is always seen.
"""
import logging
import time
from datetime import timedelta
from typing import Dict, List, Optional, Union

from ..config import TradingConfig
from ..registry import AgentContext, AgentRegistry
from ..resilience import RetryConfig, gated_call, with_retry
from ..schemas import (
    Agent,
    BalanceAnomaly,
    BalanceSnapshot,
    CycleResult,
    DecisionContext,
    ExchangePosition,
    ExecutionOutcome,
    InstrumentClass,
    MarketQuote,
    OpenSpec,
    Position,
    PositionDrift,
    ReconciledBalance,
    TradeAction,
    TradeLogEntry,
    ExecutionState,
    utc_now,
)
from ..store import Store, create_store
from .execution import DecisionExecutor
from .ledger import PositionLedger, format_holding_time, holding_minutes
from .market_data import MarketDataCache
from .observability import AuditTrail
from .reconciler import BalanceReconciler, diff_positions

logger = logging.getLogger("arena_trader.engine.orchestrator")


class CycleOrchestrator:
    """
    Orchestrates per-agent work.

    Strict handoff order for a decision cycle:
    1. Adopt exchange fills the ledger never booked (timed-out submissions)
    2. Close positions past the agent's holding-time limit
    3. Build the decision context (balance, positions, quotes, indicators, limits)
    4. DecisionProvider - raw payload (degrades to HOLD on failure)
    5. DecisionExecutor - validate, size, submit, settle
    6. AuditTrail - exactly one entry per outcome
    """

    def __init__(self, config: TradingConfig, registry: AgentRegistry, store: Store, clock=utc_now):
        self.config = config
        self.registry = registry
        self.store = store
        self.clock = clock

        self.audit = AuditTrail(store)
        self.ledger = PositionLedger(config, store, clock=clock)
        self.market = MarketDataCache(config, store, clock=clock)
        self.executor = DecisionExecutor(config, self.ledger, self.audit, self.market)
        self.reconciler = BalanceReconciler(config, store, self.audit, clock=clock)
        self.retry = RetryConfig(
            max_attempts=config.read_retry_attempts,
            base_delay_sec=config.read_retry_base_delay,
        )

        logger.info(
            f"Orchestrator initialized - Mode: {config.trading_mode.value}, "
            f"Agents: {', '.join(registry.agent_ids)}"
        )

    def initialize_agents(self) -> List[Agent]:
        """Create agent records missing from the store; existing ones are kept."""
        return [self.ledger.ensure_agent(ctx.profile) for ctx in self.registry]

    # -- decision cycle -----------------------------------------------------

    async def run_agent_cycle(self, agent_id: str) -> CycleResult:
        """
        Run one complete decision cycle for one agent.

        Non-reentrant: if a cycle for this agent is already in flight the call
        returns immediately with `skipped=True`. Never raises for per-agent
        failures; they are recorded as a FAILED HOLD entry.
        """
        ctx = self.registry.get(agent_id)
        result = CycleResult(agent_id=agent_id, started_at=self.clock())

        if ctx.cycle_lock.locked():
            logger.info(f"{agent_id}: cycle already in flight, skipping")
            result.skipped = True
            return result

        start_time = time.time()
        async with ctx.cycle_lock:
            try:
                logger.info(f"=== CYCLE START: {agent_id} ===")
                async with ctx.state_lock:
                    try:
                        result.drift = await self._sync_positions(ctx)
                    except Exception as e:
                        logger.warning(f"{agent_id}: could not read exchange positions: {e}")
                        result.errors.append(f"position sync: {e}")
                result.auto_closed = await self._close_expired(ctx)

                context = await self._build_context(ctx)
                raw = await self._get_decision(ctx, context, result)
                result.raw_decision = raw

                async with ctx.state_lock:
                    result.outcome = await self.executor.execute(ctx, raw)
                    self.ledger.set_last_decision(agent_id, self._describe(result.outcome))

            except Exception as e:
                logger.error(f"{agent_id}: cycle error: {e}", exc_info=True)
                result.errors.append(str(e))
                if result.outcome is None:
                    entry = self.audit.record(TradeLogEntry(
                        agent_id=agent_id,
                        action=TradeAction.HOLD,
                        outcome=ExecutionState.FAILED,
                        reason=f"CYCLE_ERROR: {e}",
                    ))
                    result.outcome = ExecutionOutcome(
                        state=ExecutionState.FAILED,
                        history=[ExecutionState.RECEIVED, ExecutionState.FAILED],
                        entry=entry,
                    )

        result.duration_ms = (time.time() - start_time) * 1000
        logger.info(f"=== CYCLE COMPLETE: {agent_id} ({result.duration_ms:.0f}ms) ===")
        return result

    async def _close_expired(self, ctx: AgentContext) -> List[ExecutionOutcome]:
        limit = ctx.profile.limits.max_holding_minutes
        outcomes = []
        async with ctx.state_lock:
            for position in self.ledger.expired_positions(ctx.agent_id, limit):
                held = format_holding_time(holding_minutes(position.opened_at, self.clock()))
                logger.info(f"{ctx.agent_id}: {position.instrument} held {held}, closing (limit {limit}m)")
                outcome = await self.executor.execute(ctx, {
                    "action": "CLOSE",
                    "position_id": position.id,
                    "rationale": f"Auto-closed after {held} (time limit exceeded)",
                })
                outcomes.append(outcome)
        return outcomes

    async def _build_context(self, ctx: AgentContext) -> DecisionContext:
        async with ctx.state_lock:
            agent = self.ledger.get_agent(ctx.agent_id)
            positions = self.ledger.list_open(ctx.agent_id)

        if self.market.is_stale():
            try:
                await self.market.refresh(ctx.exchange, ctx.exchange_gate)
            except Exception as e:
                logger.warning(f"{ctx.agent_id}: market refresh failed, using cached snapshot: {e}")

        quotes = self.market.snapshot()
        technical = {}
        if self.config.technical_top_n > 0:
            top = [q.instrument for q in quotes[: self.config.technical_top_n]]
            technical = await self.market.technical(ctx.exchange, ctx.exchange_gate, top)
        limits = ctx.profile.limits
        return DecisionContext(
            agent_id=ctx.agent_id,
            name=agent.name,
            persona=agent.persona,
            cash_balance=agent.cash_balance,
            account_value=agent.account_value,
            total_return=agent.total_return,
            positions=positions,
            quotes=quotes,
            available_instruments=[q.instrument for q in quotes],
            max_open_positions=limits.max_open_positions,
            max_leverage=limits.max_leverage,
            max_stake_fraction=limits.max_stake_fraction,
            technical=technical,
            timestamp=self.clock(),
        )

    async def _get_decision(self, ctx: AgentContext, context: DecisionContext, result: CycleResult):
        """Ask the provider; any failure or timeout becomes a synthetic HOLD."""
        try:
            return await gated_call(
                ctx.decision_gate,
                ctx.decision_provider.get_decision,
                ctx.agent_id,
                context,
                timeout=self.config.call_timeout_seconds,
                operation="get_decision",
            )
        except Exception as e:
            logger.error(f"{ctx.agent_id}: decision provider failed: {e}")
            result.errors.append(f"decision provider: {e}")
            return {"action": "HOLD", "rationale": f"Decision unavailable ({e}), staying safe"}

    @staticmethod
    def _describe(outcome: ExecutionOutcome) -> str:
        entry = outcome.entry
        text = entry.rationale or entry.reason or ""
        if entry.action == TradeAction.HOLD and entry.outcome != ExecutionState.SETTLED:
            return f"{entry.requested_action or 'DECISION'} {entry.outcome}: {entry.reason or ''}"[:500]
        return f"{entry.action} {entry.instrument or ''} {text}".replace("  ", " ").strip()[:500]

    # -- balance sync -------------------------------------------------------

    async def sync_balance(self, agent_id: str) -> Optional[Union[ReconciledBalance, BalanceAnomaly]]:
        """
        Adopt untracked exchange fills, mark open positions to market, then
        reconcile against the exchange.

        Runs entirely under the agent's state lock, so a decision cycle can
        never settle between the exchange read and the commit. Never calls the
        decision provider. Returns None when the exchange could not be read;
        the ledger is left as it was.
        """
        ctx = self.registry.get(agent_id)

        async with ctx.state_lock:
            try:
                await self._sync_positions(ctx)
                positions = self.ledger.list_open(agent_id)
                prices: Dict[str, float] = {}
                for instrument in {p.instrument for p in positions}:
                    quote = await self.market.quote(ctx.exchange, ctx.exchange_gate, instrument)
                    if quote is not None:
                        prices[instrument] = quote.price

                account = await with_retry(
                    lambda: gated_call(
                        ctx.exchange_gate,
                        ctx.exchange.get_account_state,
                        timeout=self.config.call_timeout_seconds,
                        operation="get_account_state",
                    ),
                    operation=f"get_account_state {agent_id}",
                    config=self.retry,
                )
            except Exception as e:
                logger.warning(f"{agent_id}: balance sync skipped, exchange unavailable: {e}")
                return None

            for position in positions:
                price = prices.get(position.instrument)
                if price is not None:
                    self.ledger.mark_to_market(position.id, price)
            committed = sum(p.collateral for p in positions)
            return self.reconciler.reconcile(agent_id, account.ledger_value(committed))

    async def _sync_positions(self, ctx: AgentContext) -> PositionDrift:
        """
        Compare the exchange's open positions with the ledger. Caller holds the
        agent's state lock.

        Fills the ledger never booked are adopted at the exchange's entry price;
        ledger positions the exchange no longer holds are only reported, since
        their exit price is unknown.
        """
        exchange_positions = await with_retry(
            lambda: gated_call(
                ctx.exchange_gate,
                ctx.exchange.get_open_positions,
                timeout=self.config.call_timeout_seconds,
                operation="get_open_positions",
            ),
            operation=f"get_open_positions {ctx.agent_id}",
            config=self.retry,
        )
        drift = diff_positions(ctx.agent_id, self.ledger.list_open(ctx.agent_id), exchange_positions)
        for untracked in drift.untracked:
            drift.adopted.append(self._adopt(ctx, untracked).id)
        if drift.missing:
            logger.warning(
                f"{ctx.agent_id}: {len(drift.missing)} ledger position(s) not held on the exchange: "
                f"{', '.join(drift.missing)}"
            )
        return drift

    def _adopt(self, ctx: AgentContext, untracked: ExchangePosition) -> Position:
        agent_id = ctx.agent_id
        unknown = self._last_unknown_open(agent_id, untracked)
        leverage = unknown.leverage if unknown and unknown.leverage else 1
        quote = self.market.get(untracked.instrument)

        position = self.ledger.open_position(
            agent_id,
            OpenSpec(
                instrument=untracked.instrument,
                instrument_class=quote.instrument_class if quote else InstrumentClass.PERPETUAL,
                direction=untracked.direction,
                quantity=untracked.quantity,
                entry_price=untracked.entry_price,
                leverage=leverage,
                collateral=untracked.quantity * untracked.entry_price / leverage,
            ),
            enforce_limits=False,
        )
        origin = f"order timed out at {unknown.timestamp.isoformat()}" if unknown else "no matching order"
        self.audit.record(TradeLogEntry(
            agent_id=agent_id,
            action=TradeAction.OPEN,
            outcome=ExecutionState.SETTLED,
            instrument=position.instrument,
            direction=position.direction,
            quantity=position.quantity,
            leverage=position.leverage,
            entry_price=position.entry_price,
            notional=position.notional,
            collateral=position.collateral,
            rationale=unknown.rationale if unknown else "",
            reason=f"ADOPTED_UNTRACKED_FILL: exchange holds a position the ledger did not ({origin})",
        ))
        logger.warning(
            f"{agent_id}: adopted untracked {position.direction} {position.quantity} {position.instrument} "
            f"@ ${position.entry_price:,.4f} ({origin})"
        )
        return position

    def _last_unknown_open(self, agent_id: str, untracked: ExchangePosition) -> Optional[TradeLogEntry]:
        for entry in reversed(self.store.list_trades(agent_id)):
            if (
                entry.outcome_unknown
                and entry.requested_action == TradeAction.OPEN
                and entry.instrument == untracked.instrument
                and entry.direction == untracked.direction
            ):
                return entry
        return None

    async def refresh_market(self) -> List[MarketQuote]:
        """Refresh the shared market snapshot through the first agent's exchange."""
        ctx = next(iter(self.registry))
        return await self.market.refresh(ctx.exchange, ctx.exchange_gate)

    def cleanup_trades(self) -> int:
        cutoff = self.clock() - timedelta(days=self.config.trade_retention_days)
        return self.audit.prune(cutoff)

    # -- read-only snapshots -----------------------------------------------

    def get_agents(self) -> List[Agent]:
        order = {agent_id: i for i, agent_id in enumerate(self.registry.agent_ids)}
        agents = [a for a in self.store.list_agents() if a.id in order]
        return sorted(agents, key=lambda a: order[a.id])

    def get_agent(self, agent_id: str) -> Agent:
        return self.ledger.get_agent(agent_id)

    def get_positions(self, agent_id: Optional[str] = None) -> List[Position]:
        return self.store.list_positions(agent_id)

    def get_trades(self, agent_id: Optional[str] = None, limit: int = 50) -> List[TradeLogEntry]:
        return self.audit.recent_trades(agent_id, limit=limit)

    def get_snapshots(self, agent_id: str, limit: Optional[int] = None) -> List[BalanceSnapshot]:
        self.registry.get(agent_id)
        return self.audit.snapshots(agent_id, limit=limit)

    def get_market(self) -> List[MarketQuote]:
        return self.market.snapshot()


def build_orchestrator(config: TradingConfig, registry: Optional[AgentRegistry] = None,
                       store: Optional[Store] = None) -> CycleOrchestrator:
    """Wire an orchestrator from configuration, creating agents missing from the store."""
    registry = registry or AgentRegistry.from_config(config)
    store = store or create_store(config)
    orchestrator = CycleOrchestrator(config, registry, store)
    orchestrator.initialize_agents()
    return orchestrator
