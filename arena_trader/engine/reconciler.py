"""
BalanceReconciler - merges exchange-reported account value into the ledger.

Purpose: Accept plausible balance updates, reject implausible swings.
A report more than `anomaly_threshold_percent` away from the last committed
account value is treated as corrupt: the prior value is kept and the anomaly
is recorded. Callers hold the agent's state lock.

The exchange is also the authority on which positions exist: `diff_positions`
finds fills the ledger never booked (a submission that timed out but filled)
and ledger positions the exchange no longer holds.
"""
import logging
import math
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Tuple, Union

from ..config import TradingConfig
from ..errors import AgentNotFound, AnomalyDetected
from ..ring_buffer import RingBuffer
from ..schemas import (
    BalanceAnomaly,
    BalanceSnapshot,
    Direction,
    ExchangePosition,
    Position,
    PositionDrift,
    ReconciledBalance,
    utc_now,
)
from ..store import Store
from .observability import AuditTrail

logger = logging.getLogger("arena_trader.engine.reconciler")

ReconcileResult = Union[ReconciledBalance, BalanceAnomaly]

_QTY_TOLERANCE = 1e-9


def pnl_24h(history: RingBuffer) -> float:
    """Percent change from the oldest to the newest history entry."""
    oldest, newest = history.oldest(), history.newest()
    if not oldest or newest is None:
        return 0.0
    return (newest - oldest) / oldest * 100


def check_plausible(agent_id: str, prior: float, reported: float, threshold_percent: float) -> float:
    """
    Percent change from `prior` to `reported`.

    A prior value <= 0 has no baseline, so any finite report is plausible.

    Raises:
        AnomalyDetected: non-finite report, or a swing beyond the threshold
    """
    if not math.isfinite(reported):
        raise AnomalyDetected(agent_id, prior, reported, float("nan"))
    if prior <= 0:
        return 0.0
    change_percent = (reported - prior) / prior * 100
    if abs(change_percent) > threshold_percent:
        raise AnomalyDetected(agent_id, prior, reported, change_percent)
    return change_percent


class BalanceReconciler:
    """Anomaly-guarded commit of exchange-reported balances."""

    def __init__(
        self,
        config: TradingConfig,
        store: Store,
        audit: AuditTrail,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.store = store
        self.audit = audit
        self.clock = clock

    def reconcile(self, agent_id: str, reported_value: float) -> ReconcileResult:
        """
        Reconcile one exchange report against the ledger.

        Returns:
            ReconciledBalance when committed, BalanceAnomaly when rejected
        """
        agent = self.store.get_agent(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)

        prior = agent.account_value
        threshold = self.config.anomaly_threshold_percent

        try:
            change_percent = check_plausible(agent_id, prior, reported_value, threshold)
        except AnomalyDetected as e:
            return self._reject(agent_id, prior, reported_value, e.change_percent, threshold)

        positions = self.store.list_positions(agent_id)
        unrealized = sum(p.unrealized_pnl for p in positions)

        agent.account_value = reported_value
        agent.cash_balance = reported_value - unrealized
        if agent.initial_balance > 0:
            agent.total_return = (reported_value - agent.initial_balance) / agent.initial_balance * 100

        history = RingBuffer(
            self.config.pnl_history_length,
            initial=agent.pnl_history,
        )
        history.push(reported_value)
        agent.pnl_history = history.snapshot()
        agent.pnl_24h = pnl_24h(history)
        agent.updated_at = self.clock()
        self.store.save_agent(agent)

        snapshot = BalanceSnapshot(
            agent_id=agent_id,
            cash=agent.cash_balance,
            unrealized_pnl=unrealized,
            account_value=reported_value,
            return_percent=agent.total_return,
            open_count=len(positions),
            timestamp=agent.updated_at,
        )
        self.audit.record_snapshot(snapshot)

        logger.debug(
            f"{agent_id}: reconciled ${prior:.2f} -> ${reported_value:.2f} ({change_percent:+.2f}%)"
        )
        return ReconciledBalance(
            agent_id=agent_id,
            prior_value=prior,
            account_value=reported_value,
            cash_balance=agent.cash_balance,
            change_percent=change_percent,
            total_return=agent.total_return,
            pnl_24h=agent.pnl_24h,
            snapshot=snapshot,
        )

    def _reject(
        self,
        agent_id: str,
        prior: float,
        reported: float,
        change_percent: float,
        threshold: float,
    ) -> BalanceAnomaly:
        anomaly = BalanceAnomaly(
            agent_id=agent_id,
            prior_value=prior,
            reported_value=reported,
            change_percent=change_percent,
            threshold_percent=threshold,
            detected_at=self.clock(),
        )
        self.audit.record_anomaly(anomaly)
        return anomaly


def diff_positions(
    agent_id: str,
    ledger_positions: List[Position],
    exchange_positions: List[ExchangePosition],
) -> PositionDrift:
    """
    Compare open quantity per (instrument, direction) on both sides.

    Exchange quantity the ledger does not account for is reported as an
    untracked ExchangePosition for the difference. Ledger positions on a side
    where the exchange holds less are reported as missing, newest first, until
    the shortfall is covered.
    """
    held: Dict[Tuple[str, str], List[ExchangePosition]] = defaultdict(list)
    for pos in exchange_positions:
        held[(pos.instrument.upper(), Direction(pos.direction).value)].append(pos)
    booked: Dict[Tuple[str, str], List[Position]] = defaultdict(list)
    for pos in ledger_positions:
        booked[(pos.instrument.upper(), Direction(pos.direction).value)].append(pos)

    drift = PositionDrift(agent_id=agent_id)
    for key in sorted(set(held) | set(booked)):
        exchange_qty = sum(p.quantity for p in held.get(key, []))
        ledger_qty = sum(p.quantity for p in booked.get(key, []))
        tolerance = max(_QTY_TOLERANCE, _QTY_TOLERANCE * max(exchange_qty, ledger_qty))
        excess = exchange_qty - ledger_qty

        if excess > tolerance:
            reported = held[key]
            entry_price = sum(p.entry_price * p.quantity for p in reported) / exchange_qty
            drift.untracked.append(ExchangePosition(
                instrument=reported[0].instrument,
                direction=key[1],
                quantity=excess,
                entry_price=entry_price,
                unrealized_pnl=sum(p.unrealized_pnl for p in reported) * excess / exchange_qty,
            ))
        elif -excess > tolerance:
            shortfall = -excess
            for pos in sorted(booked[key], key=lambda p: p.opened_at, reverse=True):
                if shortfall <= tolerance:
                    break
                drift.missing.append(pos.id)
                shortfall -= pos.quantity
    return drift
