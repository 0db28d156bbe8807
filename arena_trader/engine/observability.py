"""
AuditTrail - Logging and audit trail.

Purpose: Every terminal decision outcome, balance snapshot and anomaly is
appended to the Store and summarised in the process log.
"""
import logging
from datetime import datetime
from typing import List, Optional

from ..schemas import BalanceAnomaly, BalanceSnapshot, TradeLogEntry
from ..store import Store

logger = logging.getLogger("arena_trader.engine.observability")


class AuditTrail:
    """Append-only record of trading activity."""

    def __init__(self, store: Store):
        self.store = store

    def record(self, entry: TradeLogEntry) -> TradeLogEntry:
        """Append one outcome entry and log its summary line."""
        try:
            self.store.append_trade(entry)
        except OSError as e:
            logger.error(f"Failed to append trade entry {entry.id} for {entry.agent_id}: {e}")
        self._log_summary(entry)
        return entry

    def _log_summary(self, entry: TradeLogEntry):
        """Log a summary line for quick review."""
        if entry.instrument:
            detail = f"{entry.direction or ''} {entry.instrument}".strip()
            if entry.pnl is not None:
                detail += f" P&L ${entry.pnl:.2f}"
            elif entry.notional is not None:
                detail += f" ${entry.notional:.2f}"
        else:
            detail = (entry.rationale or "-")[:50]

        line = (
            f"CYCLE SUMMARY | "
            f"Agent: {entry.agent_id} | "
            f"Action: {entry.action} | "
            f"Requested: {entry.requested_action or entry.action} | "
            f"Outcome: {entry.outcome} | "
            f"Detail: {detail}"
        )
        if entry.reason:
            line += f" | Reason: {entry.reason[:120]}"

        if entry.is_genuine_hold or entry.outcome == "SETTLED":
            logger.info(line)
        else:
            logger.warning(line)

    def record_snapshot(self, snapshot: BalanceSnapshot) -> None:
        try:
            self.store.append_snapshot(snapshot)
        except OSError as e:
            logger.error(f"Failed to append balance snapshot for {snapshot.agent_id}: {e}")

    def record_anomaly(self, anomaly: BalanceAnomaly) -> None:
        try:
            self.store.append_anomaly(anomaly)
        except OSError as e:
            logger.error(f"Failed to append anomaly for {anomaly.agent_id}: {e}")
        logger.warning(
            f"BALANCE ANOMALY | Agent: {anomaly.agent_id} | "
            f"${anomaly.prior_value:.2f} -> ${anomaly.reported_value:.2f} "
            f"({anomaly.change_percent:+.1f}%, threshold {anomaly.threshold_percent:.0f}%) | kept prior value"
        )

    def recent_trades(self, agent_id: Optional[str] = None, limit: int = 50) -> List[TradeLogEntry]:
        """Newest first."""
        return list(reversed(self.store.list_trades(agent_id, limit=limit)))

    def snapshots(self, agent_id: str, limit: Optional[int] = None) -> List[BalanceSnapshot]:
        return self.store.list_snapshots(agent_id, limit=limit)

    def anomalies(self, agent_id: Optional[str] = None) -> List[BalanceAnomaly]:
        return self.store.list_anomalies(agent_id)

    def prune(self, older_than: datetime) -> int:
        removed = self.store.prune_trades(older_than)
        if removed:
            logger.info(f"Pruned {removed} trade entries older than {older_than.isoformat()}")
        return removed
