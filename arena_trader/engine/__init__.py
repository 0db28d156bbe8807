"""
Arena trading engine - per-agent trading cycle in handoff order.

Components:
1. MarketDataCache - top-N instruments and fresh quotes
2. PositionLedger - cash and open positions
3. size_decision - risk & sizing policy (pure)
4. DecisionExecutor - validate, size, submit, settle
5. BalanceReconciler - anomaly-guarded balance sync
6. AuditTrail - append-only outcome log

MarketDataCache also builds per-instrument technical snapshots with the
indicator functions in `indicators`, and the reconciler module diffs ledger
positions against the exchange (`diff_positions`).

The CycleOrchestrator runs one agent's cycle; the CycleScheduler runs the
cadence loops across the roster.
"""

from .ledger import PositionLedger
from .risk_gate import size_decision
from .execution import DecisionExecutor
from .reconciler import BalanceReconciler, diff_positions
from .indicators import analyze
from .market_data import MarketDataCache
from .observability import AuditTrail
from .orchestrator import CycleOrchestrator, build_orchestrator
from .scheduler import CycleScheduler

__all__ = [
    "PositionLedger",
    "size_decision",
    "DecisionExecutor",
    "BalanceReconciler",
    "diff_positions",
    "analyze",
    "MarketDataCache",
    "AuditTrail",
    "CycleOrchestrator",
    "build_orchestrator",
    "CycleScheduler",
]
