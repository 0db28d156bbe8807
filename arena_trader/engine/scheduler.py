"""
CycleScheduler - multi-cadence runner.

Runs independent asyncio loops:
- decision: every agent in roster order, one cycle at a time
- balance: mark-to-market + reconciliation, no decision provider
- market: top-N instrument refresh
- cleanup: trade-log pruning by age

A failure in one agent or one tick is logged and never stops a loop.
Per-agent serialization comes from the agent's locks, not from the loops.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set

from ..config import TradingConfig
from ..schemas import CycleResult
from .orchestrator import CycleOrchestrator

logger = logging.getLogger("arena_trader.engine.scheduler")


class CycleScheduler:
    """Owns the background loops for one orchestrator."""

    def __init__(self, config: TradingConfig, orchestrator: CycleOrchestrator):
        self.config = config
        self.orchestrator = orchestrator
        self._running = False
        self._tasks: List[asyncio.Task] = []
        self._manual: Set[asyncio.Task] = set()
        self.rounds_completed = 0

    @property
    def running(self) -> bool:
        return self._running

    async def run_decision_round(self, agent_ids: Optional[List[str]] = None) -> List[CycleResult]:
        """One decision cycle per agent, sequentially. Spacing comes from the decision call gate."""
        agent_ids = agent_ids or self.orchestrator.registry.agent_ids
        results = []
        for agent_id in agent_ids:
            try:
                results.append(await self.orchestrator.run_agent_cycle(agent_id))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[Scheduler] {agent_id}: cycle crashed: {e}", exc_info=True)
        self.rounds_completed += 1
        return results

    async def run_balance_round(self) -> None:
        for agent_id in self.orchestrator.registry.agent_ids:
            try:
                await self.orchestrator.sync_balance(agent_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[Scheduler] {agent_id}: balance sync error: {e}")

    async def run_market_refresh(self) -> None:
        await self.orchestrator.refresh_market()

    async def run_cleanup(self) -> None:
        removed = self.orchestrator.cleanup_trades()
        logger.info(f"[Scheduler] Trade cleanup removed {removed} entries")

    async def _loop(self, name: str, interval: float, tick: Callable[[], Awaitable[object]]):
        logger.info(f"[Scheduler] Started {name} loop (every {interval}s)")
        while self._running:
            try:
                await tick()
            except asyncio.CancelledError:
                logger.info(f"[Scheduler] Stopping {name} loop")
                raise
            except Exception as e:
                logger.error(f"[Scheduler] {name} tick error: {e}")
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.orchestrator.initialize_agents()

        loops = [
            ("market", self.config.market_refresh_seconds, self.run_market_refresh),
            ("decision", self.config.decision_interval_seconds, self.run_decision_round),
            ("balance", self.config.balance_sync_seconds, self.run_balance_round),
            ("cleanup", self.config.trade_cleanup_seconds, self.run_cleanup),
        ]
        self._tasks = [
            asyncio.create_task(self._loop(name, interval, tick), name=f"arena-{name}")
            for name, interval, tick in loops
        ]

    async def stop(self) -> None:
        self._running = False
        tasks = self._tasks + list(self._manual)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        self._manual.clear()
        logger.info("[Scheduler] All loops stopped")

    def trigger_cycle(self, agent_id: Optional[str] = None) -> asyncio.Task:
        """
        Start a decision round now, outside the cadence.

        Agents with a cycle already in flight are skipped by the orchestrator.
        Await the returned task for the CycleResults.
        """
        if agent_id is not None:
            self.orchestrator.registry.get(agent_id)
        agent_ids = [agent_id] if agent_id else None
        task = asyncio.create_task(self.run_decision_round(agent_ids), name="arena-manual-cycle")
        self._manual.add(task)
        task.add_done_callback(self._manual.discard)
        logger.info(f"[Scheduler] Manual cycle triggered for {agent_id or 'all agents'}")
        return task
