"""
CycleScheduler tests - manual triggers, loop lifecycle and cleanup.
"""
import asyncio
from datetime import timedelta

import pytest

from arena_trader.errors import AgentNotFound
from arena_trader.schemas import TradeAction, TradeLogEntry

pytestmark = pytest.mark.asyncio


class TestTrigger:

    async def test_trigger_all_agents(self, scheduler):
        task = scheduler.trigger_cycle()
        results = await task

        assert [r.agent_id for r in results] == ["alpha", "beta"]
        assert scheduler.rounds_completed == 1

    async def test_trigger_single_agent(self, scheduler, providers):
        results = await scheduler.trigger_cycle("beta")

        assert [r.agent_id for r in results] == ["beta"]
        assert providers["alpha"].contexts == []

    async def test_trigger_unknown_agent(self, scheduler):
        with pytest.raises(AgentNotFound):
            scheduler.trigger_cycle("ghost")

    async def test_overlapping_trigger_skips_busy_agent(self, scheduler, registry):
        async with registry.get("alpha").cycle_lock:
            results = await scheduler.trigger_cycle()

        assert results[0].skipped
        assert not results[1].skipped


class TestLifecycle:

    async def test_start_and_stop(self, scheduler, config):
        config.decision_interval_seconds = 3600
        config.balance_sync_seconds = 3600

        scheduler.start()
        assert scheduler.running
        for _ in range(100):
            if scheduler.rounds_completed:
                break
            await asyncio.sleep(0.02)

        assert scheduler.rounds_completed >= 1
        assert scheduler.orchestrator.get_market() != []

        await scheduler.stop()
        assert not scheduler.running

    async def test_start_is_idempotent(self, scheduler):
        scheduler.start()
        tasks = list(scheduler._tasks)
        scheduler.start()
        assert scheduler._tasks == tasks
        await scheduler.stop()


async def test_cleanup_prunes_old_trades(scheduler, store, clock):
    store.append_trade(TradeLogEntry(agent_id="alpha", action=TradeAction.HOLD, timestamp=clock() - timedelta(days=8)))
    store.append_trade(TradeLogEntry(agent_id="alpha", action=TradeAction.HOLD, timestamp=clock() - timedelta(days=1)))

    await scheduler.run_cleanup()

    trades = store.list_trades()
    assert len(trades) == 1
    assert trades[0].timestamp == clock() - timedelta(days=1)
