"""
Store backend tests.
"""
import math
from datetime import datetime, timedelta, timezone

import pytest

from arena_trader.config import StoreBackend, TradingConfig
from arena_trader.schemas import Agent, BalanceAnomaly, BalanceSnapshot, MarketQuote, Position, TradeAction, TradeLogEntry
from arena_trader.store import InMemoryStore, JsonFileStore, create_store

T0 = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)


def make_agent(agent_id="alpha", cash=500.0):
    return Agent(id=agent_id, name=agent_id.title(), cash_balance=cash, account_value=cash, initial_balance=500.0)


def make_position(position_id="p1", agent_id="alpha", opened_at=T0):
    return Position(
        id=position_id,
        agent_id=agent_id,
        instrument="BTCUSDT",
        direction="LONG",
        quantity=0.012,
        entry_price=50000.0,
        leverage=10,
        collateral=60.0,
        notional=600.0,
        cost_basis=60.0,
        mark_price=50000.0,
        opened_at=opened_at,
    )


def hold(agent_id="alpha", timestamp=T0):
    return TradeLogEntry(agent_id=agent_id, action=TradeAction.HOLD, timestamp=timestamp)


class TestInMemoryStore:

    def test_returns_copies(self):
        store = InMemoryStore()
        store.save_agent(make_agent())

        agent = store.get_agent("alpha")
        agent.cash_balance = 0.0
        agent.pnl_history.append(1.0)

        assert store.get_agent("alpha").cash_balance == 500.0
        assert store.get_agent("alpha").pnl_history == []

    def test_commit_applies_all_changes(self):
        store = InMemoryStore()
        store.commit(make_agent(cash=440.0), upsert=[make_position("p1"), make_position("p2")])
        store.commit(make_agent(cash=500.0), remove=["p1"])

        assert store.get_agent("alpha").cash_balance == 500.0
        assert [p.id for p in store.list_positions("alpha")] == ["p2"]

    def test_positions_sorted_by_open_time(self):
        store = InMemoryStore()
        store.save_position(make_position("late", opened_at=T0 + timedelta(minutes=1)))
        store.save_position(make_position("early", opened_at=T0))
        store.save_position(make_position("other", agent_id="beta"))

        assert [p.id for p in store.list_positions("alpha")] == ["early", "late"]
        assert len(store.list_positions()) == 3

    def test_trade_limit_keeps_newest(self):
        store = InMemoryStore()
        for i in range(5):
            store.append_trade(hold(timestamp=T0 + timedelta(minutes=i)))
        store.append_trade(hold(agent_id="beta"))

        trades = store.list_trades("alpha", limit=2)
        assert [t.timestamp for t in trades] == [T0 + timedelta(minutes=3), T0 + timedelta(minutes=4)]
        assert len(store.list_trades()) == 6
        assert store.list_trades("alpha", limit=0) == []

    def test_prune(self):
        store = InMemoryStore()
        store.append_trade(hold(timestamp=T0 - timedelta(days=8)))
        store.append_trade(hold(timestamp=T0))

        assert store.prune_trades(T0 - timedelta(days=7)) == 1
        assert store.prune_trades(T0 - timedelta(days=7)) == 0
        assert len(store.list_trades()) == 1


class TestJsonFileStore:

    def test_state_survives_reopen(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        store.commit(make_agent(cash=440.0), upsert=[make_position()])
        store.save_market([MarketQuote(instrument="BTCUSDT", price=50000.0, refreshed_at=T0)])

        reopened = JsonFileStore(str(tmp_path))
        assert reopened.get_agent("alpha").cash_balance == 440.0
        assert reopened.get_position("p1").entry_price == 50000.0
        assert reopened.get_market()[0].instrument == "BTCUSDT"

    def test_logs_survive_reopen(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        store.append_trade(hold())
        store.append_snapshot(BalanceSnapshot(
            agent_id="alpha", cash=500.0, unrealized_pnl=0.0, account_value=500.0, return_percent=0.0, open_count=0,
        ))
        store.append_anomaly(BalanceAnomaly(
            agent_id="alpha", prior_value=500.0, reported_value=float("nan"),
            change_percent=float("nan"), threshold_percent=20.0,
        ))

        reopened = JsonFileStore(str(tmp_path))
        assert len(reopened.list_trades("alpha")) == 1
        assert len(reopened.list_snapshots("alpha")) == 1
        anomaly = reopened.list_anomalies("alpha")[0]
        assert math.isnan(anomaly.reported_value)

    def test_prune_rewrites_log(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        store.append_trade(hold(timestamp=T0 - timedelta(days=8)))
        store.append_trade(hold(timestamp=T0))
        store.prune_trades(T0 - timedelta(days=7))

        reopened = JsonFileStore(str(tmp_path))
        assert [t.timestamp for t in reopened.list_trades()] == [T0]

    def test_corrupt_line_skipped(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        store.append_trade(hold())
        with open(tmp_path / "trades.jsonl", "a") as f:
            f.write('{"agent_id": "alpha", "action": \n')
        store.append_trade(hold(timestamp=T0 + timedelta(minutes=1)))

        reopened = JsonFileStore(str(tmp_path))
        assert len(reopened.list_trades()) == 2

    def test_no_temp_files_left(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        store.save_agent(make_agent())
        store.append_trade(hold(timestamp=T0 - timedelta(days=30)))
        store.prune_trades(T0)

        assert list(tmp_path.glob("*.tmp")) == []
        assert (tmp_path / "state.json").exists()


@pytest.mark.parametrize("backend,expected", [
    (StoreBackend.MEMORY, InMemoryStore),
    (StoreBackend.JSON, JsonFileStore),
])
def test_create_store(tmp_path, backend, expected):
    config = TradingConfig(store_backend=backend, data_dir=str(tmp_path / "data"))
    assert type(create_store(config)) is expected
