"""
Shared fixtures: a two-agent roster on simulated exchanges with a fixed clock.
"""
from datetime import datetime, timedelta, timezone

import pytest

from arena_trader.clients.simulated import ScriptedDecisionProvider, SimulatedExchange
from arena_trader.config import AgentProfile, RiskLimits, TradingConfig
from arena_trader.engine import CycleOrchestrator, CycleScheduler
from arena_trader.registry import AgentRegistry
from arena_trader.schemas import MarketQuote
from arena_trader.store import InMemoryStore


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def config():
    return TradingConfig(
        roster=[
            AgentProfile(agent_id="alpha", name="Alpha", persona="test", limits=RiskLimits(max_holding_minutes=45)),
            AgentProfile(agent_id="beta", name="Beta", persona="test", limits=RiskLimits()),
        ],
        inter_agent_pause_seconds=0.0,
        call_timeout_seconds=2.0,
        read_retry_attempts=2,
        read_retry_base_delay=0.0,
        market_ttl_seconds=3600,
        market_top_n=3,
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def book():
    return {
        "BTCUSDT": MarketQuote(instrument="BTCUSDT", price=50000.0, volume=3e9, quantity_precision=3),
        "ETHUSDT": MarketQuote(instrument="ETHUSDT", price=3000.0, volume=2e9, quantity_precision=3),
        "SOLUSDT": MarketQuote(instrument="SOLUSDT", price=150.0, volume=1e9, quantity_precision=1),
        "DOGEUSDT": MarketQuote(instrument="DOGEUSDT", price=0.1, volume=5e8, quantity_precision=0),
    }


@pytest.fixture
def exchanges(config, book):
    return {p.agent_id: SimulatedExchange(initial_balance=p.initial_balance, book=book) for p in config.roster}


@pytest.fixture
def providers(config):
    return {p.agent_id: ScriptedDecisionProvider() for p in config.roster}


@pytest.fixture
def registry(config, exchanges, providers):
    return AgentRegistry.from_config(
        config,
        exchange_factory=lambda profile: exchanges[profile.agent_id],
        provider_factory=lambda profile: providers[profile.agent_id],
    )


@pytest.fixture
def orchestrator(config, registry, store, clock):
    orch = CycleOrchestrator(config, registry, store, clock=clock)
    orch.initialize_agents()
    return orch


@pytest.fixture
def scheduler(config, orchestrator):
    return CycleScheduler(config, orchestrator)


def open_payload(instrument="BTCUSDT", direction="LONG", stake=60, leverage=10, stop_loss=49000, take_profit=52000):
    return {
        "action": "OPEN",
        "direction": direction,
        "instrument": instrument,
        "stake": stake,
        "leverage": leverage,
        "stop_loss": stop_loss,
        "take_profit": take_profit,
        "rationale": "test entry",
    }


@pytest.fixture
def make_open():
    return open_payload
