"""
AgentRegistry - explicit wiring of per-agent collaborators.

Each agent owns exactly one exchange client, one decision provider, one state
lock (serializes every ledger/balance mutation for that agent) and one cycle
lock (makes its decision cycle non-reentrant). Call gates are shared by
provider name so agents using the same upstream share one rate limit.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

from .clients.base import DecisionProvider, ExchangeClient
from .clients.simulated import ScriptedDecisionProvider, SimulatedExchange, default_market_book
from .config import AgentProfile, TradingConfig, TradingMode
from .errors import AgentNotFound
from .resilience import CallGate

logger = logging.getLogger("arena_trader.registry")

ClientFactory = Callable[[AgentProfile], object]


@dataclass
class AgentContext:
    profile: AgentProfile
    exchange: ExchangeClient
    decision_provider: DecisionProvider
    exchange_gate: CallGate
    decision_gate: CallGate
    state_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cycle_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def agent_id(self) -> str:
        return self.profile.agent_id


class AgentRegistry:
    """Fixed roster of agent contexts, in roster order."""

    def __init__(self, contexts: List[AgentContext]):
        self._contexts: Dict[str, AgentContext] = {c.agent_id: c for c in contexts}

    def get(self, agent_id: str) -> AgentContext:
        try:
            return self._contexts[agent_id]
        except KeyError:
            raise AgentNotFound(agent_id)

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._contexts

    def __iter__(self) -> Iterator[AgentContext]:
        return iter(list(self._contexts.values()))

    def __len__(self) -> int:
        return len(self._contexts)

    @property
    def agent_ids(self) -> List[str]:
        return list(self._contexts)

    @classmethod
    def from_config(
        cls,
        config: TradingConfig,
        exchange_factory: Optional[ClientFactory] = None,
        provider_factory: Optional[ClientFactory] = None,
    ) -> "AgentRegistry":
        exchange_factory = exchange_factory or _default_exchange_factory(config)
        provider_factory = provider_factory or _default_provider_factory(config)

        gates: Dict[str, CallGate] = {}

        def gate_for(name: str, min_interval: float) -> CallGate:
            if name not in gates:
                gates[name] = CallGate(name=name, max_concurrency=1, min_interval_sec=min_interval)
            return gates[name]

        contexts = []
        for profile in config.roster:
            exchange = exchange_factory(profile)
            provider = provider_factory(profile)
            contexts.append(AgentContext(
                profile=profile,
                exchange=exchange,
                decision_provider=provider,
                exchange_gate=gate_for(f"exchange:{exchange.provider_name}", 0.0),
                decision_gate=gate_for(f"decision:{provider.provider_name}", config.inter_agent_pause_seconds),
            ))
            logger.info(
                f"Registered agent '{profile.agent_id}' "
                f"(exchange={exchange.provider_name}, decisions={provider.provider_name})"
            )
        return cls(contexts)


def _default_exchange_factory(config: TradingConfig) -> ClientFactory:
    if config.trading_mode == TradingMode.SIMULATED:
        book = default_market_book()
        return lambda profile: SimulatedExchange(initial_balance=profile.initial_balance, book=book)

    from .clients.alpaca_exchange import AlpacaExchangeClient

    def build(profile: AgentProfile) -> ExchangeClient:
        creds = config.agent_credentials.get(profile.agent_id)
        key_id = creds["key_id"] if creds else config.alpaca_key_id
        secret = creds["secret_key"] if creds else config.alpaca_secret_key
        if not key_id or not secret:
            raise ValueError(f"No exchange credentials for agent '{profile.agent_id}'")
        return AlpacaExchangeClient(
            key_id=key_id,
            secret_key=secret,
            paper=config.trading_mode != TradingMode.LIVE,
        )

    return build


def _default_provider_factory(config: TradingConfig) -> ClientFactory:
    if not config.openai_api_key:
        logger.warning("OPENAI_API_KEY not set - every agent will HOLD")
        return lambda profile: ScriptedDecisionProvider()

    from .clients.openai_provider import OpenAIDecisionProvider

    return lambda profile: OpenAIDecisionProvider(
        api_key=config.openai_api_key,
        persona=profile.persona,
        model=profile.model,
    )
