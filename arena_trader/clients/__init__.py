"""
External collaborators: exchange venues and decision providers.
"""
from .base import DecisionProvider, ExchangeClient
from .simulated import SimulatedExchange, ScriptedDecisionProvider

__all__ = [
    "DecisionProvider",
    "ExchangeClient",
    "SimulatedExchange",
    "ScriptedDecisionProvider",
]
