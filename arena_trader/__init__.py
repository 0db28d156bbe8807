"""
Arena Trader - a fixed roster of autonomous trading agents.

Each agent repeatedly reads the market, asks its decision provider for a
trade, sizes it against its risk limits, executes it on its exchange account
and records the outcome. See arena_trader.engine for the cycle itself.
"""

__version__ = "1.0.0"
