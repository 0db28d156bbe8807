"""
Resilience patterns for calls to external collaborators.

Bounded retry with backoff for idempotent reads, call timeouts, and per-provider
call gates that replace ad-hoc sleeps between requests.
"""

from arena_trader.resilience.gate import (
    CallGate,
    call_with_timeout,
    gated_call,
)
from arena_trader.resilience.retry import (
    RetryConfig,
    with_retry,
    jittered_backoff,
)

__all__ = [
    "CallGate",
    "call_with_timeout",
    "gated_call",
    "RetryConfig",
    "with_retry",
    "jittered_backoff",
]
