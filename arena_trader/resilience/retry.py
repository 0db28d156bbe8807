"""
Retry with Jittered Exponential Backoff

Only for idempotent reads (quotes, account state, market listings). Order
submission never goes through here.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from arena_trader.errors import ExecutionFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay_sec: float = 0.5
    max_delay_sec: float = 10.0
    jitter_factor: float = 0.5

    retryable_exceptions: tuple = (
        ConnectionError,
        TimeoutError,
        asyncio.TimeoutError,
        ExecutionFailure,
    )


def jittered_backoff(
    attempt: int,
    base_delay: float = 0.5,
    max_delay: float = 10.0,
    jitter_factor: float = 0.5,
) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Base delay in seconds
        max_delay: Maximum delay cap
        jitter_factor: Amount of random variation (0-1)

    Returns:
        Delay in seconds
    """
    exp_delay = base_delay * (2 ** attempt)
    capped_delay = min(exp_delay, max_delay)

    jitter_range = capped_delay * jitter_factor
    jitter = random.uniform(-jitter_range, jitter_range)

    return min(max(0.0, capped_delay + jitter), max_delay)


async def with_retry(
    func: Callable[[], Awaitable[T]],
    operation: str = "read",
    config: Optional[RetryConfig] = None,
) -> T:
    """
    Execute an async read with bounded retries.

    Non-retryable exceptions propagate immediately; the last retryable one
    propagates once attempts are exhausted.
    """
    config = config or RetryConfig()
    attempts = max(1, config.max_attempts)

    for attempt in range(attempts):
        try:
            return await func()
        except config.retryable_exceptions as e:
            if attempt >= attempts - 1:
                logger.error(f"All {attempts} attempts failed for {operation}. Final error: {e}")
                raise
            delay = jittered_backoff(
                attempt,
                config.base_delay_sec,
                config.max_delay_sec,
                config.jitter_factor,
            )
            logger.warning(
                f"Retry {attempt + 1}/{attempts} for {operation} after {delay:.2f}s. Error: {e}"
            )
            await asyncio.sleep(delay)

    raise RuntimeError("unreachable")
