"""
Call gates and timeouts for blocking external clients.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TypeVar

from arena_trader.errors import ExecutionFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CallGate:
    """
    Rate-limit policy for one external provider.

    At most `max_concurrency` calls in flight, and at least `min_interval_sec`
    between the start of consecutive calls. Use as `async with gate:`.
    """

    name: str
    max_concurrency: int = 1
    min_interval_sec: float = 0.0

    _semaphore: asyncio.Semaphore = field(init=False)
    _interval_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _last_call: float = field(default=0.0, init=False)
    calls: int = field(default=0, init=False)

    def __post_init__(self):
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._semaphore = asyncio.Semaphore(self.max_concurrency)

    async def __aenter__(self) -> "CallGate":
        await self._semaphore.acquire()
        try:
            async with self._interval_lock:
                if self._last_call and self.min_interval_sec > 0:
                    wait = self.min_interval_sec - (time.monotonic() - self._last_call)
                    if wait > 0:
                        logger.debug(f"Gate '{self.name}' waiting {wait:.2f}s")
                        await asyncio.sleep(wait)
                self._last_call = time.monotonic()
                self.calls += 1
        except BaseException:
            self._semaphore.release()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._semaphore.release()


async def call_with_timeout(
    func: Callable[..., T],
    *args: Any,
    timeout: float = 60.0,
    operation: str = "",
    **kwargs: Any,
) -> T:
    """
    Run a blocking client call in a worker thread, bounded by `timeout`.

    Raises:
        ExecutionFailure: with timed_out=True when the deadline passes. Other
            exceptions from `func` propagate unchanged.
    """
    name = operation or getattr(func, "__name__", "call")
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error(f"{name} timed out after {timeout:.1f}s")
        raise ExecutionFailure(f"{name} timed out after {timeout:.1f}s", operation=name, timed_out=True)


async def gated_call(
    gate: CallGate,
    func: Callable[..., T],
    *args: Any,
    timeout: float = 60.0,
    operation: str = "",
    **kwargs: Any,
) -> T:
    """`call_with_timeout` under a provider's call gate."""
    async with gate:
        return await call_with_timeout(func, *args, timeout=timeout, operation=operation, **kwargs)
