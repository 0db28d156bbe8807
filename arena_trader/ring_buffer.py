"""
Fixed-capacity ring buffer used for rolling PnL history.
"""
from collections import deque
from typing import Generic, Iterable, List, Optional, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """Keeps the newest `capacity` values; pushing onto a full buffer drops the oldest."""

    def __init__(self, capacity: int, initial: Optional[Iterable[T]] = None, fill: Optional[T] = None):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._items: deque = deque(maxlen=capacity)
        if initial is not None:
            self._items.extend(initial)
        elif fill is not None:
            self._items.extend([fill] * capacity)

    def push(self, value: T) -> None:
        self._items.append(value)

    def snapshot(self) -> List[T]:
        """Ordered oldest -> newest copy."""
        return list(self._items)

    def oldest(self) -> Optional[T]:
        return self._items[0] if self._items else None

    def newest(self) -> Optional[T]:
        return self._items[-1] if self._items else None

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self.snapshot())
