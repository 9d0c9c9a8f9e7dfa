"""Fixed-capacity FIFO buffers for connection logs and call history."""

from collections import deque
from typing import Deque, Generic, Iterator, List, TypeVar

T = TypeVar("T")

DEFAULT_CAPACITY = 100


class RingBuffer(Generic[T]):
    """
    Keeps the most recent ``capacity`` entries.

    Appending past capacity silently evicts the oldest entry.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._items: Deque[T] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._items.maxlen

    def append(self, item: T):
        self._items.append(item)

    def tail(self, count: int) -> List[T]:
        """Return the newest ``count`` entries, oldest first."""
        if count <= 0:
            return []
        items = list(self._items)
        return items[-count:]

    def clear(self):
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))

    def __repr__(self) -> str:
        return f"RingBuffer(size={len(self._items)}, capacity={self.capacity})"
