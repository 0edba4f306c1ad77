from collections import deque
from typing import Optional, Deque, Iterator, TypeVar, Generic

T = TypeVar("T")

class RingBuffer(Generic[T]):
    """Time-ordered rolling buffer owned by a single thread (no locking)."""
    def __init__(self, capacity: int = 2000):
        self._buf: Deque[T] = deque()
        self.capacity = int(capacity)
    def push(self, item: T) -> Optional[T]:
        """Append; returns the evicted oldest item when the buffer was full."""
        evicted = self._buf.popleft() if len(self._buf) >= self.capacity else None
        self._buf.append(item)
        return evicted
    def pop_older_than(self, t: float) -> Optional[T]:
        """Drop items stamped before t; returns the last one dropped."""
        last = None
        while self._buf and self._buf[0].t < t:
            last = self._buf.popleft()
        return last
    def __iter__(self) -> Iterator[T]:
        return iter(self._buf)
    def __len__(self) -> int:
        return len(self._buf)
