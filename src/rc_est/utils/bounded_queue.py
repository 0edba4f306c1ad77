from collections import deque
from threading import Condition
from typing import Deque, Generic, Optional, TypeVar

T = TypeVar("T")


class QueueClosed(RuntimeError):
    """Raised to consumers blocked on a queue that has been closed."""


class BoundedQueue(Generic[T]):
    """
    Fixed-capacity FIFO channel shared by one producer role and one consumer role.
      - try_push(): never blocks; when full the *new* item is dropped
      - blocking_pop(): waits (no timeout) until an item is available
      - size(): instantaneous hint, may be stale by the time it is used
    """
    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = int(capacity)
        self.dropped = 0
        self._buf: Deque[T] = deque()
        self._cond = Condition()
        self._closed = False

    def try_push(self, item: T) -> bool:
        with self._cond:
            if self._closed or len(self._buf) >= self.capacity:
                self.dropped += 1
                return False
            self._buf.append(item)
            self._cond.notify()
            return True

    def blocking_pop(self) -> T:
        with self._cond:
            while not self._buf:
                if self._closed:
                    raise QueueClosed("queue closed while waiting for an item")
                self._cond.wait()
            return self._buf.popleft()

    def try_pop(self) -> Optional[T]:
        with self._cond:
            return self._buf.popleft() if self._buf else None

    def peek_front(self) -> Optional[T]:
        with self._cond:
            return self._buf[0] if self._buf else None

    def peek_back(self) -> Optional[T]:
        with self._cond:
            return self._buf[-1] if self._buf else None

    def size(self) -> int:
        with self._cond:
            return len(self._buf)

    def __len__(self) -> int:
        return self.size()

    def clear(self) -> None:
        with self._cond:
            self._buf.clear()

    def close(self) -> None:
        """Wake every blocked consumer; they raise QueueClosed once drained."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed
