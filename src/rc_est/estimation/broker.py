from threading import Lock
from typing import Optional

from rc_est.utils.messages import EstimatedState


class SharedStateBroker:
    """
    Single-slot holder for the latest corrected state.
      - write(): smoother side, once per cycle
      - snapshot(): predictor side, every inertial tick
    The lock only guards the copies in and out; callers do their math outside it.
    """
    def __init__(self):
        self._lock = Lock()
        self._state: Optional[EstimatedState] = None

    def write(self, state: EstimatedState) -> None:
        new = state.copy()
        with self._lock:
            if self._state is not None and new.t < self._state.t:
                raise ValueError(f"correction timestamp went backwards: {new.t} < {self._state.t}")
            self._state = new

    def snapshot(self) -> Optional[EstimatedState]:
        with self._lock:
            return self._state.copy() if self._state is not None else None

    @property
    def timestamp(self) -> float:
        with self._lock:
            return self._state.t if self._state is not None else 0.0
