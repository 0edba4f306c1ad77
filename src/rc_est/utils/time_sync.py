import time
def wall_time() -> float: return time.time()
class Rate:
    """Caps a loop at hz; sleep() only waits out what is left of the period."""
    def __init__(self, hz: float):
        if hz <= 0:
            raise ValueError(f"rate must be positive, got {hz}")
        self.period = 1.0 / hz
        self._last = time.perf_counter()
    def sleep(self):
        now = time.perf_counter()
        rem = self.period - (now - self._last)
        if rem > 0: time.sleep(rem)
        self._last = time.perf_counter()
