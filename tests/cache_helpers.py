"""
Test doubles shared by the cache test modules.
"""
import threading


class FakeClock:
    """Manually advanced clock (seconds)."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingProducer:
    """Producer returning queued values and counting invocations."""

    def __init__(self, *values, error=None):
        self._values = list(values)
        self._error = error
        self._lock = threading.Lock()
        self.calls = 0

    def __call__(self):
        with self._lock:
            self.calls += 1
            call = self.calls
        if self._error is not None:
            raise self._error
        if not self._values:
            return f"value-{call}"
        return self._values[min(call, len(self._values)) - 1]
