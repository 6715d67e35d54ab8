"""
Smoothed transfer speed accounting.
"""
import time
from typing import Callable, Optional


class SpeedTracker:
    """Exponential moving average of the instantaneous byte rate.

    Samples closer together than min_interval are folded into the next one so
    bursts of small chunks do not make the readout jump around.
    """

    def __init__(
        self,
        smoothing: float = 0.3,
        min_interval: float = 0.25,
        clock: Optional[Callable[[], float]] = None,
    ):
        if not 0 < smoothing <= 1:
            raise ValueError("smoothing must be in (0, 1]")
        self.smoothing = smoothing
        self.min_interval = min_interval
        self._clock = clock or time.monotonic
        self._last_time: Optional[float] = None
        self._last_bytes = 0
        self.speed = 0.0

    def reset(self, bytes_so_far: int = 0):
        """Start a new measurement window, e.g. after a pause."""
        self._last_time = self._clock()
        self._last_bytes = bytes_so_far
        self.speed = 0.0

    def update(self, bytes_so_far: int) -> float:
        now = self._clock()
        if self._last_time is None:
            self._last_time = now
            self._last_bytes = bytes_so_far
            return self.speed

        elapsed = now - self._last_time
        if elapsed < self.min_interval:
            return self.speed

        delta = bytes_so_far - self._last_bytes
        if delta < 0:
            # counter went backwards (restart); rebase
            self._last_time = now
            self._last_bytes = bytes_so_far
            return self.speed

        instant = delta / elapsed
        if self.speed == 0.0:
            self.speed = instant
        else:
            self.speed = self.smoothing * instant + (1 - self.smoothing) * self.speed
        self._last_time = now
        self._last_bytes = bytes_so_far
        return self.speed
