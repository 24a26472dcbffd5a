"""
Wall-clock measurement for units of work.
"""
import time
from typing import Optional


class UnitTimer:
    """
    Measures the elapsed time of a single unit using a monotonic clock.
    """
    def __init__(self):
        self._started: Optional[float] = None
        self._stopped: Optional[float] = None

    def start(self) -> "UnitTimer":
        self._started = time.monotonic()
        self._stopped = None
        return self

    def stop(self) -> float:
        """
        Stops the timer.

        :return: The elapsed seconds.
        """
        if self._started is None:
            raise RuntimeError("Timer was never started")
        self._stopped = time.monotonic()
        return self.duration

    @property
    def running(self) -> bool:
        return self._started is not None and self._stopped is None

    @property
    def duration(self) -> float:
        """Elapsed seconds; keeps growing while the timer runs."""
        if self._started is None:
            return 0.0
        end = self._stopped if self._stopped is not None else time.monotonic()
        return end - self._started
