from __future__ import annotations

import threading
import time
from typing import Callable


class IntervalThrottle:
    """Keeps consecutive ``wait()`` returns at least ``interval`` seconds apart.

    The first call never blocks. Clock and sleep are injectable so callers can
    be tested without wall-clock delays.
    """

    def __init__(
        self,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.interval = max(0.0, float(interval))
        self._clock = clock
        self._sleep = sleep
        self._last: float | None = None
        self._lock = threading.Lock()

    def wait(self) -> float:
        """Block until the next slot; returns the seconds slept."""
        with self._lock:
            slept = 0.0
            now = self._clock()
            if self._last is not None and self.interval > 0:
                remaining = self._last + self.interval - now
                if remaining > 0:
                    self._sleep(remaining)
                    slept = remaining
                    now = self._clock()
            self._last = now
            return slept

    def reset(self) -> None:
        with self._lock:
            self._last = None
