"""Time source for the engine."""

import threading
import time


class Clock:
    """
    Wall-clock time in epoch seconds that never goes backwards.

    A system clock adjustment cannot make a call look younger than it did
    on the previous tick.
    """

    def __init__(self):
        self._last = 0.0
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            self._last = max(self._last, time.time())
            return self._last
