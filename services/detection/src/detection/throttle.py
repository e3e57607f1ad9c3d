"""Frame admission at a fixed target rate, independent of the camera rate."""
from __future__ import annotations

import threading
import time
from typing import Callable


class FrameThrottle:
    """Admits at most ``target_fps`` frames per second; the rest are dropped.

    Args:
        target_fps: Processing rate.
        clock: Monotonic clock in seconds (injectable for tests).
    """

    def __init__(self, target_fps: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval = 1.0 / target_fps
        self._clock = clock
        self._next_at: float | None = None
        self._lock = threading.Lock()

    def admit(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._next_at is not None and now < self._next_at:
                return False
            # Slots count from the admitted frame, not from a fixed grid
            self._next_at = now + self._interval
            return True

    def reset(self) -> None:
        with self._lock:
            self._next_at = None
