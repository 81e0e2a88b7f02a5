import threading
import time
from typing import Callable


class SystemClock:
    """Epoch-millisecond clock that never runs backwards.

    The epoch offset is read once; afterwards time advances with the
    monotonic clock so wall-clock adjustments cannot rewind a round.
    """

    def __init__(self):
        self._epoch_ms = time.time() * 1000.0
        self._mono = time.monotonic()

    def now_ms(self) -> int:
        return int(self._epoch_ms + (time.monotonic() - self._mono) * 1000.0)


class ThreadingScheduler:
    """Runs callbacks on daemon timer threads."""

    def __init__(self, clock=None):
        self.clock = clock or SystemClock()

    def call_later(self, delay_ms: float, fn: Callable, *args) -> threading.Timer:
        timer = threading.Timer(max(0.0, delay_ms) / 1000.0, fn, args=args)
        timer.daemon = True
        timer.start()
        return timer

    def call_at(self, when_ms: float, fn: Callable, *args) -> threading.Timer:
        return self.call_later(when_ms - self.clock.now_ms(), fn, *args)
