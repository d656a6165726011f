from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable


class SlidingWindowLimiter:
    """Allows at most ``max_events`` recorded starts in any ``window_s`` seconds."""

    def __init__(self, max_events: int, window_s: float, clock: Callable[[], float] = time.monotonic) -> None:
        if max_events < 1 or window_s <= 0:
            raise ValueError("max_events must be >= 1 and window_s > 0")
        self.max_events = max_events
        self.window_s = window_s
        self._clock = clock
        self._events: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._events and now - self._events[0] >= self.window_s:
            self._events.popleft()

    def delay(self) -> float:
        """Seconds until another start would be allowed (0 when it is allowed now)."""
        now = self._clock()
        self._prune(now)
        if len(self._events) < self.max_events:
            return 0.0
        return max(0.0, self._events[0] + self.window_s - now)

    def record(self) -> None:
        self._events.append(self._clock())
