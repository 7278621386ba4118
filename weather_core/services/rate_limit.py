from collections import deque
from typing import Callable

from weather_core.services.cache import wall_clock_ms


class RateLimiter:
    """Sliding-window limit on upstream calls."""

    def __init__(self, max_requests: int = 60, window_ms: int = 60_000, clock: Callable[[], int] = wall_clock_ms):
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._clock = clock
        self._timestamps: deque = deque()

    def _prune(self, now: int) -> None:
        while self._timestamps and now - self._timestamps[0] > self.window_ms:
            self._timestamps.popleft()

    def can_make_request(self) -> bool:
        self._prune(self._clock())
        return len(self._timestamps) < self.max_requests

    def record_request(self) -> None:
        self._timestamps.append(self._clock())

    def wait_time_ms(self) -> int:
        if self.can_make_request():
            return 0
        return max(0, self.window_ms - (self._clock() - self._timestamps[0]))
