"""Per-source REST request budget.

A request may go out when fewer than ``max_per_minute`` requests were sent in
the last sixty seconds and at least ``min_interval`` seconds have passed since
the previous one. Denied requests are not queued: the controller moves on to
the cache tier instead of waiting.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable

WINDOW_SECONDS = 60.0


class RequestBudget:
    """Sliding one-minute request window with a minimum spacing."""

    def __init__(
        self,
        max_per_minute: int = 25,
        min_interval: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max = max(1, max_per_minute)
        self._min_interval = min_interval
        self._clock = clock
        self._sent: deque[float] = deque()

    def wait_time(self) -> float:
        """Seconds until the next request is allowed; 0.0 when allowed now."""
        now = self._clock()
        self._prune(now)
        if not self._sent:
            return 0.0
        wait = self._min_interval - (now - self._sent[-1])
        if len(self._sent) >= self._max:
            wait = max(wait, self._sent[0] + WINDOW_SECONDS - now)
        return max(0.0, wait)

    def can_request(self) -> bool:
        return self.wait_time() == 0.0

    def try_acquire(self) -> bool:
        """Record a request if the budget allows one. Returns False when denied."""
        if not self.can_request():
            return False
        self._sent.append(self._clock())
        return True

    def to_dict(self) -> dict:
        wait = self.wait_time()
        return {
            "requests_in_last_minute": len(self._sent),
            "remaining_requests": max(0, self._max - len(self._sent)),
            "can_request": wait == 0.0,
            "next_request_in": round(wait, 3),
        }

    def _prune(self, now: float) -> None:
        while self._sent and self._sent[0] <= now - WINDOW_SECONDS:
            self._sent.popleft()
