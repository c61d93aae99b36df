"""Rate-adaptive gate on outbound progress emissions."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable

WINDOW_SECONDS = 5.0
MIN_RATE_SPAN_SECONDS = 1.0

LOW_RATE_INTERVAL_SECONDS = 0.1
MEDIUM_RATE_INTERVAL_SECONDS = 0.2
HIGH_RATE_INTERVAL_SECONDS = 0.5

LOW_RATE_THRESHOLD = 5.0
HIGH_RATE_THRESHOLD = 20.0


class ProgressThrottle:
    """Minimum spacing between emissions, widened as the emission rate grows.

    Rate is measured over the accepted emissions of the trailing five
    seconds. Boundaries map to the lower tier: exactly 5/s still gets the
    100 ms interval and exactly 20/s the 200 ms one.
    """

    def __init__(
        self,
        *,
        window_seconds: float = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._recent: deque[float] = deque()
        self._last_update: float | None = None

    def get_interval(self) -> float:
        """Interval in seconds implied by the current emission rate."""

        now = self._clock()
        self._prune(now)
        if not self._recent:
            return LOW_RATE_INTERVAL_SECONDS

        span = max(now - self._recent[0], MIN_RATE_SPAN_SECONDS)
        rate = len(self._recent) / span
        if rate > HIGH_RATE_THRESHOLD:
            return HIGH_RATE_INTERVAL_SECONDS
        if rate > LOW_RATE_THRESHOLD:
            return MEDIUM_RATE_INTERVAL_SECONDS
        return LOW_RATE_INTERVAL_SECONDS

    def should_throttle(self) -> bool:
        """True when the last accepted emission is more recent than the interval."""

        if self._last_update is None:
            return False
        interval = self.get_interval()
        return self._clock() - self._last_update < interval

    def record_update(self) -> None:
        """Record an accepted (not throttled) emission."""

        now = self._clock()
        self._recent.append(now)
        self._last_update = now
        self._prune(now)

    def reset(self) -> None:
        self._recent.clear()
        self._last_update = None

    def _prune(self, now: float) -> None:
        while self._recent and now - self._recent[0] >= self.window_seconds:
            self._recent.popleft()
