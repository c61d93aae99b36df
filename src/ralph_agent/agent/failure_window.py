"""Trailing-window failure rate tracking used as a circuit breaker."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable

DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_REQUEST_INTERVAL_SECONDS = 5.0
SHUTDOWN_THRESHOLD = 0.5


class FailureWindow:
    """Counts failures over the trailing window and flags a sustained failure rate.

    The failure count is compared with the number of requests expected in
    the window (``window_seconds / request_interval_seconds``). Shutdown is
    advised only when failures strictly exceed half of that expectation.
    Unlike a consecutive-error counter this trips on an elevated rate even
    when failures are interleaved with successes.
    """

    def __init__(
        self,
        *,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        request_interval_seconds: float = DEFAULT_REQUEST_INTERVAL_SECONDS,
        threshold: float = SHUTDOWN_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0.")
        if request_interval_seconds <= 0:
            raise ValueError("request_interval_seconds must be > 0.")
        self.window_seconds = window_seconds
        self.request_interval_seconds = request_interval_seconds
        self.threshold = threshold
        self._clock = clock
        self._failures: deque[float] = deque()

    def record(self) -> None:
        now = self._clock()
        self._failures.append(now)
        self._prune(now)

    def count(self) -> int:
        self._prune(self._clock())
        return len(self._failures)

    def expected_requests(self) -> float:
        return self.window_seconds / self.request_interval_seconds

    def should_shutdown(self) -> bool:
        failures = self.count()
        if failures == 0:
            return False
        return failures > self.expected_requests() * self.threshold

    def _prune(self, now: float) -> None:
        while self._failures and now - self._failures[0] > self.window_seconds:
            self._failures.popleft()
