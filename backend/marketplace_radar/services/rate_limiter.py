import random
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional


class SlidingWindowRateLimiter:
    """Allows at most ``limit`` calls in any ``window`` seconds."""

    def __init__(self, limit: int, window: float, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._requests: Deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        while self._requests and now - self._requests[0] >= self.window:
            self._requests.popleft()

    def is_allowed(self) -> bool:
        """Record a call and return True if the window has room for it."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._requests) < self.limit:
                self._requests.append(now)
                return True
            return False

    def remaining(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return max(0, self.limit - len(self._requests))

    def time_until_next_request(self) -> float:
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._requests) < self.limit:
                return 0.0
            return max(0.0, self._requests[0] + self.window - now)

    def reset(self) -> None:
        with self._lock:
            self._requests.clear()


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: Optional[float] = None,
) -> float:
    """Exponential backoff: ``min(base * 2**attempt + jitter, max_delay)``.

    ``jitter`` defaults to a random 0-10% of the un-jittered delay; pass 0 to
    get the deterministic curve.
    """
    delay = base_delay * (2 ** attempt)
    if jitter is None:
        jitter = random.uniform(0, 0.1 * delay)
    return min(delay + jitter, max_delay)
