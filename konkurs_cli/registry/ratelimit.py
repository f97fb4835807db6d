"""Token-bucket rate limiter shared by registry requests.

One limiter instance is shared by every worker talking to the registry, so
the combined request rate never exceeds ``requests_per_second`` regardless
of how many kommuner are collected concurrently.
"""

import threading
import time
from typing import Callable


class TokenBucket:
    """Thread-safe token bucket.

    Tokens refill continuously at ``rate`` per second up to ``capacity``.
    ``acquire`` blocks (sleeps) until a token is available.
    """

    def __init__(
        self,
        rate: float,
        capacity: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate <= 0:
            raise ValueError(f"Rate must be positive, got {rate}")
        if capacity < 1:
            raise ValueError(f"Capacity must be at least 1, got {capacity}")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = capacity
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._updated = now

    def try_acquire(self) -> bool:
        """Take a token if one is available right now."""
        with self._lock:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def acquire(self) -> float:
        """Take a token, waiting as long as needed.

        Returns:
            Total seconds spent waiting.
        """
        waited = 0.0
        while True:
            with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return waited
                wait = (1 - self._tokens) / self.rate
            # Sleep outside the lock so other workers can refill-check.
            self._sleep(wait)
            waited += wait

    @property
    def min_interval(self) -> float:
        """Seconds between requests at the sustained rate."""
        return 1.0 / self.rate
