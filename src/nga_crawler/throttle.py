"""
Request rate limiting for the site client.

A forum row carries ``request_rate_limit_per_sec``; the crawler hands it to
the HTTP client, which spaces requests with this token bucket.
"""

import time
from typing import Callable


class TokenBucket:
    """
    Token bucket rate limiter.

    The bucket fills at a steady rate up to ``capacity`` and each request
    consumes one token. When the bucket is empty the caller sleeps until a
    token is available.
    """

    def __init__(
        self,
        tokens_per_second: float = 1.0,
        capacity: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            tokens_per_second: Rate at which tokens are added to the bucket
            capacity: Maximum number of tokens the bucket can hold
            clock: Monotonic time source (injectable for tests)
            sleep: Sleep function (injectable for tests)
        """
        if tokens_per_second <= 0:
            raise ValueError("tokens_per_second must be positive")
        self.tokens_per_second = tokens_per_second
        self.capacity = max(1, capacity)
        self.tokens = float(self.capacity)
        self._clock = clock
        self._sleep = sleep
        self.last_update = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last_update
        self.tokens = min(self.capacity, self.tokens + elapsed * self.tokens_per_second)
        self.last_update = now

    def consume(self, tokens: int = 1) -> float:
        """
        Try to take tokens from the bucket.

        Returns:
            0.0 if the tokens were taken, otherwise seconds to wait before
            they will be available (nothing is taken in that case)
        """
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return 0.0
        return (tokens - self.tokens) / self.tokens_per_second

    def acquire(self) -> float:
        """Block until one token is taken. Returns the total time slept."""
        waited = 0.0
        while True:
            delay = self.consume()
            if delay <= 0:
                return waited
            self._sleep(delay)
            waited += delay
