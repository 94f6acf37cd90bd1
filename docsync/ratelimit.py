"""Per-client request counting in one-minute buckets."""

import random
import time
from typing import Callable

import structlog

logger = structlog.get_logger()


class RateLimiter:
    """
    Counts requests per ``client:minute`` bucket.

    Buckets older than two minutes are swept on roughly 1% of checks, so
    memory stays bounded without a background task.
    """

    BUCKET_SECONDS = 60
    SWEEP_PROBABILITY = 0.01

    def __init__(
        self,
        requests_per_minute: int = 30,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._rpm = max(requests_per_minute, 1)
        self._clock = clock
        self._rng = rng
        self._buckets: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._buckets)

    def check(self, identifier: str) -> bool:
        """Record a request; return False when the client is over its limit."""
        minute = int(self._clock() // self.BUCKET_SECONDS)
        key = f"{identifier}:{minute}"
        count = self._buckets.get(key, 0) + 1
        self._buckets[key] = count

        if self._rng() < self.SWEEP_PROBABILITY:
            self.cleanup(minute)

        return count <= self._rpm

    def cleanup(self, current_minute: int | None = None) -> int:
        """Drop buckets older than two minutes; return how many were removed."""
        if current_minute is None:
            current_minute = int(self._clock() // self.BUCKET_SECONDS)
        stale = [
            key for key in self._buckets
            if current_minute - int(key.rsplit(":", 1)[1]) >= 2
        ]
        for key in stale:
            del self._buckets[key]
        if stale:
            logger.debug("Rate limit buckets swept", removed=len(stale))
        return len(stale)

    def current_limit(self) -> int:
        return self._rpm

    def reset(self) -> None:
        self._buckets.clear()
