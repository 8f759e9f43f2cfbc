import random
from typing import Optional

from relaykit.core.config import BACKOFF_BASE_SECONDS, BACKOFF_JITTER, BACKOFF_MAX_SECONDS


class ExponentialBackoff:
    """
    Delay before retry number `attempt` (1-based): base * 2 ** (attempt - 1),
    capped at max_seconds, then shortened by up to `jitter` of itself so that
    entries failing together do not retry together.
    """

    def __init__(
        self,
        base_seconds: float = BACKOFF_BASE_SECONDS,
        max_seconds: float = BACKOFF_MAX_SECONDS,
        jitter: float = BACKOFF_JITTER,
        rng: Optional[random.Random] = None,
    ):
        if base_seconds < 0 or max_seconds < 0:
            raise ValueError("Backoff durations must be non-negative")
        if not 0 <= jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.jitter = jitter
        self._rng = rng or random.Random()

    def raw_delay(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        # Avoid overflow for large attempt counts
        if exponent >= 63:
            return self.max_seconds
        return min(self.max_seconds, self.base_seconds * (2 ** exponent))

    def __call__(self, attempt: int) -> float:
        delay = self.raw_delay(attempt)
        if self.jitter:
            delay *= self._rng.uniform(1 - self.jitter, 1)
        return delay
