from __future__ import annotations

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Declared retry behaviour shared by the task queue and the extraction pipeline.

    ``max_attempts`` counts the first try. ``delay_for(n)`` is the wait before
    attempt ``n + 1`` after ``n`` failures: ``base_delay * factor ** (n - 1)``,
    capped at ``max_delay``, with up to ``jitter`` of random spread.
    """

    max_attempts: int = 3
    base_delay: float = 5.0
    factor: float = 2.0
    max_delay: float = 300.0
    jitter: float = 0.1

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts

    def delay_for(self, attempts_made: int, rng: random.Random | None = None) -> float:
        if attempts_made < 1 or self.base_delay <= 0:
            return 0.0
        delay = min(self.base_delay * (self.factor ** (attempts_made - 1)), self.max_delay)
        if self.jitter > 0:
            spread = delay * self.jitter
            delay += (rng or random).uniform(-spread, spread)
        return max(0.0, delay)

    @classmethod
    def exponential(cls, max_attempts: int, base_delay: float) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, base_delay=base_delay)

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1, base_delay=0.0)
