"""Backoff schedules for transient failures.

API requests wait roughly 1s, 2s, 4s between attempts (capped at 32s).
Auth cascade steps use a shorter schedule so an unreachable server fails the
cascade quickly instead of holding the session lock.
"""

import random
from dataclasses import dataclass


@dataclass(frozen=True)
class Backoff:
    """Exponential delay with multiplicative jitter."""

    base_delay: float
    max_delay: float
    jitter: float = 0.5

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry ``attempt`` (0-indexed)."""
        delay = min(self.max_delay, self.base_delay * (2**attempt))
        return delay * random.uniform(1 - self.jitter, 1 + self.jitter)


REQUEST_BACKOFF = Backoff(base_delay=1.0, max_delay=32.0)
STEP_BACKOFF = Backoff(base_delay=0.5, max_delay=4.0)
