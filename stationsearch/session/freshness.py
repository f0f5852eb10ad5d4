"""Freshness gate for session validation.

Decides whether a previously confirmed session should be re-validated. The
timestamp is moved to "now" as soon as a check is decided on, before the
check runs, so a burst of calls arriving mid-validation does not each start
its own re-authentication.
"""

import threading
import time
from collections.abc import Callable


class FreshnessGate:
    """Elapsed-time TTL on "this session was confirmed good".

    Not a token-expiry prediction: the server may still reject a token
    inside the window, in which case callers use force_stale().
    """

    def __init__(
        self,
        threshold_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._threshold = threshold_seconds
        self._clock = clock
        self._last_validated_at = 0.0
        self._never_checked = True
        self._lock = threading.Lock()

    @property
    def threshold_seconds(self) -> float:
        return self._threshold

    @threshold_seconds.setter
    def threshold_seconds(self, value: float) -> None:
        self._threshold = value

    @property
    def last_validated_at(self) -> float:
        return self._last_validated_at

    def needs_check(self) -> bool:
        if self._never_checked:
            return True
        return self._clock() - self._last_validated_at > self._threshold

    def mark_checked_now(self) -> None:
        self._last_validated_at = self._clock()
        self._never_checked = False

    def force_stale(self) -> None:
        """Make the next needs_check() return True."""
        self._last_validated_at = 0.0
        self._never_checked = True

    def claim(self) -> bool:
        """Atomically test-and-mark.

        Returns:
            True if a check was needed (and the caller now owns it)
        """
        with self._lock:
            if not self.needs_check():
                return False
            self.mark_checked_now()
            return True
