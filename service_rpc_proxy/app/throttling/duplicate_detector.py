"""
Duplicate request detection.

Requests with the same cache key arriving within the trigger threshold of
each other are delayed by a random amount, which gives the first request's
result time to land in the cache before its siblings look it up. This is
best effort: two requests that both read the record before either updates it
pass through undelayed.
"""

import random
import time
from typing import Callable, Dict, Optional

from shared.logging import get_logger


DUPLICATE_DELAY_TRIGGER_THRESHOLD_MS = 1000
DUPLICATE_MIN_DELAY_MS = 500
DUPLICATE_RANDOM_MAX_EXTRA_DELAY_MS = 1000


def monotonic_ms() -> float:
    return time.monotonic() * 1000


class DuplicateDetector:
    """Tracks when each key was last seen and decides on a throttle delay."""

    def __init__(
        self,
        trigger_threshold_ms: int = DUPLICATE_DELAY_TRIGGER_THRESHOLD_MS,
        min_delay_ms: int = DUPLICATE_MIN_DELAY_MS,
        max_extra_delay_ms: int = DUPLICATE_RANDOM_MAX_EXTRA_DELAY_MS,
        *,
        clock: Callable[[], float] = monotonic_ms,
        rng: Optional[random.Random] = None,
    ):
        self.trigger_threshold_ms = trigger_threshold_ms
        self.min_delay_ms = min_delay_ms
        self.max_extra_delay_ms = max_extra_delay_ms
        self.clock = clock
        self.rng = rng or random.Random()
        self.logger = get_logger("rpc_proxy.throttling.duplicates")

        # key -> last seen timestamp (ms); never evicted
        self._last_seen: Dict[str, float] = {}

    def should_delay(self, key: str) -> int:
        """Return the delay in ms to apply to this request, 0 for none.

        The key's last-seen time is updated before the caller starts waiting,
        so a burst arriving together is throttled uniformly.
        """
        now = self.clock()
        previous = self._last_seen.get(key)
        self._last_seen[key] = now

        if previous is None or now - previous >= self.trigger_threshold_ms:
            return 0

        # Randomized so a burst does not all hit a barely outdated entry at once
        delay_ms = self.min_delay_ms + int(self.rng.random() * self.max_extra_delay_ms)
        self.logger.debug("Delaying potential duplicate request", key=key, delay_ms=delay_ms)
        return delay_ms

    def last_seen(self, key: str) -> Optional[float]:
        return self._last_seen.get(key)

    def __len__(self) -> int:
        return len(self._last_seen)
