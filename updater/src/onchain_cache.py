"""Per-worker cache of on-chain feed values.

Reading every feed from the chain on every poll is the dominant RPC cost of
the primary worker, so on-chain values may be reused for a short TTL. The
cache must never outlive a write: the submission coordinator invalidates a
batch's feeds as soon as its update is confirmed, before the next staleness
evaluation runs.

A TTL of 0 disables caching entirely.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Callable, Iterable

if TYPE_CHECKING:
    from .StalenessEvaluator import OnChainValue

logger = logging.getLogger(__name__)


class OnChainValueCache:
    """TTL cache of on-chain values keyed by (oracle, feed).

    :ivar ttl: Seconds a cached value stays fresh.
    """

    def __init__(self, ttl: float = 0.0, clock: Callable[[], float] = time.monotonic) -> None:
        """Initialize the cache.

        :param ttl: Seconds a cached value stays fresh (0 disables caching).
        :param clock: Monotonic clock.
        """
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[tuple[str, str], tuple[float, OnChainValue | None]] = {}

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    def get(self, oracle: str, feed_id: str) -> tuple[bool, OnChainValue | None]:
        """Look up a cached value.

        A feed with no on-chain value yet is cached as None, so the first
        element distinguishes a hit on "nothing on-chain" from a miss.

        :returns: Tuple of (hit, value).
        """
        if not self.enabled:
            return False, None
        entry = self._entries.get((oracle, feed_id))
        if entry is None:
            return False, None
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl:
            del self._entries[(oracle, feed_id)]
            return False, None
        return True, value

    def set(self, oracle: str, feed_id: str, value: OnChainValue | None) -> None:
        """Store a freshly read value."""
        if self.enabled:
            self._entries[(oracle, feed_id)] = (self._clock(), value)

    def invalidate(self, keys: Iterable[tuple[str, str]]) -> None:
        """Drop cached values for the given (oracle, feed) keys."""
        dropped = 0
        for key in keys:
            if self._entries.pop(key, None) is not None:
                dropped += 1
        if dropped:
            logger.debug(f"Invalidated {dropped} cached on-chain values")

    def clear(self) -> None:
        self._entries.clear()
