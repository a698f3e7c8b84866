"""
Bounded, time-expiring cache of route decisions.

Entries are keyed by state key, evicted least-recently-used first once the
cache is full, and expire after a fixed time-to-live regardless of how often
they were hit.
"""

from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional
import logging
import time


# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Cached decision with its insertion time and hit counter"""
    decision: Any
    stored_at: float
    hits: int = 0


class DecisionCache:
    """
    LRU + TTL cache for route decisions.

    Attributes:
        capacity (int): Maximum number of entries
        ttl_seconds (float): Lifetime of an entry
        hits (int): Lookups served from the cache
        misses (int): Lookups that found nothing usable

    Thread Safety:
        Not thread-safe on its own; the owning router serializes access.
    """

    def __init__(
        self,
        capacity: int,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic
    ):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}")

        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, state_key: str) -> bool:
        return state_key in self._entries

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.stored_at >= self.ttl_seconds

    def get(self, state_key: str) -> Optional[Any]:
        """
        Return the cached decision for a state, or None.

        A hit refreshes the entry's LRU position and bumps its hit counter;
        an expired entry is dropped and counts as a miss.
        """
        entry = self._entries.get(state_key)
        if entry is None:
            self.misses += 1
            return None

        if self._expired(entry, self._clock()):
            del self._entries[state_key]
            self.misses += 1
            logger.debug(f"Cached decision for {state_key} expired")
            return None

        entry.hits += 1
        self.hits += 1
        self._entries.move_to_end(state_key)
        return entry.decision

    def put(self, state_key: str, decision: Any) -> None:
        if state_key in self._entries:
            del self._entries[state_key]
        elif len(self._entries) >= self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted least recently used decision for {evicted}")
        self._entries[state_key] = CacheEntry(decision=decision, stored_at=self._clock())

    def entry(self, state_key: str) -> Optional[CacheEntry]:
        """Raw entry access (no hit accounting, no expiry check)."""
        return self._entries.get(state_key)

    def invalidate(self, state_key: str) -> bool:
        return self._entries.pop(state_key, None) is not None

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0
