"""
Tabular action-value store for the Q-learning router.

The table maps a state key to one value per route together with a visit
count and the time of the last update. Entries are kept in recency order
(least recently updated first), which makes pruning a walk from the front
of the table instead of a sort.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple
import logging
import math
import time

import numpy as np


# Configure module logger
logger = logging.getLogger(__name__)


# Fraction of capacity kept after a prune
PRUNE_TARGET_RATIO = 0.8


@dataclass
class QEntry:
    """
    Learned values for a single state.

    Attributes:
        values: One action value per route (float64)
        visits: Number of primary updates applied to this state
        last_update: Wall-clock time (epoch seconds) of the last value change
    """
    values: np.ndarray
    visits: int = 0
    last_update: float = field(default_factory=time.time)

    @classmethod
    def zeros(cls, num_actions: int) -> "QEntry":
        return cls(values=np.zeros(num_actions, dtype=np.float64))


class QTable:
    """
    Bounded mapping from state key to :class:`QEntry`.

    Lookups never create entries; only :meth:`get_or_create` does. Touching
    an entry moves it to the most-recent end of the table.

    Attributes:
        num_actions (int): Length of every value array
        max_states (int): Capacity before :meth:`prune` evicts entries
    """

    def __init__(self, num_actions: int, max_states: int):
        if num_actions < 1:
            raise ValueError(f"num_actions must be >= 1, got {num_actions}")
        if max_states < 1:
            raise ValueError(f"max_states must be >= 1, got {max_states}")

        self.num_actions = num_actions
        self.max_states = max_states
        self._entries: "OrderedDict[str, QEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, state_key: str) -> bool:
        return state_key in self._entries

    def __iter__(self) -> Iterator[Tuple[str, QEntry]]:
        return iter(self._entries.items())

    def get(self, state_key: str) -> Optional[QEntry]:
        return self._entries.get(state_key)

    def values_for(self, state_key: str) -> np.ndarray:
        """Copy of the action values for a state; zeros for unseen states."""
        entry = self._entries.get(state_key)
        if entry is None:
            return np.zeros(self.num_actions, dtype=np.float64)
        return entry.values.copy()

    def max_value(self, state_key: str) -> float:
        entry = self._entries.get(state_key)
        if entry is None:
            return 0.0
        return float(np.max(entry.values))

    def get_or_create(self, state_key: str) -> QEntry:
        entry = self._entries.get(state_key)
        if entry is None:
            entry = QEntry.zeros(self.num_actions)
            self._entries[state_key] = entry
        return entry

    def touch(self, state_key: str) -> None:
        """Mark a state as the most recently updated one."""
        entry = self._entries[state_key]
        entry.last_update = time.time()
        self._entries.move_to_end(state_key)

    @property
    def over_capacity(self) -> bool:
        return len(self._entries) > self.max_states

    def prune(self, protected: Optional[str] = None) -> List[str]:
        """
        Evict least recently updated entries down to 80% of capacity.

        Args:
            protected: State key that must survive (the entry being updated)

        Returns:
            Evicted state keys, oldest first
        """
        target = int(math.floor(self.max_states * PRUNE_TARGET_RATIO))
        evicted: List[str] = []
        for state_key in list(self._entries.keys()):
            if len(self._entries) <= target:
                break
            if state_key == protected:
                continue
            del self._entries[state_key]
            evicted.append(state_key)

        if evicted:
            logger.info(
                f"Pruned {len(evicted)} states from Q-table "
                f"({len(self._entries)}/{self.max_states} remaining)"
            )
        return evicted

    def clear(self) -> None:
        self._entries.clear()

    def replace(self, entries: Dict[str, QEntry]) -> None:
        """Swap in a complete set of entries, keeping the given order."""
        self._entries = OrderedDict(entries)
