"""
Experience replay buffer for the Q-learning router.

A fixed-capacity ring of past transitions. Once full, each push overwrites
the oldest slot. Sampling is uniform without replacement over the populated
slots; asking for more than is stored returns everything that is stored.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import logging
import time

import numpy as np


# Configure module logger
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Experience:
    """
    A single (state, action, reward, next state) transition.

    Attributes:
        state_key: Encoded task description
        action_index: Index of the route that was taken
        reward: Observed reward
        next_state_key: Encoded follow-up task, None for terminal transitions
        timestamp: Epoch seconds when the transition was recorded
        priority: Sampling priority (|TD error| at insertion time)
    """
    state_key: str
    action_index: int
    reward: float
    next_state_key: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    priority: float = 1.0


class ReplayBuffer:
    """
    Circular buffer of :class:`Experience` records.

    Attributes:
        capacity (int): Number of slots
        total_pushed (int): Transitions pushed since creation or the last clear()
    """

    def __init__(self, capacity: int, rng: Optional[np.random.Generator] = None):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")

        self.capacity = capacity
        self._slots: List[Optional[Experience]] = [None] * capacity
        self._next = 0
        self._size = 0
        self.total_pushed = 0
        self._rng = rng if rng is not None else np.random.default_rng()

    def __len__(self) -> int:
        return self._size

    @property
    def is_full(self) -> bool:
        return self._size == self.capacity

    def push(self, experience: Experience) -> None:
        self._slots[self._next] = experience
        self._next = (self._next + 1) % self.capacity
        self._size = min(self._size + 1, self.capacity)
        self.total_pushed += 1

    def sample(self, batch_size: int) -> List[Experience]:
        """
        Draw up to ``batch_size`` distinct experiences uniformly at random.

        Args:
            batch_size: Requested batch size

        Returns:
            ``min(batch_size, len(self))`` experiences
        """
        if batch_size <= 0 or self._size == 0:
            return []

        count = min(batch_size, self._size)
        if count < batch_size:
            logger.debug(f"Replay sample truncated to {count} of {batch_size} requested")
        indices = self._rng.choice(self._size, size=count, replace=False)
        return [self._slots[int(i)] for i in indices]

    def experiences(self) -> List[Experience]:
        """Populated experiences, oldest first."""
        if self._size < self.capacity:
            return list(self._slots[:self._size])
        return list(self._slots[self._next:] + self._slots[:self._next])

    def clear(self) -> None:
        self._slots = [None] * self.capacity
        self._next = 0
        self._size = 0
        self.total_pushed = 0
