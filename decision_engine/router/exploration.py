"""
Exploration schedules for epsilon-greedy routing.

Every law maps the number of updates performed so far to an epsilon that is
monotonically non-increasing in ``step`` and converges to ``final``.
"""

from enum import Enum
import math


class DecayType(Enum):
    """Supported exploration decay laws"""
    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    COSINE = "cosine"


def linear_decay(step: int, initial: float, final: float, decay_steps: int) -> float:
    return max(final, initial - step / decay_steps)


def exponential_decay(step: int, initial: float, final: float, decay_steps: int) -> float:
    return final + (initial - final) * math.exp(-step / decay_steps)


def cosine_decay(step: int, initial: float, final: float, decay_steps: int) -> float:
    progress = min(1.0, step / decay_steps)
    return final + 0.5 * (initial - final) * (1.0 + math.cos(math.pi * progress))


_DECAY_LAWS = {
    DecayType.LINEAR: linear_decay,
    DecayType.EXPONENTIAL: exponential_decay,
    DecayType.COSINE: cosine_decay,
}


class ExplorationSchedule:
    """
    Epsilon as a function of the update count.

    Attributes:
        decay_type (DecayType): Decay law in use
        initial (float): Epsilon at step 0
        final (float): Floor that epsilon converges to
        decay_steps (int): Horizon of the decay law

    Example:
        >>> schedule = ExplorationSchedule("linear", 1.0, 0.1, 10)
        >>> schedule.epsilon(5)
        0.5
    """

    def __init__(self, decay_type, initial: float, final: float, decay_steps: int):
        self.decay_type = DecayType(decay_type)
        if final > initial:
            raise ValueError(f"final ({final}) must be <= initial ({initial})")
        if decay_steps < 1:
            raise ValueError(f"decay_steps must be >= 1, got {decay_steps}")

        self.initial = initial
        self.final = final
        self.decay_steps = decay_steps
        self._law = _DECAY_LAWS[self.decay_type]

    def epsilon(self, step: int) -> float:
        """Epsilon after ``step`` updates, clamped to [final, initial]."""
        if step <= 0:
            return self.initial
        value = self._law(step, self.initial, self.final, self.decay_steps)
        return min(self.initial, max(self.final, value))
