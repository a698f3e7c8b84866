"""
State encoding for the Q-learning router.

Maps a free-text task description to a short, opaque state key. The key is
a 32-bit rolling hash over every character of the text, so it is a pure
function of the input: no salts, no timestamps, and unlike the built-in
``hash()`` it is stable across interpreter runs (PYTHONHASHSEED).

Collisions are tolerated; two tasks sharing a key simply share learned
values.
"""

from functools import lru_cache
import logging


# Configure module logger
logger = logging.getLogger(__name__)


STATE_KEY_PREFIX = "state_"

_MASK_32 = 0xFFFFFFFF


def _to_signed_32(value: int) -> int:
    value &= _MASK_32
    return value - (1 << 32) if value & 0x80000000 else value


@lru_cache(maxsize=4096)
def encode_state(text: str) -> str:
    """
    Encode a task description as a state key.

    Uses the ``h = h * 31 + ord(c)`` rolling hash wrapped to a signed 32-bit
    integer.

    Args:
        text: Task description (empty string is a valid state)

    Returns:
        State key of the form ``state_<int>``

    Example:
        >>> encode_state("fix login bug") == encode_state("fix login bug")
        True
        >>> encode_state("")
        'state_0'
    """
    h = 0
    for char in text:
        h = ((h << 5) - h + ord(char)) & _MASK_32
    return f"{STATE_KEY_PREFIX}{_to_signed_32(h)}"


class StateEncoder:
    """
    Callable wrapper around :func:`encode_state`.

    Kept as an object so a router can be handed a different encoder without
    touching the policy code.
    """

    def encode(self, text: str) -> str:
        return encode_state(text)

    def __call__(self, text: str) -> str:
        return self.encode(text)

    @staticmethod
    def cache_info():
        """Memoization statistics of the shared encoding cache."""
        return encode_state.cache_info()
