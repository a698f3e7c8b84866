"""
Numeric kernels shared by the routing policy and the attention engine.

Both subsystems rely on the same two primitives: a numerically stable
softmax (subtract the row maximum before exponentiating) and a float32
dot product. The dot product is written as a 4-way unrolled loop so the
reference attention backend can run without BLAS; the unrolling only
regroups additions and stays within normal float32 rounding of the
sequential sum.
"""

from typing import Optional
import logging

import numpy as np


# Configure module logger
logger = logging.getLogger(__name__)


def stable_softmax(scores: np.ndarray, axis: int = -1) -> np.ndarray:
    """
    Softmax with max-subtraction along ``axis``.

    Rows whose maximum is ``-inf`` (no finite score) come back as zeros
    instead of NaN.

    Args:
        scores: Array of raw scores (any float dtype, any rank >= 1)
        axis: Axis to normalize over

    Returns:
        Array of the same shape and dtype with entries summing to 1 along ``axis``

    Example:
        >>> stable_softmax(np.array([1000.0, 1000.0]))
        array([0.5, 0.5])
    """
    scores = np.asarray(scores)
    row_max = np.max(scores, axis=axis, keepdims=True)
    row_max = np.where(np.isfinite(row_max), row_max, 0.0).astype(scores.dtype, copy=False)
    exp_scores = np.exp(scores - row_max)
    total = np.sum(exp_scores, axis=axis, keepdims=True)
    safe_total = np.where(total > 0, total, 1.0).astype(scores.dtype, copy=False)
    return exp_scores / safe_total


def softmax_at(values: np.ndarray, index: int) -> float:
    """Probability mass of ``values[index]`` under a stable softmax."""
    return float(stable_softmax(np.asarray(values, dtype=np.float64))[index])


def dot_unrolled(a: np.ndarray, b: np.ndarray) -> np.float32:
    """
    Float32 dot product with a 4x unrolled main loop.

    Only the common prefix of the two vectors is used.
    """
    length = min(len(a), len(b))
    total = np.float32(0.0)
    i = 0
    while i <= length - 4:
        total += (a[i] * b[i]
                  + a[i + 1] * b[i + 1]
                  + a[i + 2] * b[i + 2]
                  + a[i + 3] * b[i + 3])
        i += 4
    # Tail
    while i < length:
        total += a[i] * b[i]
        i += 1
    return np.float32(total)


def random_unit_vectors(
    count: int,
    dimensions: int,
    rng: Optional[np.random.Generator] = None
) -> np.ndarray:
    """
    Generate ``count`` random float32 vectors normalized to unit length.

    Components are drawn uniformly from [-1, 1) before normalization.

    Args:
        count: Number of vectors
        dimensions: Dimensionality of each vector
        rng: Optional generator for reproducibility

    Returns:
        Array of shape (count, dimensions), dtype float32
    """
    if count < 1 or dimensions < 1:
        raise ValueError(f"count and dimensions must be >= 1, got {count}, {dimensions}")

    rng = rng if rng is not None else np.random.default_rng()
    vectors = rng.uniform(-1.0, 1.0, size=(count, dimensions)).astype(np.float32)
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (vectors / norms).astype(np.float32)
