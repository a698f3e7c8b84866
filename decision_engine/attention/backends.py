"""
Kernel backends for the tiled attention engine.

Two interchangeable implementations of the same two computations:

- ``direct``: per query, score every key (``q . k / (sqrt(D) * temperature)``),
  apply a stable softmax, take the weighted sum of values. Holds the full
  N x M weight matrix, i.e. quadratic memory.
- ``tiled``: the online-softmax ("flash") formulation. Keys are processed in
  blocks (outer loop), queries in blocks (inner loop); every query carries a
  running maximum, a running sum of exponentials and a running weighted-value
  accumulator. Only one block_size x block_size score tile exists at a time.

ReferenceBackend runs on scalar float32 loops and the unrolled dot product
from :mod:`decision_engine.kernels`; it needs nothing beyond numpy arrays as
storage and is the correctness reference. VectorizedBackend expresses every
tile as numpy matrix products. Both must agree to within float32 rounding.

Per query, blocks are always folded into the online-softmax state in key
order, so the correction sequence is identical in both backends.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional, Tuple
import logging

import numpy as np

from decision_engine.kernels import dot_unrolled, stable_softmax


# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# Custom Exceptions
# ============================================================================

class AttentionException(Exception):
    """Base exception for all attention engine errors."""
    pass


class InputError(AttentionException, ValueError):
    """Raised when query/key/value inputs are empty or shape-incompatible."""
    pass


class AttentionConfigError(AttentionException):
    """Raised when the engine is misconfigured."""
    pass


# ============================================================================
# Input Validation
# ============================================================================

def as_vectors(name: str, data: Any) -> np.ndarray:
    """
    Convert a sequence of vectors to a 2-D float32 array.

    Raises:
        InputError: If the data is empty, ragged, or not a list of vectors
    """
    try:
        array = np.asarray(data, dtype=np.float32)
    except (TypeError, ValueError) as e:
        raise InputError(f"{name} must be a sequence of equal-length numeric vectors: {e}") from e

    if array.size == 0:
        raise InputError(f"{name} must not be empty")
    if array.ndim != 2:
        raise InputError(f"{name} must be a 2-D collection of vectors, got shape {array.shape}")
    return array


def validate_inputs(queries: Any, keys: Any, values: Any) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Validate and convert attention inputs; nothing is computed on failure.

    Returns:
        (Q, K, V) as float32 arrays of shapes (N, D), (M, D), (M, D)

    Raises:
        InputError: On empty inputs, key/value count mismatch or dimension mismatch
    """
    Q = as_vectors("queries", queries)
    K = as_vectors("keys", keys)
    V = as_vectors("values", values)

    if K.shape[0] != V.shape[0]:
        raise InputError(
            f"Keys and values must have same count. Got {K.shape[0]} keys, {V.shape[0]} values"
        )
    if Q.shape[1] != K.shape[1]:
        raise InputError(
            f"Query and key dimensions must match. Got Q={Q.shape[1]}, K={K.shape[1]}"
        )
    if K.shape[1] != V.shape[1]:
        raise InputError(
            f"Key and value dimensions must match. Got K={K.shape[1]}, V={V.shape[1]}"
        )
    return Q, K, V


def score_scale(dimensions: int, temperature: float) -> np.float32:
    """Score multiplier ``1 / (sqrt(D) * temperature)`` in float32."""
    return np.float32(1.0 / (np.sqrt(dimensions) * temperature))


# ============================================================================
# Backend Interface
# ============================================================================

class AttentionBackend(ABC):
    """
    Strategy interface for attention kernels.

    Implementations receive validated float32 arrays and must not mutate them.
    """

    name: str = "abstract"

    @abstractmethod
    def direct(
        self,
        Q: np.ndarray,
        K: np.ndarray,
        V: np.ndarray,
        scale: np.float32,
        return_weights: bool = False
    ) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        """Quadratic-memory attention; returns (output, weights or None)."""
        pass

    @abstractmethod
    def tiled(
        self,
        Q: np.ndarray,
        K: np.ndarray,
        V: np.ndarray,
        scale: np.float32,
        block_size: int
    ) -> np.ndarray:
        """Block-tiled online-softmax attention; returns output (N, D)."""
        pass


class ReferenceBackend(AttentionBackend):
    """Scalar-loop implementation; slow, portable, easy to audit."""

    name = "reference"

    def direct(self, Q, K, V, scale, return_weights=False):
        num_queries, dimensions = Q.shape
        num_keys = K.shape[0]

        weights = np.zeros((num_queries, num_keys), dtype=np.float32)
        output = np.zeros((num_queries, dimensions), dtype=np.float32)

        for i in range(num_queries):
            scores = np.empty(num_keys, dtype=np.float32)
            for j in range(num_keys):
                scores[j] = dot_unrolled(Q[i], K[j]) * scale

            weights[i] = stable_softmax(scores)

            for j in range(num_keys):
                weight = weights[i, j]
                for d in range(dimensions):
                    output[i, d] += weight * V[j, d]

        return output, (weights if return_weights else None)

    def tiled(self, Q, K, V, scale, block_size):
        num_queries, dimensions = Q.shape
        num_keys = K.shape[0]

        output = np.zeros((num_queries, dimensions), dtype=np.float32)
        max_scores = np.full(num_queries, -np.inf, dtype=np.float32)
        sum_exp = np.zeros(num_queries, dtype=np.float32)

        for k_start in range(0, num_keys, block_size):
            k_end = min(k_start + block_size, num_keys)

            for q_start in range(0, num_queries, block_size):
                q_end = min(q_start + block_size, num_queries)

                for qi in range(q_start, q_end):
                    row = np.empty(k_end - k_start, dtype=np.float32)
                    for kj in range(k_start, k_end):
                        row[kj - k_start] = dot_unrolled(Q[qi], K[kj]) * scale

                    block_max = np.float32(-np.inf)
                    for score in row:
                        if score > block_max:
                            block_max = score

                    old_max = max_scores[qi]
                    new_max = max(old_max, block_max)
                    correction = np.float32(0.0) if old_max == -np.inf else np.exp(old_max - new_max)

                    running_sum = sum_exp[qi] * correction
                    for d in range(dimensions):
                        output[qi, d] *= correction

                    for kj in range(k_start, k_end):
                        weight = np.exp(row[kj - k_start] - new_max)
                        running_sum += weight
                        for d in range(dimensions):
                            output[qi, d] += weight * V[kj, d]

                    max_scores[qi] = new_max
                    sum_exp[qi] = running_sum

        for qi in range(num_queries):
            normalizer = sum_exp[qi]
            if normalizer > 0:
                for d in range(dimensions):
                    output[qi, d] /= normalizer

        return output


class VectorizedBackend(AttentionBackend):
    """numpy implementation: one matrix product per score tile."""

    name = "vectorized"

    def direct(self, Q, K, V, scale, return_weights=False):
        num_queries, dimensions = Q.shape
        num_keys = K.shape[0]

        weights = np.empty((num_queries, num_keys), dtype=np.float32)
        output = np.empty((num_queries, dimensions), dtype=np.float32)
        for i in range(num_queries):
            weights[i] = stable_softmax((K @ Q[i]) * scale)
            output[i] = weights[i] @ V

        return output, (weights if return_weights else None)

    def tiled(self, Q, K, V, scale, block_size):
        num_queries, dimensions = Q.shape
        num_keys = K.shape[0]

        output = np.zeros((num_queries, dimensions), dtype=np.float32)
        max_scores = np.full(num_queries, -np.inf, dtype=np.float32)
        sum_exp = np.zeros(num_queries, dtype=np.float32)

        for k_start in range(0, num_keys, block_size):
            K_block = K[k_start:k_start + block_size]
            V_block = V[k_start:k_start + block_size]

            for q_start in range(0, num_queries, block_size):
                rows = slice(q_start, q_start + block_size)

                scores = (Q[rows] @ K_block.T) * scale
                old_max = max_scores[rows]
                new_max = np.maximum(old_max, scores.max(axis=1))

                correction = np.zeros_like(old_max)
                seen = np.isfinite(old_max)
                correction[seen] = np.exp(old_max[seen] - new_max[seen])

                exp_scores = np.exp(scores - new_max[:, None])
                sum_exp[rows] = sum_exp[rows] * correction + exp_scores.sum(axis=1)
                output[rows] = output[rows] * correction[:, None] + exp_scores @ V_block
                max_scores[rows] = new_max

        nonzero = sum_exp > 0
        output[nonzero] /= sum_exp[nonzero][:, None]
        return output


_BACKENDS = {
    ReferenceBackend.name: ReferenceBackend,
    VectorizedBackend.name: VectorizedBackend,
}


def get_backend(name: str) -> AttentionBackend:
    """
    Instantiate a backend by name.

    Raises:
        AttentionConfigError: If the name is unknown
    """
    try:
        return _BACKENDS[name]()
    except KeyError:
        raise AttentionConfigError(
            f"Unknown attention backend {name!r}. Must be one of {sorted(_BACKENDS)}"
        ) from None
