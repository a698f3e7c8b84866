"""
Tiled Attention Engine for Memory Similarity

Computes softmax attention of query vectors over key/value vectors, used by
memory-retrieval collaborators to weight stored memory vectors by relevance.

Key Features:
- Direct computation for small inputs, block-tiled online softmax for large ones
- Both paths agree to within float32 rounding; the dispatch threshold is a
  performance heuristic only
- Peak score memory bounded by block_size^2 on the tiled path
- Kernel backend (reference loops or vectorized numpy) chosen once at construction
- Built-in benchmark harness with in-memory history

The engine holds no per-call state, so independent calls may run concurrently.

Example:
    >>> engine = TiledAttention(AttentionConfig(block_size=32))
    >>> result = engine.attention(queries, keys, values)
    >>> result.output.shape      # (len(queries), dimensions)
    >>> result.path              # 'direct' or 'tiled'
"""

from dataclasses import dataclass
from typing import Any, List, Optional
import logging
import time

import numpy as np

from decision_engine.config import AttentionConfig
from decision_engine.attention.backends import (
    AttentionBackend,
    AttentionConfigError,
    get_backend,
    score_scale,
    validate_inputs,
)
from decision_engine.attention.benchmark import AttentionBenchmark, BenchmarkResult


# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class AttentionResult:
    """
    Attention output with timing.

    Attributes:
        output: Array of shape (N, D), float32
        elapsed_ms: Wall-clock time of validation plus computation
        path: 'direct' or 'tiled'
        weights: Full (N, M) attention weights, only when requested on the direct path
    """
    output: np.ndarray
    elapsed_ms: float
    path: str
    weights: Optional[np.ndarray] = None


class TiledAttention:
    """
    Memory-bounded attention engine.

    Attributes:
        backend (AttentionBackend): Kernel implementation, fixed for the
            lifetime of the engine
        benchmark_history (List[BenchmarkResult]): Results of ``benchmark()`` calls
        last_speedup (float): Speedup reported by the most recent benchmark
    """

    def __init__(self, config: Optional[AttentionConfig] = None):
        self._config = config if config is not None else AttentionConfig()
        self.backend: AttentionBackend = get_backend(self._config.backend)
        self._benchmark = AttentionBenchmark(self)

        logger.info(
            f"Initialized tiled attention: backend={self.backend.name}, "
            f"block_size={self._config.block_size}, threshold={self._config.tiling_threshold}"
        )

    # ========================================================================
    # Attention
    # ========================================================================

    def attention(
        self,
        queries: Any,
        keys: Any,
        values: Any,
        return_weights: bool = False
    ) -> AttentionResult:
        """
        Compute attention output for every query.

        Uses the tiled path when ``len(queries) * len(keys)`` exceeds the
        configured threshold, the direct path otherwise. Requesting weights
        forces the direct path.

        Args:
            queries: N query vectors of dimension D
            keys: M key vectors of dimension D
            values: M value vectors of dimension D
            return_weights: Also return the (N, M) weight matrix

        Returns:
            AttentionResult

        Raises:
            InputError: If inputs are empty, key/value counts differ, or
                dimensions disagree
        """
        start = time.perf_counter()
        Q, K, V = validate_inputs(queries, keys, values)
        scale = score_scale(Q.shape[1], self._config.temperature)

        weights = None
        if not return_weights and Q.shape[0] * K.shape[0] > self._config.tiling_threshold:
            path = "tiled"
            output = self.backend.tiled(Q, K, V, scale, self._config.block_size)
        else:
            path = "direct"
            output, weights = self.backend.direct(Q, K, V, scale, return_weights=return_weights)

        elapsed_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            f"Attention {Q.shape[0]}x{K.shape[0]}x{Q.shape[1]} via {path} path in {elapsed_ms:.3f}ms"
        )
        return AttentionResult(output=output, elapsed_ms=elapsed_ms, path=path, weights=weights)

    def direct_attention(self, queries: Any, keys: Any, values: Any) -> np.ndarray:
        """Direct (quadratic-memory) attention regardless of input size."""
        Q, K, V = validate_inputs(queries, keys, values)
        output, _ = self.backend.direct(Q, K, V, score_scale(Q.shape[1], self._config.temperature))
        return output

    def tiled_attention(
        self,
        queries: Any,
        keys: Any,
        values: Any,
        block_size: Optional[int] = None
    ) -> np.ndarray:
        """Tiled attention regardless of input size."""
        block_size = block_size if block_size is not None else self._config.block_size
        if block_size < 1:
            raise AttentionConfigError(f"block_size must be >= 1, got {block_size}")

        Q, K, V = validate_inputs(queries, keys, values)
        return self.backend.tiled(
            Q, K, V, score_scale(Q.shape[1], self._config.temperature), block_size
        )

    # ========================================================================
    # Benchmarking
    # ========================================================================

    def benchmark(
        self,
        num_vectors: int = 512,
        dimensions: Optional[int] = None,
        iterations: int = 5
    ) -> BenchmarkResult:
        """Run the benchmark harness; see :class:`AttentionBenchmark`."""
        dimensions = dimensions if dimensions is not None else self._config.dimensions
        return self._benchmark.run(num_vectors, dimensions, iterations)

    @property
    def benchmark_history(self) -> List[BenchmarkResult]:
        return list(self._benchmark.history)

    @property
    def last_speedup(self) -> float:
        history = self._benchmark.history
        return history[-1].speedup if history else 0.0

    # ========================================================================
    # Configuration
    # ========================================================================

    def get_config(self) -> AttentionConfig:
        return self._config.model_copy()

    def set_config(self, **partial) -> AttentionConfig:
        """
        Update configuration fields.

        The backend is fixed at construction; asking for a different one
        raises instead of swapping kernels mid-session. Passing ``random_seed``
        restarts benchmark vector generation from that seed.

        Raises:
            AttentionConfigError: On unknown fields or a backend change
            pydantic.ValidationError: If a value is out of range
        """
        unknown = set(partial) - set(AttentionConfig.model_fields)
        if unknown:
            raise AttentionConfigError(f"Unknown attention config fields: {sorted(unknown)}")

        if "backend" in partial and partial["backend"] != self._config.backend:
            raise AttentionConfigError(
                f"Backend is fixed at construction ({self._config.backend!r}); "
                f"create a new engine to use {partial['backend']!r}"
            )

        self._config = AttentionConfig(**{**self._config.model_dump(exclude={"tile_memory_bytes"}), **partial})
        if "random_seed" in partial:
            self._benchmark.reseed(self._config.random_seed)
        logger.info(f"Updated attention config: {partial}")
        return self.get_config()


def compute_attention(
    queries: Any,
    keys: Any,
    values: Any,
    config: Optional[AttentionConfig] = None
) -> AttentionResult:
    """One-shot attention with a throwaway engine."""
    return TiledAttention(config).attention(queries, keys, values)
