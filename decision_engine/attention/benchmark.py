"""
Benchmark harness for the tiled attention engine.

Compares the direct (quadratic-memory) path against the tiled online-softmax
path on the same randomly generated, unit-normalized vectors.

Key Metrics:
------------
1. Average time per path (ms) over ``iterations`` runs, after a warm-up
2. Speedup: direct_time / tiled_time
3. Memory estimate: N*M*4 bytes for the direct score matrix versus
   block_size^2*4 bytes for one tiled score tile, and their ratio
4. Max absolute difference between the two outputs (parity check)

Results are kept in memory only; exporting them is left to the caller
(see scripts/benchmark_attention.py).

Example:
    >>> engine = TiledAttention(AttentionConfig(random_seed=0))
    >>> result = engine.benchmark(num_vectors=256, dimensions=64, iterations=3)
    >>> print(f"{result.speedup:.2f}x, {result.memory_reduction:.0f}x less memory")
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional
import logging
import os
import time

import numpy as np
import psutil

from decision_engine.kernels import random_unit_vectors


# Configure module logger
logger = logging.getLogger(__name__)


# Vectors used for the warm-up pass of each path
WARMUP_VECTORS = 10

BYTES_PER_FLOAT32 = 4


@dataclass
class BenchmarkResult:
    """
    Outcome of one benchmark run.

    Attributes:
        naive_time_ms: Average direct-path time per iteration
        tiled_time_ms: Average tiled-path time per iteration
        speedup: naive_time_ms / tiled_time_ms
        num_vectors: Number of queries (= keys = values)
        dimensions: Vector dimensionality
        iterations: Timed iterations per path
        block_size: Tile edge length used by the tiled path
        backend: Kernel backend name
        naive_memory_bytes: Size of the implicit N x M score matrix
        tiled_memory_bytes: Size of one score tile
        memory_reduction: naive_memory_bytes / tiled_memory_bytes
        max_abs_error: Largest element-wise difference between the two outputs
        process_rss_bytes: Resident set size of the process after the run
    """
    naive_time_ms: float
    tiled_time_ms: float
    speedup: float
    num_vectors: int
    dimensions: int
    iterations: int
    block_size: int
    backend: str
    naive_memory_bytes: int
    tiled_memory_bytes: int
    memory_reduction: float
    max_abs_error: float
    process_rss_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def estimate_memory(num_queries: int, num_keys: int, block_size: int) -> Dict[str, float]:
    """Score-matrix memory estimates: full N x M matrix versus one square tile."""
    naive = num_queries * num_keys * BYTES_PER_FLOAT32
    tile = block_size * block_size * BYTES_PER_FLOAT32
    return {
        "naive_memory_bytes": naive,
        "tiled_memory_bytes": tile,
        "memory_reduction": naive / tile,
    }


class AttentionBenchmark:
    """
    Times both attention paths of an engine and records the results.

    Attributes:
        engine: Engine exposing ``direct_attention``, ``tiled_attention``,
            ``backend`` and ``get_config()``
        history (List[BenchmarkResult]): Results in run order
        rng (np.random.Generator): Source of benchmark vectors
    """

    def __init__(self, engine, rng: Optional[np.random.Generator] = None):
        self.engine = engine
        self.history: List[BenchmarkResult] = []
        self.rng = rng if rng is not None else np.random.default_rng(engine.get_config().random_seed)
        self._process = psutil.Process(os.getpid())

    def reseed(self, seed: Optional[int]) -> None:
        """Restart vector generation from ``seed`` (fresh entropy if None)."""
        self.rng = np.random.default_rng(seed)

    def run(self, num_vectors: int = 512, dimensions: int = 384, iterations: int = 5) -> BenchmarkResult:
        """
        Benchmark direct versus tiled attention.

        Args:
            num_vectors: Number of query, key and value vectors each
            dimensions: Dimensionality of every vector
            iterations: Timed repetitions per path (averaged)

        Returns:
            BenchmarkResult, also appended to ``history``

        Raises:
            ValueError: If any argument is < 1
        """
        if num_vectors < 1 or dimensions < 1 or iterations < 1:
            raise ValueError(
                f"num_vectors, dimensions and iterations must be >= 1, "
                f"got {num_vectors}, {dimensions}, {iterations}"
            )

        block_size = self.engine.get_config().block_size
        logger.info(
            f"Benchmarking attention: {num_vectors} vectors x {dimensions} dims, "
            f"{iterations} iterations, block_size={block_size}, backend={self.engine.backend.name}"
        )

        queries = random_unit_vectors(num_vectors, dimensions, self.rng)
        keys = random_unit_vectors(num_vectors, dimensions, self.rng)
        values = random_unit_vectors(num_vectors, dimensions, self.rng)

        # Warm up
        warm = min(WARMUP_VECTORS, num_vectors)
        self.engine.direct_attention(queries[:warm], keys[:warm], values[:warm])
        self.engine.tiled_attention(queries[:warm], keys[:warm], values[:warm])

        naive_total = 0.0
        for _ in range(iterations):
            start = time.perf_counter()
            naive_output = self.engine.direct_attention(queries, keys, values)
            naive_total += time.perf_counter() - start

        tiled_total = 0.0
        for _ in range(iterations):
            start = time.perf_counter()
            tiled_output = self.engine.tiled_attention(queries, keys, values)
            tiled_total += time.perf_counter() - start

        naive_time_ms = naive_total * 1000 / iterations
        tiled_time_ms = tiled_total * 1000 / iterations
        speedup = naive_time_ms / tiled_time_ms if tiled_time_ms > 0 else float("inf")

        result = BenchmarkResult(
            naive_time_ms=naive_time_ms,
            tiled_time_ms=tiled_time_ms,
            speedup=speedup,
            num_vectors=num_vectors,
            dimensions=dimensions,
            iterations=iterations,
            block_size=block_size,
            backend=self.engine.backend.name,
            max_abs_error=float(np.max(np.abs(naive_output - tiled_output))),
            process_rss_bytes=int(self._process.memory_info().rss),
            **estimate_memory(num_vectors, num_vectors, block_size),
        )
        self.history.append(result)

        logger.info(
            f"Direct {naive_time_ms:.2f}ms vs tiled {tiled_time_ms:.2f}ms "
            f"({speedup:.2f}x), memory reduction {result.memory_reduction:.1f}x, "
            f"max error {result.max_abs_error:.2e}"
        )
        return result
