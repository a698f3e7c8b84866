"""
Benchmarking Script for the Tiled Attention Engine.

Sweeps the attention benchmark harness over a range of vector counts and
reports direct versus tiled timings, speedup, memory estimates and output
parity.

Key Metrics:
------------
1. Direct / tiled time (ms): Average runtime per path
2. Speedup: Time_direct / Time_tiled
3. Memory reduction: N*M score matrix versus one block_size^2 tile
4. Max abs error: Parity between the two paths on the benchmark data

Usage:
------
    # Run benchmark with default sizes
    python scripts/benchmark_attention.py

    # Custom sizes and dimensionality
    python scripts/benchmark_attention.py --sizes 128 256 512 --dimensions 128

    # Reference (scalar loop) backend on small inputs
    python scripts/benchmark_attention.py --backend reference --sizes 16 32 --dimensions 8

    # Save CSV and plots
    python scripts/benchmark_attention.py --output benchmark_results --plot
"""

import sys
import argparse
from pathlib import Path
from typing import List, Optional
from datetime import datetime
import logging

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import pandas as pd
from tqdm import tqdm

from decision_engine.config import AttentionConfig, settings
from decision_engine.attention.tiled_attention import TiledAttention

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# =============================================================================
# Configuration
# =============================================================================

DEFAULT_SIZES = [64, 128, 256, 512]
DEFAULT_DIMENSIONS = 384
DEFAULT_ITERATIONS = 5


# =============================================================================
# Benchmark Execution
# =============================================================================

def run_benchmark(
    sizes: List[int] = DEFAULT_SIZES,
    dimensions: int = DEFAULT_DIMENSIONS,
    iterations: int = DEFAULT_ITERATIONS,
    block_size: Optional[int] = None,
    backend: Optional[str] = None,
    seed: Optional[int] = None,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Run the attention benchmark for each size.

    Args:
        sizes: Vector counts to benchmark (queries = keys = values)
        dimensions: Vector dimensionality
        iterations: Timed iterations per path
        block_size: Tile size override
        backend: Backend override ('reference' or 'vectorized')
        seed: Random seed for vector generation
        verbose: Show a progress bar

    Returns:
        pd.DataFrame with one row per size (BenchmarkResult fields plus timestamp)
    """
    overrides = {"random_seed": seed}
    if block_size is not None:
        overrides["block_size"] = block_size
    if backend is not None:
        overrides["backend"] = backend

    engine = TiledAttention(AttentionConfig(**overrides))

    logger.info("=" * 80)
    logger.info("TILED ATTENTION BENCHMARK")
    logger.info("=" * 80)
    logger.info(f"Sizes: {sizes}")
    logger.info(f"Dimensions: {dimensions}")
    logger.info(f"Iterations: {iterations}")
    logger.info(f"Backend: {engine.backend.name}, block size: {engine.get_config().block_size}")
    logger.info("=" * 80)

    for size in tqdm(sizes, desc="Benchmarking", disable=not verbose):
        engine.benchmark(num_vectors=size, dimensions=dimensions, iterations=iterations)

    df = pd.DataFrame([result.to_dict() for result in engine.benchmark_history])
    df["timestamp"] = datetime.now().isoformat()
    return df


def summarize(df: pd.DataFrame) -> str:
    """Plain-text table of the key columns."""
    columns = [
        "num_vectors", "naive_time_ms", "tiled_time_ms", "speedup",
        "memory_reduction", "max_abs_error",
    ]
    return df[columns].to_string(index=False, float_format=lambda v: f"{v:.4g}")


def plot_results(df: pd.DataFrame, output_dir: Path) -> Path:
    """Plot time per path and speedup against vector count."""
    import matplotlib
    matplotlib.use('Agg')  # Non-interactive backend
    import matplotlib.pyplot as plt

    fig, (ax_time, ax_speedup) = plt.subplots(1, 2, figsize=(12, 5))

    ax_time.plot(df["num_vectors"], df["naive_time_ms"], marker="o", label="direct")
    ax_time.plot(df["num_vectors"], df["tiled_time_ms"], marker="s", label="tiled")
    ax_time.set_xlabel("Vectors")
    ax_time.set_ylabel("Time (ms)")
    ax_time.set_title("Attention time per path")
    ax_time.legend()
    ax_time.grid(True, alpha=0.3)

    ax_speedup.plot(df["num_vectors"], df["speedup"], marker="o", color="tab:green")
    ax_speedup.axhline(1.0, color="gray", linestyle="--", linewidth=1)
    ax_speedup.set_xlabel("Vectors")
    ax_speedup.set_ylabel("Speedup (direct / tiled)")
    ax_speedup.set_title("Tiled speedup")
    ax_speedup.grid(True, alpha=0.3)

    fig.tight_layout()
    plot_path = output_dir / f"attention_benchmark_{datetime.now().strftime('%Y%m%d_%H%M%S')}.png"
    fig.savefig(plot_path, dpi=120)
    plt.close(fig)
    logger.info(f"Saved plot to {plot_path}")
    return plot_path


# =============================================================================
# Main
# =============================================================================

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Benchmark direct vs tiled attention")
    parser.add_argument("--sizes", type=int, nargs="+", default=DEFAULT_SIZES,
                        help="Vector counts to benchmark")
    parser.add_argument("--dimensions", type=int, default=DEFAULT_DIMENSIONS,
                        help="Vector dimensionality")
    parser.add_argument("--iterations", type=int, default=DEFAULT_ITERATIONS,
                        help="Timed iterations per path")
    parser.add_argument("--block-size", type=int, default=None,
                        help="Tile size (default: from configuration)")
    parser.add_argument("--backend", choices=["reference", "vectorized"], default=None,
                        help="Kernel backend (default: from configuration)")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument("--output", type=Path, default=None,
                        help="Directory for CSV (and plot) output")
    parser.add_argument("--plot", action="store_true", help="Generate plots (requires --output)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    df = run_benchmark(
        sizes=args.sizes,
        dimensions=args.dimensions,
        iterations=args.iterations,
        block_size=args.block_size,
        backend=args.backend,
        seed=args.seed,
    )
    print(summarize(df))

    if args.output is not None:
        args.output.mkdir(parents=True, exist_ok=True)
        csv_path = args.output / f"attention_benchmark_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
        df.to_csv(csv_path, index=False)
        logger.info(f"Saved results to {csv_path}")
        if args.plot:
            plot_results(df, args.output)
    elif args.plot:
        logger.warning("--plot requires --output; skipping plots")

    return 0


if __name__ == "__main__":
    sys.exit(main())
