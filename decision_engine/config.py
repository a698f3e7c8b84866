"""
Configuration Management for the Decision Engine.

This module provides a type-safe, validated configuration system using Pydantic.
Configuration values are loaded from environment variables or .env file with
intelligent defaults for development.

Usage:
    >>> from decision_engine.config import settings
    >>> print(settings.router.learning_rate)
    >>> print(settings.router.route_labels)
    >>> print(settings.attention.block_size)
"""

from typing import List, Optional, Literal
from pydantic import Field, field_validator, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ROUTE_LABELS = [
    "coder",
    "tester",
    "reviewer",
    "architect",
    "researcher",
    "optimizer",
    "debugger",
    "documenter",
]


# =============================================================================
# Router Configuration
# =============================================================================

class RouterConfig(BaseSettings):
    """
    Q-learning routing policy configuration.

    Controls the temporal-difference learning dynamics, the exploration
    schedule, the capacity of the learned table and of the auxiliary
    structures (decision cache, experience replay buffer), and auto-save
    cadence.

    Environment Variables:
        ROUTER_LEARNING_RATE: Step size for TD updates (default: 0.1)
        ROUTER_GAMMA: Discount factor for bootstrapped targets (default: 0.99)
        ROUTER_EXPLORATION_DECAY_TYPE: linear, exponential or cosine
        ROUTER_MAX_STATES: Q-table capacity before pruning (default: 10000)
        ROUTER_ROUTE_LABELS: JSON list of route names

    Example:
        >>> router_config = RouterConfig(max_states=500)
        >>> print(router_config.num_actions)  # 8
        >>> print(router_config.exploration_decay_type)  # exponential
    """

    # Step size applied to every TD error
    learning_rate: float = Field(
        default=0.1,
        gt=0.0,
        le=1.0,
        description="Learning rate for temporal-difference updates"
    )

    # Discount factor for the bootstrapped next-state value
    gamma: float = Field(
        default=0.99,
        ge=0.0,
        le=1.0,
        description="Discount factor applied to max Q(next state)"
    )

    # Epsilon at step 0
    exploration_initial: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Initial exploration rate"
    )

    # Epsilon floor
    exploration_final: float = Field(
        default=0.01,
        ge=0.0,
        le=1.0,
        description="Final exploration rate (floor)"
    )

    # Number of updates over which epsilon anneals
    exploration_decay: int = Field(
        default=10000,
        ge=1,
        description="Exploration decay horizon in updates"
    )

    exploration_decay_type: Literal["linear", "exponential", "cosine"] = Field(
        default="exponential",
        description="Exploration decay law"
    )

    # Q-table capacity; pruned to 80% once exceeded
    max_states: int = Field(
        default=10000,
        ge=1,
        description="Maximum number of states held in the Q-table"
    )

    # Ordered route names; action indices are positions in this list
    route_labels: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ROUTE_LABELS),
        description="Ordered list of route labels (actions)"
    )

    replay_buffer_size: int = Field(
        default=1000,
        ge=1,
        description="Capacity of the experience replay ring buffer"
    )

    replay_batch_size: int = Field(
        default=32,
        ge=1,
        description="Mini-batch size resampled after each update"
    )

    enable_replay: bool = Field(
        default=True,
        description="Push transitions into the replay buffer and resample them"
    )

    # Decision cache sizing
    cache_size: int = Field(
        default=256,
        ge=1,
        description="Maximum number of cached route decisions"
    )

    cache_ttl_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Seconds before a cached decision expires"
    )

    # Snapshot cadence (0 disables auto-save)
    autosave_interval: int = Field(
        default=100,
        ge=0,
        description="Request a snapshot every N updates (0 = never)"
    )

    model_path: str = Field(
        default=".router/q-learning-model.json",
        description="Snapshot file used by command-line hosts"
    )

    random_seed: Optional[int] = Field(
        default=None,
        description="Seed for exploration and replay sampling"
    )

    @computed_field
    @property
    def num_actions(self) -> int:
        """Number of routes (actions)."""
        return len(self.route_labels)

    @field_validator("exploration_final")
    @classmethod
    def validate_final_le_initial(cls, v: float, info) -> float:
        """Ensure exploration_final <= exploration_initial."""
        if "exploration_initial" in info.data:
            initial = info.data["exploration_initial"]
            if v > initial:
                raise ValueError(
                    f"exploration_final ({v}) must be <= exploration_initial ({initial})"
                )
        return v

    @field_validator("route_labels")
    @classmethod
    def validate_route_labels(cls, v: List[str]) -> List[str]:
        """Route labels must be non-empty and unique."""
        if not v:
            raise ValueError("route_labels must contain at least one route")
        if any(not label for label in v):
            raise ValueError("route_labels must not contain empty names")
        if len(set(v)) != len(v):
            raise ValueError(f"route_labels must be unique, got {v}")
        return v

    model_config = SettingsConfigDict(
        env_prefix="ROUTER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# =============================================================================
# Attention Configuration
# =============================================================================

class AttentionConfig(BaseSettings):
    """
    Tiled attention engine configuration.

    Environment Variables:
        ATTENTION_BLOCK_SIZE: Tile edge length (default: 64)
        ATTENTION_TEMPERATURE: Softmax temperature (default: 1.0)
        ATTENTION_TILING_THRESHOLD: N*M above which tiling is used (default: 1024)
        ATTENTION_BACKEND: reference (scalar loops) or vectorized (numpy)

    Example:
        >>> attention_config = AttentionConfig(block_size=32)
        >>> print(attention_config.tile_memory_bytes)  # 4096
    """

    # Tile edge length; 64-128 keeps a score tile inside L1/L2
    block_size: int = Field(
        default=64,
        ge=1,
        description="Block size for query/key tiling"
    )

    # Default dimensionality used by the benchmark harness
    dimensions: int = Field(
        default=384,
        ge=1,
        description="Embedding dimensionality for generated benchmark vectors"
    )

    temperature: float = Field(
        default=1.0,
        gt=0.0,
        description="Softmax temperature; scores are divided by sqrt(D) * temperature"
    )

    # Dispatch heuristic only, never a correctness boundary
    tiling_threshold: int = Field(
        default=1024,
        ge=0,
        description="Use the tiled path when num_queries * num_keys exceeds this"
    )

    backend: Literal["reference", "vectorized"] = Field(
        default="vectorized",
        description="Kernel backend: reference (portable loops) or vectorized (numpy)"
    )

    random_seed: Optional[int] = Field(
        default=None,
        description="Seed for benchmark vector generation"
    )

    @computed_field
    @property
    def tile_memory_bytes(self) -> int:
        """Bytes held by one float32 score tile."""
        return self.block_size * self.block_size * 4

    model_config = SettingsConfigDict(
        env_prefix="ATTENTION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# =============================================================================
# Global Settings Container
# =============================================================================

class Settings(BaseSettings):
    """
    Global application settings container.

    Usage:
        >>> from decision_engine.config import settings
        >>> settings.router.max_states
        >>> settings.attention.backend
        >>> settings.log_level
    """

    router: RouterConfig = Field(default_factory=RouterConfig)

    attention: AttentionConfig = Field(default_factory=AttentionConfig)

    # Logging level used by the command-line scripts
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )


# Singleton settings instance - import this throughout the application
settings = Settings()
