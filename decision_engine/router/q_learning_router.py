"""
Q-Learning Router for Task Routing

This module implements a tabular reinforcement-learning policy that maps a
free-text task description to one of a fixed, ordered set of route labels
(worker roles) and learns from reward feedback.

Key Features:
- Deterministic state keys from task text (see state_encoder)
- Epsilon-greedy selection with linear/exponential/cosine exploration decay
- Softmax confidence and ranked alternative routes on every decision
- LRU + TTL decision cache for repeated greedy lookups
- Experience replay resampled on every update
- Recency-based pruning that keeps the table within capacity
- Pure-data export/import for persistence (storage is the host's concern)

The router is a single-step contextual bandit with optional bootstrapping:
when a follow-up task is reported with the reward, the target becomes
``reward + gamma * max Q(next state)``.

Example:
    >>> router = QLearningRouter(RouterConfig(random_seed=7))
    >>> for _ in range(20):
    ...     router.update("fix login bug", "coder", reward=1.0)
    >>> router.route("fix login bug", explore=False).route
    'coder'
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
import logging
import threading

import numpy as np

from decision_engine.config import RouterConfig
from decision_engine.kernels import softmax_at
from decision_engine.router.decision_cache import DecisionCache
from decision_engine.router.exploration import ExplorationSchedule
from decision_engine.router.persistence import (
    SNAPSHOT_VERSION,
    PersistedModel,
    QTableRecord,
    SnapshotConfig,
    SnapshotMetadata,
    SnapshotStats,
    coerce_model,
    validate_snapshot,
)
from decision_engine.router.q_table import QEntry, QTable
from decision_engine.router.replay_buffer import Experience, ReplayBuffer
from decision_engine.router.state_encoder import StateEncoder


# Configure module logger
logger = logging.getLogger(__name__)


# Number of ranked alternatives returned with each decision
NUM_ALTERNATIVES = 3


@dataclass(frozen=True)
class RouteDecision:
    """
    Outcome of a routing call.

    Attributes:
        route: Selected route label
        confidence: Softmax probability of the selected route over all values
        values: Action values for every route, in route-label order
        explored: True if the route was drawn at random (exploration)
        alternatives: Up to three other routes with their values, best first
    """
    route: str
    confidence: float
    values: Tuple[float, ...]
    explored: bool
    alternatives: Tuple[Tuple[str, float], ...]

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["values"] = list(self.values)
        result["alternatives"] = [
            {"route": route, "score": score} for route, score in self.alternatives
        ]
        return result


class QLearningRouter:
    """
    Epsilon-greedy tabular Q-learning router.

    All learner state (table, epsilon, counters, cache, replay buffer) lives
    on the instance. A host that needs one shared learner should hold one
    instance; public methods serialize on a per-instance lock.

    Attributes:
        config (RouterConfig): Learning and capacity parameters
        route_labels (List[str]): Ordered route names (action indices)
        q_table (QTable): Learned action values
        cache (DecisionCache): Cached greedy decisions
        replay_buffer (ReplayBuffer): Past transitions for replay
        epsilon (float): Current exploration rate
        step_count (int): Primary update() calls applied (drives exploration decay)
        update_count (int): TD updates applied, primary and replayed
        avg_td_error (float): Running mean of |TD error| over primary updates
    """

    def __init__(
        self,
        config: Optional[RouterConfig] = None,
        encoder: Optional[StateEncoder] = None,
        snapshot_callback: Optional[Callable[[PersistedModel], None]] = None,
        rng: Optional[np.random.Generator] = None
    ):
        """
        Initialize the router.

        Args:
            config: Router configuration (defaults to RouterConfig())
            encoder: State encoder (defaults to StateEncoder())
            snapshot_callback: Called with a fresh snapshot every
                ``autosave_interval`` updates
            rng: Random generator; seeded from ``config.random_seed`` if omitted
        """
        self.config = config if config is not None else RouterConfig()
        self.route_labels: List[str] = list(self.config.route_labels)
        self._action_index: Dict[str, int] = {
            label: idx for idx, label in enumerate(self.route_labels)
        }
        self.encoder = encoder if encoder is not None else StateEncoder()
        self.snapshot_callback = snapshot_callback
        self._rng = rng if rng is not None else np.random.default_rng(self.config.random_seed)

        self.schedule = ExplorationSchedule(
            self.config.exploration_decay_type,
            self.config.exploration_initial,
            self.config.exploration_final,
            self.config.exploration_decay,
        )
        self.q_table = QTable(self.config.num_actions, self.config.max_states)
        self.cache = DecisionCache(self.config.cache_size, self.config.cache_ttl_seconds)
        self.replay_buffer = ReplayBuffer(self.config.replay_buffer_size, rng=self._rng)

        self._lock = threading.RLock()
        self._reset_statistics()

        logger.info(
            f"Initialized Q-learning router: {self.config.num_actions} routes, "
            f"decay={self.config.exploration_decay_type}, max_states={self.config.max_states}, "
            f"replay={'on' if self.config.enable_replay else 'off'}"
        )

    def _reset_statistics(self) -> None:
        self.epsilon = self.config.exploration_initial
        self.step_count = 0
        self.update_count = 0
        self.avg_td_error = 0.0
        self.total_experiences = 0

    # ========================================================================
    # Routing
    # ========================================================================

    def route(self, task_text: str, explore: bool = True) -> RouteDecision:
        """
        Choose a route for a task description.

        Greedy calls (``explore=False``) are served from the decision cache
        when a live entry exists. Exploratory calls always draw a fresh random
        number and are never cached. Neither path creates table entries.

        Args:
            task_text: Task description
            explore: Allow epsilon-greedy exploration

        Returns:
            RouteDecision for the task
        """
        with self._lock:
            state_key = self.encoder.encode(task_text)

            if not explore:
                cached = self.cache.get(state_key)
                if cached is not None:
                    logger.debug(f"Decision cache hit for {state_key}: {cached.route}")
                    return cached

            values = self.q_table.values_for(state_key)

            explored = False
            if explore and self._rng.random() < self.epsilon:
                action_idx = int(self._rng.integers(self.config.num_actions))
                explored = True
            else:
                # np.argmax returns the first maximum, so ties go to the lowest index
                action_idx = int(np.argmax(values))

            decision = RouteDecision(
                route=self.route_labels[action_idx],
                confidence=softmax_at(values, action_idx),
                values=tuple(float(v) for v in values),
                explored=explored,
                alternatives=self._alternatives(values, action_idx),
            )

            if not explore:
                self.cache.put(state_key, decision)

            logger.debug(
                f"Routed {state_key} -> {decision.route} "
                f"(confidence={decision.confidence:.3f}, explored={explored})"
            )
            return decision

    def _alternatives(self, values: np.ndarray, selected: int) -> Tuple[Tuple[str, float], ...]:
        ranked = sorted(
            (idx for idx in range(len(values)) if idx != selected),
            key=lambda idx: (-values[idx], idx)
        )
        return tuple(
            (self.route_labels[idx], float(values[idx])) for idx in ranked[:NUM_ALTERNATIVES]
        )

    # ========================================================================
    # Learning
    # ========================================================================

    def update(
        self,
        task_text: str,
        action: str,
        reward: float,
        next_task_text: Optional[str] = None
    ) -> float:
        """
        Apply reward feedback for a routed task.

        Args:
            task_text: Task description that was routed
            action: Route label that handled the task
            reward: Observed reward
            next_task_text: Follow-up task, None for a terminal transition

        Returns:
            The raw TD error of the primary update, or 0.0 if ``action`` is not
            a known route (in which case nothing is changed)
        """
        with self._lock:
            action_idx = self._action_index.get(action)
            if action_idx is None:
                logger.warning(f"Ignoring update for unknown route {action!r}")
                return 0.0

            state_key = self.encoder.encode(task_text)
            next_key = self.encoder.encode(next_task_text) if next_task_text is not None else None

            td_error = self._apply_td(state_key, action_idx, reward, next_key, primary=True)

            self.step_count += 1
            self.epsilon = min(self.epsilon, self.schedule.epsilon(self.step_count))

            if self.config.enable_replay:
                self.replay_buffer.push(Experience(
                    state_key=state_key,
                    action_index=action_idx,
                    reward=float(reward),
                    next_state_key=next_key,
                    priority=abs(td_error),
                ))
                self.total_experiences += 1
                self._replay()

            if self.q_table.over_capacity:
                for evicted in self.q_table.prune(protected=state_key):
                    self.cache.invalidate(evicted)

            self.avg_td_error += (abs(td_error) - self.avg_td_error) / self.step_count

            self._maybe_snapshot()
            return td_error

    def _apply_td(
        self,
        state_key: str,
        action_idx: int,
        reward: float,
        next_key: Optional[str],
        primary: bool
    ) -> float:
        entry = self.q_table.get_or_create(state_key)

        if next_key is None:
            target = reward
        else:
            target = reward + self.config.gamma * self.q_table.max_value(next_key)

        td_error = float(target - entry.values[action_idx])
        entry.values[action_idx] += self.config.learning_rate * td_error
        if primary:
            entry.visits += 1
            self.q_table.touch(state_key)
        self.cache.invalidate(state_key)
        self.update_count += 1
        return td_error

    def _replay(self) -> None:
        batch = self.replay_buffer.sample(self.config.replay_batch_size)
        skipped = 0
        for experience in batch:
            # Pruned states stay pruned
            if experience.state_key not in self.q_table:
                skipped += 1
                continue
            self._apply_td(
                experience.state_key,
                experience.action_index,
                experience.reward,
                experience.next_state_key,
                primary=False,
            )
        logger.debug(f"Replayed {len(batch) - skipped} experiences, skipped {skipped} pruned")

    # ========================================================================
    # Snapshots
    # ========================================================================

    @property
    def snapshot_due(self) -> bool:
        """True right after every ``autosave_interval``-th update."""
        interval = self.config.autosave_interval
        return interval > 0 and self.step_count > 0 and self.step_count % interval == 0

    def _maybe_snapshot(self) -> None:
        if self.snapshot_due and self.snapshot_callback is not None:
            logger.debug(f"Requesting snapshot at step {self.step_count}")
            self.snapshot_callback(self.export_model())

    def export_model(self) -> PersistedModel:
        """
        Snapshot the table and statistics as pure data.

        Entries are listed least recently updated first so an import restores
        the same pruning order.
        """
        with self._lock:
            q_table = {
                state_key: QTableRecord(values=[float(v) for v in entry.values], visits=entry.visits)
                for state_key, entry in self.q_table
            }
            return PersistedModel(
                version=SNAPSHOT_VERSION,
                config=SnapshotConfig(
                    learning_rate=self.config.learning_rate,
                    gamma=self.config.gamma,
                    exploration_initial=self.config.exploration_initial,
                    exploration_final=self.config.exploration_final,
                    exploration_decay=self.config.exploration_decay,
                    exploration_decay_type=self.config.exploration_decay_type,
                    max_states=self.config.max_states,
                    route_labels=list(self.route_labels),
                ),
                q_table=q_table,
                stats=SnapshotStats(
                    step_count=self.step_count,
                    update_count=self.update_count,
                    avg_td_error=self.avg_td_error,
                    epsilon=self.epsilon,
                ),
                metadata=SnapshotMetadata(
                    saved_at=datetime.now(timezone.utc),
                    total_experiences=self.total_experiences,
                ),
            )

    def import_model(self, model: Union[PersistedModel, Dict[str, Any]]) -> None:
        """
        Replace the table and statistics with a snapshot.

        The snapshot is fully parsed and validated before anything is swapped
        in; on failure the router is left exactly as it was. The decision
        cache and replay buffer are cleared on success.

        Raises:
            ModelFormatError: If the snapshot is malformed or was produced for
                a different route label set
        """
        with self._lock:
            try:
                snapshot = coerce_model(model)
                validate_snapshot(snapshot, self.route_labels)
            except Exception as e:
                logger.warning(f"Rejected routing model import: {e}")
                raise

            entries = {
                state_key: QEntry(
                    values=np.asarray(record.values, dtype=np.float64),
                    visits=record.visits,
                )
                for state_key, record in snapshot.q_table.items()
            }

            self.q_table.replace(entries)
            self.step_count = snapshot.stats.step_count
            self.update_count = snapshot.stats.update_count
            self.avg_td_error = snapshot.stats.avg_td_error
            self.epsilon = min(
                self.config.exploration_initial,
                max(self.config.exploration_final, snapshot.stats.epsilon),
            )
            self.total_experiences = snapshot.metadata.total_experiences
            self.cache.clear()
            self.replay_buffer.clear()

            logger.info(
                f"Imported routing model: {len(entries)} states, "
                f"step={self.step_count}, epsilon={self.epsilon:.4f}"
            )

    # ========================================================================
    # Introspection
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "update_count": self.update_count,
                "table_size": len(self.q_table),
                "epsilon": self.epsilon,
                "avg_td_error": self.avg_td_error,
                "step_count": self.step_count,
                "cache_size": len(self.cache),
                "cache_hits": self.cache.hits,
                "cache_misses": self.cache.misses,
                "replay_size": len(self.replay_buffer),
                "total_experiences": self.total_experiences,
            }

    def reset(self) -> None:
        """Forget everything learned and restart the exploration schedule."""
        with self._lock:
            self.q_table.clear()
            self.cache.clear()
            self.replay_buffer.clear()
            self._reset_statistics()
            logger.info("Router reset")


def create_router(**overrides) -> QLearningRouter:
    """Build a router from RouterConfig defaults plus keyword overrides."""
    return QLearningRouter(RouterConfig(**overrides))
