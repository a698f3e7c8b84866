"""
Unit tests for the routing policy (encoder, exploration, table, cache, replay, router).
"""

import threading

import numpy as np
import pytest

# Import modules to test
from decision_engine.config import RouterConfig
from decision_engine.kernels import stable_softmax
from decision_engine.router.decision_cache import DecisionCache
from decision_engine.router.exploration import ExplorationSchedule, DecayType
from decision_engine.router.q_learning_router import QLearningRouter, RouteDecision
from decision_engine.router.q_table import QTable
from decision_engine.router.replay_buffer import Experience, ReplayBuffer
from decision_engine.router.state_encoder import StateEncoder, encode_state


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestStateEncoder:
    """Test deterministic state encoding."""

    def test_encode_deterministic_success(self):
        """Same text always yields the same key."""
        encoder = StateEncoder()
        keys = {encoder.encode("fix login bug") for _ in range(10)}
        assert len(keys) == 1
        assert encoder("fix login bug") == encode_state("fix login bug")

    def test_encode_known_values(self):
        """Rolling hash matches h = h * 31 + ord(c)."""
        assert encode_state("") == "state_0"
        assert encode_state("a") == "state_97"
        assert encode_state("ab") == f"state_{97 * 31 + 98}"

    def test_encode_uses_full_string(self):
        """Texts sharing a long prefix still get different keys."""
        prefix = "implement the payment reconciliation service " * 20
        assert encode_state(prefix + "A") != encode_state(prefix + "B")

    def test_encode_wraps_to_signed_32_bit(self):
        """Long inputs stay within the signed 32-bit range."""
        key = encode_state("x" * 10000)
        value = int(key[len("state_"):])
        assert -(2 ** 31) <= value < 2 ** 31


class TestExplorationSchedule:
    """Test epsilon decay laws."""

    @pytest.mark.parametrize("decay_type", ["linear", "exponential", "cosine"])
    def test_epsilon_non_increasing_and_floored(self, decay_type):
        """Every law is monotone and never drops below the floor."""
        schedule = ExplorationSchedule(decay_type, 1.0, 0.05, 50)
        epsilons = [schedule.epsilon(step) for step in range(300)]

        assert epsilons[0] == 1.0
        assert all(b <= a for a, b in zip(epsilons, epsilons[1:]))
        assert min(epsilons) >= 0.05

    @pytest.mark.parametrize("decay_type", ["linear", "exponential", "cosine"])
    def test_epsilon_converges_to_final(self, decay_type):
        """Far past the horizon epsilon sits at the floor."""
        schedule = ExplorationSchedule(decay_type, 1.0, 0.05, 50)
        assert schedule.epsilon(5000) == pytest.approx(0.05, abs=1e-6)

    def test_linear_decay_values(self):
        """Linear law: initial - step / decay_steps."""
        schedule = ExplorationSchedule("linear", 1.0, 0.1, 10)
        assert schedule.epsilon(5) == pytest.approx(0.5)
        assert schedule.epsilon(20) == pytest.approx(0.1)

    def test_cosine_decay_midpoint(self):
        """Cosine law is halfway between initial and final at half the horizon."""
        schedule = ExplorationSchedule(DecayType.COSINE, 1.0, 0.0, 100)
        assert schedule.epsilon(50) == pytest.approx(0.5)

    def test_schedule_failure(self):
        """Invalid schedules are rejected."""
        with pytest.raises(ValueError, match="final"):
            ExplorationSchedule("linear", 0.1, 0.5, 10)

        with pytest.raises(ValueError):
            ExplorationSchedule("quadratic", 1.0, 0.1, 10)


class TestQTable:
    """Test the tabular value store."""

    def test_lookup_does_not_create_entries(self):
        """Reading an unseen state returns zeros and leaves the table empty."""
        table = QTable(num_actions=4, max_states=10)

        values = table.values_for("state_1")

        np.testing.assert_array_equal(values, np.zeros(4))
        assert len(table) == 0
        assert table.max_value("state_1") == 0.0

    def test_prune_evicts_oldest_to_80_percent(self):
        """Pruning keeps the most recently updated 80% of capacity."""
        table = QTable(num_actions=2, max_states=10)
        for i in range(11):
            table.get_or_create(f"s{i}")
            table.touch(f"s{i}")

        evicted = table.prune(protected="s10")

        assert evicted == ["s0", "s1", "s2"]
        assert len(table) == 8
        assert "s10" in table

    def test_prune_respects_protected_entry(self):
        """The protected entry survives even if it is the oldest."""
        table = QTable(num_actions=2, max_states=10)
        for i in range(11):
            table.get_or_create(f"s{i}")
            table.touch(f"s{i}")

        evicted = table.prune(protected="s0")

        assert "s0" in table
        assert "s0" not in evicted
        assert len(table) == 8

    def test_touch_refreshes_recency(self):
        """A touched entry moves behind newer ones in eviction order."""
        table = QTable(num_actions=2, max_states=4)
        for i in range(5):
            table.get_or_create(f"s{i}")
            table.touch(f"s{i}")
        table.touch("s0")

        evicted = table.prune()

        assert "s0" in table
        assert evicted == ["s1", "s2"]

    def test_qtable_failure(self):
        """Invalid sizes are rejected."""
        with pytest.raises(ValueError, match="num_actions"):
            QTable(num_actions=0, max_states=10)
        with pytest.raises(ValueError, match="max_states"):
            QTable(num_actions=2, max_states=0)


class TestDecisionCache:
    """Test LRU + TTL decision cache."""

    def test_cache_hit_success(self):
        """Stored decisions are returned and hits counted."""
        cache = DecisionCache(capacity=4, ttl_seconds=10.0, clock=FakeClock())
        cache.put("a", "decision-a")

        assert cache.get("a") == "decision-a"
        assert cache.get("a") == "decision-a"
        assert cache.entry("a").hits == 2
        assert cache.hits == 2
        assert cache.misses == 0

    def test_cache_ttl_expiry(self):
        """Entries expire after the TTL regardless of hits."""
        clock = FakeClock()
        cache = DecisionCache(capacity=4, ttl_seconds=10.0, clock=clock)
        cache.put("a", "decision-a")
        assert cache.get("a") == "decision-a"

        clock.now += 10.0

        assert cache.get("a") is None
        assert "a" not in cache
        assert cache.misses == 1

    def test_cache_lru_eviction(self):
        """A full cache evicts the least recently used entry."""
        cache = DecisionCache(capacity=2, ttl_seconds=10.0, clock=FakeClock())
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache

    def test_cache_invalidate(self):
        """Invalidation removes a single key."""
        cache = DecisionCache(capacity=2, ttl_seconds=10.0)
        cache.put("a", 1)

        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        assert len(cache) == 0

    def test_cache_failure(self):
        """Invalid cache parameters are rejected."""
        with pytest.raises(ValueError, match="capacity"):
            DecisionCache(capacity=0, ttl_seconds=1.0)
        with pytest.raises(ValueError, match="ttl_seconds"):
            DecisionCache(capacity=1, ttl_seconds=0.0)


class TestReplayBuffer:
    """Test the experience ring buffer."""

    @staticmethod
    def _experience(i: int) -> Experience:
        return Experience(state_key=f"s{i}", action_index=i % 3, reward=float(i))

    def test_push_overwrites_oldest(self):
        """Once full, pushes replace the oldest slot."""
        buffer = ReplayBuffer(capacity=3, rng=np.random.default_rng(0))
        for i in range(5):
            buffer.push(self._experience(i))

        assert len(buffer) == 3
        assert buffer.is_full
        assert [e.state_key for e in buffer.experiences()] == ["s2", "s3", "s4"]
        assert buffer.total_pushed == 5

    def test_sample_without_replacement(self):
        """Samples contain distinct experiences."""
        buffer = ReplayBuffer(capacity=10, rng=np.random.default_rng(0))
        for i in range(10):
            buffer.push(self._experience(i))

        batch = buffer.sample(5)

        assert len(batch) == 5
        assert len({e.state_key for e in batch}) == 5

    def test_sample_larger_than_populated(self):
        """Oversized requests return the populated subset."""
        buffer = ReplayBuffer(capacity=10, rng=np.random.default_rng(0))
        for i in range(3):
            buffer.push(self._experience(i))

        batch = buffer.sample(32)

        assert sorted(e.state_key for e in batch) == ["s0", "s1", "s2"]

    def test_sample_empty(self):
        """Sampling an empty buffer returns nothing."""
        buffer = ReplayBuffer(capacity=4)
        assert buffer.sample(8) == []

    def test_clear_resets_counters(self):
        """Clearing empties the slots and the push counter."""
        buffer = ReplayBuffer(capacity=3, rng=np.random.default_rng(0))
        for i in range(5):
            buffer.push(self._experience(i))

        buffer.clear()

        assert len(buffer) == 0
        assert buffer.total_pushed == 0
        assert buffer.experiences() == []


class TestQLearningRouter:
    """Test routing decisions and learning updates."""

    @pytest.fixture
    def config(self):
        """Deterministic config without replay."""
        return RouterConfig(random_seed=42, enable_replay=False, learning_rate=0.1)

    @pytest.fixture
    def router(self, config):
        """Create a router instance for testing."""
        return QLearningRouter(config)

    def test_router_initialization_success(self, router):
        """Fresh router starts empty with full exploration."""
        stats = router.get_stats()

        assert router.route_labels[0] == "coder"
        assert stats["table_size"] == 0
        assert stats["epsilon"] == 1.0
        assert stats["step_count"] == 0
        assert stats["update_count"] == 0
        assert stats["avg_td_error"] == 0.0

    def test_route_is_pure_query(self, router):
        """Routing never creates table entries."""
        router.route("write unit tests", explore=False)
        router.route("write unit tests", explore=True)

        assert router.get_stats()["table_size"] == 0

    def test_route_untrained_ties_go_to_lowest_index(self, router):
        """All-zero values select the first route with uniform confidence."""
        decision = router.route("anything", explore=False)

        assert isinstance(decision, RouteDecision)
        assert decision.route == "coder"
        assert decision.explored is False
        assert decision.confidence == pytest.approx(1.0 / 8)
        assert decision.values == (0.0,) * 8

    def test_route_exploits_max_value(self, router):
        """Greedy routing returns the highest-valued route."""
        router.update("write unit tests", "tester", reward=1.0)

        decision = router.route("write unit tests", explore=False)

        assert decision.route == "tester"
        assert decision.confidence > 1.0 / 8

    def test_route_greedy_deterministic(self, router):
        """Repeated greedy calls on a frozen table agree."""
        router.update("design api", "architect", reward=1.0)
        router.update("design api", "reviewer", reward=0.5)

        decisions = [router.route("design api", explore=False) for _ in range(5)]

        assert {d.route for d in decisions} == {"architect"}

    def test_confidence_is_softmax_of_values(self, router):
        """Confidence equals the softmax mass of the selected route."""
        router.update("profile hot loop", "optimizer", reward=2.0)
        router.update("profile hot loop", "debugger", reward=-1.0)

        decision = router.route("profile hot loop", explore=False)
        probabilities = stable_softmax(np.array(decision.values))

        assert probabilities.sum() == pytest.approx(1.0)
        selected = router.route_labels.index(decision.route)
        assert decision.confidence == pytest.approx(probabilities[selected])

    def test_alternatives_ranked_excluding_selected(self, router):
        """Three alternatives, best first, ties by route order."""
        router.update("task", "tester", reward=1.0)
        router.update("task", "reviewer", reward=0.5)
        router.update("task", "architect", reward=-1.0)

        decision = router.route("task", explore=False)

        assert decision.route == "tester"
        assert [route for route, _ in decision.alternatives] == ["reviewer", "coder", "researcher"]
        scores = [score for _, score in decision.alternatives]
        assert scores == sorted(scores, reverse=True)

    def test_route_explores_with_full_epsilon(self, router):
        """With epsilon 1.0 every exploratory call explores."""
        decisions = [router.route("task", explore=True) for _ in range(20)]

        assert all(d.explored for d in decisions)
        assert all(d.route in router.route_labels for d in decisions)

    def test_route_never_explores_with_zero_epsilon(self):
        """With epsilon 0 exploration requests behave greedily."""
        router = QLearningRouter(RouterConfig(
            exploration_initial=0.0, exploration_final=0.0, random_seed=1, enable_replay=False
        ))
        router.update("task", "debugger", reward=1.0)

        decisions = [router.route("task", explore=True) for _ in range(20)]

        assert not any(d.explored for d in decisions)
        assert {d.route for d in decisions} == {"debugger"}

    def test_update_unknown_action_is_noop(self, router):
        """Unknown routes are ignored and return 0."""
        td_error = router.update("task", "janitor", reward=1.0)

        assert td_error == 0.0
        stats = router.get_stats()
        assert stats["table_size"] == 0
        assert stats["step_count"] == 0
        assert stats["epsilon"] == 1.0

    def test_update_td_error_terminal(self, router):
        """Terminal target is the reward itself."""
        first = router.update("task", "coder", reward=1.0)
        second = router.update("task", "coder", reward=1.0)

        assert first == pytest.approx(1.0)
        assert second == pytest.approx(0.9)
        entry = router.q_table.get(router.encoder.encode("task"))
        assert entry.values[0] == pytest.approx(0.19)
        assert entry.visits == 2
        assert router.get_stats()["avg_td_error"] == pytest.approx(0.95)

    def test_update_td_error_bootstrapped(self):
        """Non-terminal target adds gamma * max Q(next state)."""
        router = QLearningRouter(RouterConfig(gamma=0.5, enable_replay=False, random_seed=0))
        router.update("deploy", "coder", reward=1.0)

        td_error = router.update("build", "tester", reward=0.0, next_task_text="deploy")

        assert td_error == pytest.approx(0.5 * 0.1)

    def test_epsilon_non_increasing_across_updates(self):
        """Epsilon decays monotonically and stays above the floor."""
        router = QLearningRouter(RouterConfig(
            exploration_decay=10,
            exploration_decay_type="linear",
            exploration_final=0.05,
            enable_replay=False,
        ))

        epsilons = []
        for i in range(30):
            router.update(f"task {i}", "coder", reward=1.0)
            epsilons.append(router.get_stats()["epsilon"])

        assert all(b <= a for a, b in zip(epsilons, epsilons[1:]))
        assert min(epsilons) >= 0.05
        assert epsilons[-1] == pytest.approx(0.05)

    def test_cache_serves_repeated_greedy_routes(self, router):
        """Second greedy call is a cache hit returning the same decision."""
        first = router.route("refactor parser", explore=False)
        second = router.route("refactor parser", explore=False)

        assert second is first
        assert router.get_stats()["cache_hits"] == 1

    def test_exploratory_routes_not_cached(self, router):
        """Exploratory calls neither read nor fill the cache."""
        router.route("refactor parser", explore=True)

        assert router.get_stats()["cache_size"] == 0

    def test_update_invalidates_cached_decision(self, router):
        """A value change for a state drops its cached decision."""
        stale = router.route("refactor parser", explore=False)
        router.update("refactor parser", "reviewer", reward=1.0)

        fresh = router.route("refactor parser", explore=False)

        assert fresh is not stale
        assert fresh.route == "reviewer"

    def test_cached_decision_expires(self, router):
        """Cached decisions are recomputed after the TTL."""
        clock = FakeClock()
        router.cache = DecisionCache(capacity=8, ttl_seconds=5.0, clock=clock)
        first = router.route("refactor parser", explore=False)

        clock.now += 6.0
        second = router.route("refactor parser", explore=False)

        assert second is not first
        assert second == first

    def test_replay_applies_extra_updates(self):
        """A replayed transition is learned from a second time."""
        router = QLearningRouter(RouterConfig(
            enable_replay=True, replay_batch_size=4, learning_rate=0.1, random_seed=3
        ))

        router.update("task", "coder", reward=1.0)

        entry = router.q_table.get(router.encoder.encode("task"))
        assert entry.values[0] == pytest.approx(0.19)
        assert entry.visits == 1
        stats = router.get_stats()
        assert stats["step_count"] == 1
        assert stats["update_count"] == 2
        assert stats["replay_size"] == 1
        assert stats["total_experiences"] == 1

    def test_replay_does_not_refresh_recency(self):
        """Only primary updates move a state behind newer ones."""
        router = QLearningRouter(RouterConfig(enable_replay=True, replay_batch_size=32, random_seed=3))
        router.update("task a", "coder", reward=1.0)
        router.update("task b", "tester", reward=1.0)
        router.update("task c", "coder", reward=1.0)

        order = [state_key for state_key, _ in router.q_table]

        assert order == [router.encoder.encode(t) for t in ("task a", "task b", "task c")]

    def test_replay_invalidates_replayed_states(self):
        """States touched by replay lose their cached decisions."""
        router = QLearningRouter(RouterConfig(enable_replay=True, replay_batch_size=32, random_seed=3))
        router.update("task a", "coder", reward=1.0)
        router.route("task a", explore=False)
        assert router.encoder.encode("task a") in router.cache

        router.update("task b", "tester", reward=1.0)

        assert router.encoder.encode("task a") not in router.cache

    def test_reset_clears_everything(self, router):
        """Reset forgets values, cache and statistics."""
        router.update("task", "coder", reward=1.0)
        router.route("task", explore=False)

        router.reset()

        stats = router.get_stats()
        assert stats["table_size"] == 0
        assert stats["cache_size"] == 0
        assert stats["step_count"] == 0
        assert stats["epsilon"] == 1.0
        assert router.replay_buffer.total_pushed == 0
        assert router.route("task", explore=False).values == (0.0,) * 8

    def test_snapshot_callback_fires_on_interval(self):
        """Auto-save requests a snapshot every N updates."""
        snapshots = []
        router = QLearningRouter(
            RouterConfig(autosave_interval=3, enable_replay=False),
            snapshot_callback=snapshots.append,
        )

        for i in range(7):
            router.update(f"task {i}", "coder", reward=1.0)
            if i == 5:
                assert router.snapshot_due

        assert len(snapshots) == 2
        assert snapshots[-1].stats.step_count == 6
        assert not router.snapshot_due

    def test_concurrent_updates_are_serialized(self):
        """Parallel updates through one instance lose nothing."""
        router = QLearningRouter(RouterConfig(enable_replay=False, random_seed=0))

        def worker(worker_id):
            for i in range(50):
                router.update(f"task {worker_id}-{i % 5}", "coder", reward=1.0)
                router.route(f"task {worker_id}-{i % 5}", explore=False)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stats = router.get_stats()
        assert stats["step_count"] == 200
        assert stats["table_size"] == 20


class TestRoutingScenarios:
    """End-to-end learning scenarios."""

    def test_repeated_reward_learns_route(self):
        """Twenty positive rewards make 'coder' the confident choice."""
        router = QLearningRouter(RouterConfig(random_seed=7))

        for _ in range(20):
            router.update("fix login bug", "coder", reward=1.0)

        trained = router.route("fix login bug", explore=False)
        untrained = router.route("never seen before", explore=False)

        assert trained.route == "coder"
        assert trained.confidence > untrained.confidence

    def test_pruning_keeps_table_within_capacity(self):
        """Exceeding max_states prunes and keeps the newest entry."""
        router = QLearningRouter(RouterConfig(max_states=10, enable_replay=False))

        for i in range(11):
            router.update(f"task {i}", "coder", reward=1.0)

        assert router.get_stats()["table_size"] == 8
        assert router.encoder.encode("task 10") in router.q_table
        assert router.encoder.encode("task 0") not in router.q_table

    def test_pruning_with_replay_keeps_recent_states(self):
        """Replay never brings pruned states back into the table."""
        router = QLearningRouter(RouterConfig(max_states=10, random_seed=0))
        tasks = [f"distinct task {i}" for i in range(40)]

        for task in tasks:
            router.update(task, "coder", reward=1.0)

        assert router.get_stats()["replay_size"] == 40
        assert router.get_stats()["table_size"] == 10
        survivors = [state_key for state_key, _ in router.q_table]
        assert survivors == [router.encoder.encode(task) for task in tasks[-10:]]
        for _, entry in router.q_table:
            assert entry.visits == 1

    def test_pruning_after_oversized_import(self):
        """A table imported beyond capacity is pruned on the next update."""
        source = QLearningRouter(RouterConfig(max_states=100, enable_replay=False))
        for i in range(15):
            source.update(f"task {i}", "tester", reward=1.0)

        router = QLearningRouter(RouterConfig(max_states=10, enable_replay=False))
        router.import_model(source.export_model())
        assert router.get_stats()["table_size"] == 15

        router.update("brand new task", "coder", reward=1.0)

        assert router.get_stats()["table_size"] <= 10
        assert router.encoder.encode("brand new task") in router.q_table
