"""
Command-line host for the Q-learning router.

Restores the router from its snapshot file, performs one operation and
writes the snapshot back when something changed.

Usage:
------
    # Route a task (greedy)
    python scripts/route_task.py route "fix login bug"

    # Route with exploration
    python scripts/route_task.py route "fix login bug" --explore

    # Report feedback for a routed task
    python scripts/route_task.py feedback "fix login bug" coder 1.0

    # Show learner statistics / forget everything
    python scripts/route_task.py stats
    python scripts/route_task.py reset

The snapshot path defaults to ROUTER_MODEL_PATH (.router/q-learning-model.json).
"""

import sys
import json
import argparse
from pathlib import Path
from typing import List, Optional
import logging

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from decision_engine.config import settings
from decision_engine.router.persistence import ModelStore
from decision_engine.router.q_learning_router import QLearningRouter

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def load_router(store: ModelStore) -> QLearningRouter:
    """Router with auto-save wired to the store, restored from disk if present."""
    router = QLearningRouter(settings.router, snapshot_callback=store.save)
    snapshot = store.load()
    if snapshot is not None:
        router.import_model(snapshot)
    return router


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Q-learning task router")
    parser.add_argument("--model", type=Path, default=Path(settings.router.model_path),
                        help="Snapshot file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    route = subparsers.add_parser("route", help="Choose a route for a task")
    route.add_argument("task", help="Task description")
    route.add_argument("--explore", action="store_true", help="Allow exploration")

    feedback = subparsers.add_parser("feedback", help="Report reward for a routed task")
    feedback.add_argument("task", help="Task description")
    feedback.add_argument("route", help="Route that handled the task")
    feedback.add_argument("reward", type=float, help="Observed reward")
    feedback.add_argument("--next-task", default=None, help="Follow-up task description")

    subparsers.add_parser("stats", help="Show learner statistics")
    subparsers.add_parser("reset", help="Forget all learned values")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    store = ModelStore(args.model)
    router = load_router(store)

    if args.command == "route":
        decision = router.route(args.task, explore=args.explore)
        print(json.dumps(decision.to_dict(), indent=2))

    elif args.command == "feedback":
        td_error = router.update(args.task, args.route, args.reward, args.next_task)
        # Auto-save already wrote this step
        if not router.snapshot_due:
            store.save(router.export_model())
        print(json.dumps({"td_error": td_error, **router.get_stats()}, indent=2))

    elif args.command == "stats":
        print(json.dumps(router.get_stats(), indent=2))

    elif args.command == "reset":
        router.reset()
        store.save(router.export_model())
        print("Router reset")

    return 0


if __name__ == "__main__":
    sys.exit(main())
