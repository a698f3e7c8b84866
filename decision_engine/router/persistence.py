"""
Snapshot schema and storage for learned routing state.

The router never touches storage itself. It produces and consumes
:class:`PersistedModel` objects; a host decides where (and whether) they are
written. :class:`ModelStore` is the JSON file store used by the command-line
scripts.

Snapshot JSON layout (camelCase keys):
{
    "version": "1.0.0",
    "config": {"learningRate": 0.1, "gamma": 0.99, ..., "routeLabels": [...]},
    "qTable": {"state_123": {"values": [0.0, ...], "visits": 3}, ...},
    "stats": {"stepCount": 10, "updateCount": 42, "avgTdError": 0.3, "epsilon": 0.9},
    "metadata": {"savedAt": "2026-01-01T00:00:00Z", "totalExperiences": 10}
}
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import json
import logging
import math
import os
import tempfile

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


# Configure module logger
logger = logging.getLogger(__name__)


SNAPSHOT_VERSION = "1.0.0"


# ============================================================================
# Custom Exceptions
# ============================================================================

class PersistenceError(Exception):
    """Base exception for snapshot errors."""
    pass


class ModelFormatError(PersistenceError):
    """Raised when a snapshot is malformed or incompatible with the router."""
    pass


# ============================================================================
# Snapshot Schema
# ============================================================================

class _SnapshotModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SnapshotConfig(_SnapshotModel):
    """Learning parameters recorded alongside the table"""
    learning_rate: float
    gamma: float
    exploration_initial: float
    exploration_final: float
    exploration_decay: int
    exploration_decay_type: str
    max_states: int
    route_labels: List[str]


class QTableRecord(_SnapshotModel):
    values: List[float]
    visits: int = Field(default=0)


class SnapshotStats(_SnapshotModel):
    step_count: int = Field(ge=0)
    update_count: int = Field(ge=0)
    avg_td_error: float
    epsilon: float = Field(ge=0.0, le=1.0)


class SnapshotMetadata(_SnapshotModel):
    saved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    total_experiences: int = Field(default=0, ge=0)


class PersistedModel(_SnapshotModel):
    """
    Complete, storage-agnostic snapshot of a router's learned state.

    Example:
        >>> model = router.export_model()
        >>> payload = model.to_json_dict()
        >>> restored = PersistedModel.from_json_dict(payload)
    """
    version: str = SNAPSHOT_VERSION
    config: SnapshotConfig
    q_table: Dict[str, QTableRecord] = Field(default_factory=dict)
    stats: SnapshotStats
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata)

    def to_json_dict(self) -> Dict[str, Any]:
        """JSON-serializable dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json_dict(cls, payload: Dict[str, Any]) -> "PersistedModel":
        """
        Parse a snapshot dict.

        Raises:
            ModelFormatError: If the payload does not match the schema
        """
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise ModelFormatError(f"Snapshot does not match schema: {e}") from e


def coerce_model(model: Union[PersistedModel, Dict[str, Any]]) -> PersistedModel:
    if isinstance(model, PersistedModel):
        return model
    if isinstance(model, dict):
        return PersistedModel.from_json_dict(model)
    raise ModelFormatError(f"Unsupported snapshot type: {type(model).__name__}")


def _major(version: str) -> str:
    return version.split(".", 1)[0]


def validate_snapshot(model: PersistedModel, route_labels: List[str]) -> None:
    """
    Structural checks that must pass before a snapshot replaces live state.

    Raises:
        ModelFormatError: On version, label-set or per-entry mismatches
    """
    if _major(model.version) != _major(SNAPSHOT_VERSION):
        raise ModelFormatError(
            f"Unsupported snapshot version {model.version!r} (expected {SNAPSHOT_VERSION})"
        )

    if list(model.config.route_labels) != list(route_labels):
        raise ModelFormatError(
            f"Snapshot route labels {model.config.route_labels} do not match "
            f"router route labels {list(route_labels)}"
        )

    num_actions = len(route_labels)
    for state_key, record in model.q_table.items():
        if len(record.values) != num_actions:
            raise ModelFormatError(
                f"Entry {state_key!r} has {len(record.values)} values, expected {num_actions}"
            )
        if record.visits < 0:
            raise ModelFormatError(f"Entry {state_key!r} has negative visit count")
        if not all(math.isfinite(v) for v in record.values):
            raise ModelFormatError(f"Entry {state_key!r} contains non-finite values")

    if not math.isfinite(model.stats.avg_td_error):
        raise ModelFormatError("Snapshot avgTdError is not finite")


# ============================================================================
# File Store
# ============================================================================

class ModelStore:
    """
    JSON file store for :class:`PersistedModel` snapshots.

    Writes go to a temporary file in the target directory and are moved into
    place with ``os.replace`` so a reader never sees a half-written snapshot.

    Attributes:
        path (Path): Snapshot file location
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def save(self, model: PersistedModel) -> Path:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(model.to_json_dict(), indent=2)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.info(f"Saved routing model ({len(model.q_table)} states) to {self.path}")
        return self.path

    def load(self) -> Optional[PersistedModel]:
        """
        Read the snapshot file.

        Returns:
            The parsed snapshot, or None if the file does not exist

        Raises:
            ModelFormatError: If the file is not valid JSON or not a snapshot
        """
        if not self.exists():
            return None

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except json.JSONDecodeError as e:
            raise ModelFormatError(f"Snapshot {self.path} is not valid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise ModelFormatError(f"Snapshot {self.path} must contain a JSON object")

        model = PersistedModel.from_json_dict(payload)
        logger.info(f"Loaded routing model ({len(model.q_table)} states) from {self.path}")
        return model
