"""
Checkpoints: durable progress snapshots and quick state for resume.

Classes:
    CheckpointManager: Owns checkpoint, quick state and state summary
    Checkpoint: Full progress snapshot
    QuickState: Frequently written subset for polling
    CheckpointSummary: Listing row
    CheckpointStore: Protocol for checkpoint persistence
    FileCheckpointStore: Atomic JSON files
    InMemoryCheckpointStore: Dict-backed store for tests
"""

from bulkmigrate.checkpoints.manager import INITIAL_PHASE, CheckpointManager
from bulkmigrate.checkpoints.models import (
    CHECKPOINT_VERSION,
    Checkpoint,
    CheckpointSummary,
    QuickState,
    merge_ids,
)
from bulkmigrate.checkpoints.store import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)

__all__ = [
    "CHECKPOINT_VERSION",
    "INITIAL_PHASE",
    "CheckpointManager",
    "Checkpoint",
    "CheckpointSummary",
    "QuickState",
    "merge_ids",
    "CheckpointStore",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
]
