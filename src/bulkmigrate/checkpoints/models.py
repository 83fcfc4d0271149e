"""Checkpoint and quick-state records."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from bulkmigrate.types import ItemId

CHECKPOINT_VERSION = "4.0"


def merge_ids(existing: Iterable[ItemId], new_ids: Iterable[ItemId]) -> list[ItemId]:
    """
    Ordered set union of two ID sequences.

    IDs keep the position of their first occurrence, so merging the same
    list twice is a no-op.
    """
    return list(dict.fromkeys([*existing, *new_ids]))


class Checkpoint(BaseModel):
    """
    Full progress snapshot of a migration run.

    Enough to resume a run without redoing completed work. The phase is
    whatever label the caller passes; phase ordering is the caller's concern.

    Attributes:
        migration_id: Run identifier (filled in by the checkpoint manager)
        checkpoint_version: Schema version of the record
        phase: Phase label at the time of the snapshot
        processed_ids: Processed item IDs, ordered, without duplicates
        batch: Current batch number
        total_count: Total items in the run, if known
        stats: Arbitrary counters and notes from the phase executors
        created_at: When the snapshot was written (stamped on save)
        completed: Set when the run finished all phases
        error: Set when the snapshot was taken after a fatal error

    Example:
        >>> checkpoint = Checkpoint(phase="copy", processed_ids=[1, 2, 3], batch=4)
        >>> await checkpoints.save_checkpoint(checkpoint)
    """

    model_config = ConfigDict(frozen=True)

    migration_id: str | None = None
    checkpoint_version: str = CHECKPOINT_VERSION
    phase: str
    processed_ids: list[ItemId] = Field(default_factory=list)
    batch: int = Field(default=0, ge=0)
    total_count: int = Field(default=0, ge=0)
    stats: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    completed: bool = False
    error: str | None = None

    @field_validator("processed_ids")
    @classmethod
    def _dedupe_processed_ids(cls, value: list[ItemId]) -> list[ItemId]:
        return merge_ids((), value)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def processed_count(self) -> int:
        """Number of processed item IDs."""
        return len(self.processed_ids)


class QuickState(BaseModel):
    """
    Lightweight, frequently rewritten sibling of the checkpoint.

    Written after every batch for polling and for fast resume; the full
    checkpoint is written less often.
    """

    model_config = ConfigDict(frozen=True)

    migration_id: str
    phase: str
    batch: int = Field(default=0, ge=0)
    processed_ids: list[ItemId] = Field(default_factory=list)
    stats: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime | None = None

    @field_validator("processed_ids")
    @classmethod
    def _dedupe_processed_ids(cls, value: list[ItemId]) -> list[ItemId]:
        return merge_ids((), value)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def processed_count(self) -> int:
        """Number of processed item IDs."""
        return len(self.processed_ids)


class CheckpointSummary(BaseModel):
    """One row of ``list_checkpoints()``."""

    model_config = ConfigDict(frozen=True)

    migration_id: str
    phase: str
    processed_count: int
    batch: int
    created_at: datetime | None
    completed: bool = False
    location: str


__all__ = [
    "CHECKPOINT_VERSION",
    "Checkpoint",
    "CheckpointSummary",
    "QuickState",
    "merge_ids",
]
