"""Change-log records."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ChangeLogEntry(BaseModel):
    """
    One recorded mutation of a migration run.

    Entries are immutable once written. A correction is a new entry, never
    an edit.

    Attributes:
        migration_id: Run the entry belongs to
        sequence: Position in the run's journal, starting at 1, gap-free
        phase: Phase label active when the change was logged
        type: Operation tag (e.g. "copied_object", "url_rewrite")
        payload: Data the matching undo handler needs to reverse the change
        timestamp: When the change was logged (UTC)

    Example:
        >>> entry = ChangeLogEntry(
        ...     migration_id="mig-1",
        ...     sequence=1,
        ...     phase="copy",
        ...     type="copied_object",
        ...     payload={"target_path": "assets/a.jpg"},
        ... )
    """

    model_config = ConfigDict(frozen=True)

    migration_id: str = Field(..., description="Migration run identifier")
    sequence: int = Field(..., ge=1, description="Per-migration sequence number")
    phase: str = Field(..., description="Phase label")
    type: str = Field(..., min_length=1, description="Operation type tag")
    payload: dict[str, Any] = Field(default_factory=dict, description="Undo data")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the change was logged (UTC)",
    )


class MigrationLogSummary(BaseModel):
    """
    Discovery metadata for one migration's change log.

    Attributes:
        migration_id: Run identifier
        entry_count: Number of readable entries
        phases: Entry count per phase, in order of first appearance
        first_timestamp: Timestamp of the earliest entry
        last_timestamp: Timestamp of the latest entry
        last_modified: When the log was last written
    """

    model_config = ConfigDict(frozen=True)

    migration_id: str
    entry_count: int = 0
    phases: dict[str, int] = Field(default_factory=dict)
    first_timestamp: datetime | None = None
    last_timestamp: datetime | None = None
    last_modified: datetime | None = None

    @classmethod
    def from_entries(
        cls,
        migration_id: str,
        entries: list[ChangeLogEntry],
        last_modified: datetime | None = None,
    ) -> MigrationLogSummary:
        """Summarize a sequence-ordered list of entries."""
        phases: dict[str, int] = {}
        for entry in entries:
            phases[entry.phase] = phases.get(entry.phase, 0) + 1
        return cls(
            migration_id=migration_id,
            entry_count=len(entries),
            phases=phases,
            first_timestamp=entries[0].timestamp if entries else None,
            last_timestamp=entries[-1].timestamp if entries else None,
            last_modified=last_modified,
        )


__all__ = ["ChangeLogEntry", "MigrationLogSummary"]
