"""Shared migration-state records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class MigrationStatus(Enum):
    """
    Lifecycle status of a migration run as seen by dashboards and pollers.
    """

    RUNNING = "running"
    """A process is actively working on the migration."""

    COMPLETED = "completed"
    """All phases finished successfully."""

    FAILED = "failed"
    """The run aborted with a fatal error; see ``error_message``."""

    PAUSED = "paused"
    """The run was stopped deliberately and can be resumed."""

    @property
    def is_terminal(self) -> bool:
        """True for statuses that end a run (completed, failed)."""
        return self in (MigrationStatus.COMPLETED, MigrationStatus.FAILED)


@dataclass(frozen=True)
class MigrationState:
    """
    Cross-process summary of one migration run.

    Written by the checkpoint manager, read by anything that reports
    progress. Only summary fields live here; the processed-ID set stays in
    the checkpoint.
    """

    migration_id: str
    status: MigrationStatus = MigrationStatus.RUNNING
    phase: str = "initializing"
    processed_count: int = 0
    total_count: int = 0
    current_batch: int = 0
    stats: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    pid: int | None = None
    session_id: str | None = None
    command: str | None = None
    checkpoint_file: str | None = None
    started_at: datetime | None = None
    last_updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def progress_percent(self) -> float:
        """Processed share of ``total_count`` (0 when the total is unknown)."""
        if self.total_count <= 0:
            return 0.0
        return min(100.0, round(self.processed_count / self.total_count * 100, 2))


__all__ = ["MigrationState", "MigrationStatus"]
