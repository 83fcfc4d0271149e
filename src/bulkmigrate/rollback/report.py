"""Rollback reports and plans."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any


def format_estimate(seconds: float) -> str:
    """Render a duration estimate the way operators read it: "~N minutes"."""
    minutes = math.ceil(seconds / 60)
    return f"~{minutes} minutes" if minutes > 1 else "< 1 minute"


@dataclass(frozen=True)
class RollbackFailure:
    """One entry whose undo handler raised."""

    sequence: int
    phase: str
    type: str
    error: str


@dataclass
class RollbackReport:
    """
    Result of a change-by-change rollback (or its dry run).

    Attributes:
        migration_id: Rolled-back migration
        dry_run: True if nothing was executed
        method: Always "change_by_change" for this report type
        total_operations: Entries selected by the phase filter
        by_phase: Selected entries per phase
        by_type: Selected entries per operation type
        reversed: Entries whose undo handler succeeded
        skipped: Irreversible entries and entries with no undo handler
        failed: Entries whose undo handler raised
        errors: Details of the failed entries
        estimated_time: Duration estimate (dry runs only)
    """

    migration_id: str
    dry_run: bool = False
    method: str = "change_by_change"
    total_operations: int = 0
    by_phase: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)
    reversed: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list[RollbackFailure] = field(default_factory=list)
    estimated_time: str | None = None

    @property
    def succeeded(self) -> bool:
        """True if no undo handler failed."""
        return self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dictionary for logging or JSON output."""
        return asdict(self)


@dataclass(frozen=True)
class RestorePlan:
    """What a database restore would do (dry run)."""

    migration_id: str
    backup_file: Path
    backup_size: int
    tables: list[str]
    estimated_time: str
    method: str = "database_restore"
    dry_run: bool = True

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["backup_file"] = str(self.backup_file)
        return data


@dataclass(frozen=True)
class RestoreResult:
    """Outcome of a completed database restore."""

    migration_id: str
    backup_file: Path
    statements_executed: int
    duration_seconds: float
    method: str = "database_restore"
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["backup_file"] = str(self.backup_file)
        return data


__all__ = [
    "RestorePlan",
    "RestoreResult",
    "RollbackFailure",
    "RollbackReport",
    "format_estimate",
]
