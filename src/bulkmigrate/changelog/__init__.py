"""
Change log: ordered, phase-tagged journal of reversible operations.

Classes:
    ChangeLogManager: Buffered writer for one migration
    ChangeLogEntry: One recorded mutation
    MigrationLogSummary: Discovery metadata per migration log
    ChangeLogStore: Protocol for append-only persistence
    FileChangeLogStore: JSON Lines files with fsync per flush
    InMemoryChangeLogStore: Dict-backed store for tests
"""

from bulkmigrate.changelog.manager import DEFAULT_PHASE, ChangeLogManager
from bulkmigrate.changelog.models import ChangeLogEntry, MigrationLogSummary
from bulkmigrate.changelog.store import (
    ChangeLogStore,
    FileChangeLogStore,
    InMemoryChangeLogStore,
)

__all__ = [
    "DEFAULT_PHASE",
    "ChangeLogManager",
    "ChangeLogEntry",
    "MigrationLogSummary",
    "ChangeLogStore",
    "FileChangeLogStore",
    "InMemoryChangeLogStore",
]
