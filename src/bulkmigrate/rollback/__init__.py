"""
Rollback: reverse recorded operations or restore a database backup.

Classes:
    RollbackEngine: Change-by-change reversal with phase filters
    RollbackReport: Counts of a rollback or dry run
    DatabaseRestorer: Whole-database restore from a SQL backup
    IntegrityToggle: Per-dialect statements for integrity checks
    StorageUndoHandlers: Undo handlers for object copies and moves
"""

from bulkmigrate.rollback.database import DatabaseRestorer, IntegrityToggle, split_statements
from bulkmigrate.rollback.engine import IRREVERSIBLE_TYPES, RollbackEngine, UndoHandler
from bulkmigrate.rollback.handlers import StorageUndoHandlers
from bulkmigrate.rollback.report import (
    RestorePlan,
    RestoreResult,
    RollbackFailure,
    RollbackReport,
    format_estimate,
)

__all__ = [
    "IRREVERSIBLE_TYPES",
    "DatabaseRestorer",
    "IntegrityToggle",
    "RestorePlan",
    "RestoreResult",
    "RollbackEngine",
    "RollbackFailure",
    "RollbackReport",
    "StorageUndoHandlers",
    "UndoHandler",
    "format_estimate",
    "split_statements",
]
