"""
bulkmigrate - orchestration core for long-running bulk data migrations.

This library provides:
- MigrationLock: single-runner mutual exclusion with expiry and resume
- CheckpointManager: durable progress snapshots and quick state
- ChangeLogManager: append-only, phase-tagged journal of reversible changes
- RollbackEngine: reverse-order undo of the journal, or full database restore
- ErrorRecoveryManager: fatal/retriable classification with backoff
- MigrationRun: the lifecycle that ties them together
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("bulkmigrate")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

from bulkmigrate.changelog import (
    ChangeLogEntry,
    ChangeLogManager,
    ChangeLogStore,
    FileChangeLogStore,
    InMemoryChangeLogStore,
    MigrationLogSummary,
)
from bulkmigrate.checkpoints import (
    Checkpoint,
    CheckpointManager,
    CheckpointStore,
    CheckpointSummary,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    QuickState,
)
from bulkmigrate.clock import Clock, SystemClock
from bulkmigrate.config import MigrationSettings
from bulkmigrate.exceptions import (
    BackupNotFoundError,
    BackupVerificationError,
    BulkMigrateError,
    ChangeLogWriteError,
    CheckpointWriteError,
    DatabaseRestoreError,
    LockAcquisitionError,
    LockError,
    LockLostError,
    LockStoreError,
    PersistenceError,
    RetryExhaustedError,
    RollbackError,
    StateStoreError,
)
from bulkmigrate.locks import (
    InMemoryLockStore,
    LockRecord,
    LockStore,
    MigrationLock,
    SQLAlchemyLockStore,
)
from bulkmigrate.providers import InMemoryStorageProvider, ObjectMetadata, StorageProvider
from bulkmigrate.recovery import (
    DEFAULT_FATAL_PATTERNS,
    ErrorCategory,
    ErrorRecoveryManager,
    FatalPatternClassifier,
    RetryRecord,
    classify_error,
)
from bulkmigrate.rollback import (
    IRREVERSIBLE_TYPES,
    DatabaseRestorer,
    IntegrityToggle,
    RestorePlan,
    RestoreResult,
    RollbackEngine,
    RollbackReport,
    StorageUndoHandlers,
)
from bulkmigrate.run import MigrationRun
from bulkmigrate.state import (
    InMemoryMigrationStateStore,
    MigrationState,
    MigrationStateStore,
    MigrationStatus,
    SQLAlchemyMigrationStateStore,
)

__all__ = [
    "__version__",
    # Lifecycle
    "MigrationRun",
    "MigrationSettings",
    # Lock
    "MigrationLock",
    "LockRecord",
    "LockStore",
    "InMemoryLockStore",
    "SQLAlchemyLockStore",
    # Checkpoints
    "Checkpoint",
    "CheckpointManager",
    "CheckpointStore",
    "CheckpointSummary",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "QuickState",
    # State
    "MigrationState",
    "MigrationStateStore",
    "MigrationStatus",
    "InMemoryMigrationStateStore",
    "SQLAlchemyMigrationStateStore",
    # Change log
    "ChangeLogEntry",
    "ChangeLogManager",
    "ChangeLogStore",
    "FileChangeLogStore",
    "InMemoryChangeLogStore",
    "MigrationLogSummary",
    # Rollback
    "IRREVERSIBLE_TYPES",
    "DatabaseRestorer",
    "IntegrityToggle",
    "RestorePlan",
    "RestoreResult",
    "RollbackEngine",
    "RollbackReport",
    "StorageUndoHandlers",
    # Recovery
    "DEFAULT_FATAL_PATTERNS",
    "ErrorCategory",
    "ErrorRecoveryManager",
    "FatalPatternClassifier",
    "RetryRecord",
    "classify_error",
    # Storage boundary
    "InMemoryStorageProvider",
    "ObjectMetadata",
    "StorageProvider",
    # Time
    "Clock",
    "SystemClock",
    # Exceptions
    "BulkMigrateError",
    "LockError",
    "LockAcquisitionError",
    "LockLostError",
    "LockStoreError",
    "PersistenceError",
    "CheckpointWriteError",
    "ChangeLogWriteError",
    "StateStoreError",
    "RetryExhaustedError",
    "RollbackError",
    "BackupNotFoundError",
    "BackupVerificationError",
    "DatabaseRestoreError",
]
