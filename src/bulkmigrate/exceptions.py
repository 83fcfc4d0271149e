"""
Exceptions for the bulkmigrate package.

Error taxonomy:

- Contention (lock held by another run) is a normal outcome and is reported
  as ``False`` from :meth:`MigrationLock.acquire`, never as an exception.
  :class:`LockAcquisitionError` is only raised by the ``held()`` context
  manager, which has no other way to report it.
- Transient failures are retried by the error recovery manager and surface
  as :class:`RetryExhaustedError` once the budget is spent.
- Fatal failures propagate unchanged, never retried.
- Persistence failures (:class:`PersistenceError` subclasses) always
  propagate: a run must not continue when its progress or its undo journal
  cannot be recorded.
- Rollback failures of individual entries are counted in the rollback
  report; whole-database restore failures raise :class:`DatabaseRestoreError`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class BulkMigrateError(Exception):
    """
    Base exception for all bulkmigrate errors.

    Attributes:
        message: Human-readable error description.
        migration_id: The migration the error relates to, if known.
    """

    error_code: str = "BULKMIGRATE_ERROR"

    def __init__(self, message: str, *, migration_id: str | None = None) -> None:
        self.message = message
        self.migration_id = migration_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.migration_id:
            return f"{self.message} migration_id={self.migration_id}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception to a dictionary for logging or state records."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "migration_id": self.migration_id,
        }


# =============================================================================
# Lock errors
# =============================================================================


class LockError(BulkMigrateError):
    """Base class for migration lock errors."""

    error_code = "LOCK_ERROR"


class LockAcquisitionError(LockError):
    """
    Raised by ``MigrationLock.held()`` when the lock could not be obtained.

    Attributes:
        lock_name: Name of the contended lock record.
        holder: Migration ID currently holding the lock, if known.
        timeout: Seconds spent waiting.
    """

    error_code = "LOCK_ACQUISITION_FAILED"

    def __init__(
        self,
        lock_name: str,
        migration_id: str,
        timeout: float,
        holder: str | None = None,
    ) -> None:
        self.lock_name = lock_name
        self.holder = holder
        self.timeout = timeout
        held_by = f" (held by {holder})" if holder else ""
        super().__init__(
            f"Could not acquire lock '{lock_name}' within {timeout}s{held_by}",
            migration_id=migration_id,
        )


class LockLostError(LockError):
    """
    Raised by a migration run when ``refresh()`` reports the lock was lost.

    Work must stop immediately: another process may now own the migration.
    """

    error_code = "LOCK_LOST"


class LockStoreError(LockError):
    """Raised when the lock record store cannot be read or written."""

    error_code = "LOCK_STORE_ERROR"


# =============================================================================
# Persistence errors
# =============================================================================


class PersistenceError(BulkMigrateError):
    """Base class for failures to durably record progress or changes."""

    error_code = "PERSISTENCE_ERROR"


class CheckpointWriteError(PersistenceError):
    """Raised when a checkpoint or quick state cannot be written."""

    error_code = "CHECKPOINT_WRITE_FAILED"


class ChangeLogWriteError(PersistenceError):
    """
    Raised when buffered change-log entries cannot be flushed.

    Attributes:
        pending: Number of entries still buffered after the failure.
    """

    error_code = "CHANGELOG_WRITE_FAILED"

    def __init__(self, message: str, *, migration_id: str | None = None, pending: int = 0) -> None:
        self.pending = pending
        super().__init__(message, migration_id=migration_id)


class StateStoreError(PersistenceError):
    """Raised when the shared migration-state store cannot be written."""

    error_code = "STATE_STORE_ERROR"


# =============================================================================
# Retry errors
# =============================================================================


class RetryExhaustedError(BulkMigrateError):
    """
    Raised when a retriable operation failed on every attempt.

    Attributes:
        operation_id: Identifier supplied by the caller.
        attempts: Number of attempts made.
        last_error: The exception raised by the final attempt.
    """

    error_code = "RETRY_EXHAUSTED"

    def __init__(self, operation_id: str, attempts: int, last_error: BaseException) -> None:
        self.operation_id = operation_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Operation {operation_id} failed after {attempts} attempts: {last_error}")


# =============================================================================
# Rollback errors
# =============================================================================


class RollbackError(BulkMigrateError):
    """Raised when a rollback cannot be performed at all."""

    error_code = "ROLLBACK_ERROR"


class BackupNotFoundError(RollbackError):
    """Raised when no database backup exists for a migration."""

    error_code = "BACKUP_NOT_FOUND"

    def __init__(self, path: Path, *, migration_id: str | None = None) -> None:
        self.path = path
        super().__init__(f"Database backup not found: {path}", migration_id=migration_id)


class BackupVerificationError(RollbackError):
    """Raised when a backup file fails integrity or safety checks."""

    error_code = "BACKUP_VERIFICATION_FAILED"

    def __init__(self, path: Path, reason: str, *, migration_id: str | None = None) -> None:
        self.path = path
        self.reason = reason
        super().__init__(
            f"Backup verification failed for {path}: {reason}",
            migration_id=migration_id,
        )


class DatabaseRestoreError(RollbackError):
    """Raised when restoring a database backup fails; the restore is rolled back."""

    error_code = "DATABASE_RESTORE_FAILED"


__all__ = [
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
