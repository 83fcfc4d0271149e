"""
Standard span attributes for bulkmigrate.

Attribute constants shared by all components so spans for the same
migration can be correlated. OpenTelemetry semantic conventions are used
where one exists (``db.system``).
"""

# =============================================================================
# Migration Attributes
# =============================================================================

ATTR_MIGRATION_ID = "bulkmigrate.migration.id"
"""Identifier of the migration run."""

ATTR_MIGRATION_PHASE = "bulkmigrate.migration.phase"
"""Current phase label (e.g., 'copy', 'rewrite')."""

ATTR_MIGRATION_STATUS = "bulkmigrate.migration.status"
"""Status written to the shared state store."""

ATTR_PROCESSED_COUNT = "bulkmigrate.migration.processed_count"
"""Number of processed item IDs (integer)."""

ATTR_BATCH = "bulkmigrate.migration.batch"
"""Current batch number (integer)."""

# =============================================================================
# Lock Attributes
# =============================================================================

ATTR_LOCK_NAME = "bulkmigrate.lock.name"
"""Name of the singleton lock record."""

ATTR_LOCK_OWNER = "bulkmigrate.lock.owner"
"""Owner identity tag (host:pid)."""

ATTR_LOCK_TIMEOUT = "bulkmigrate.lock.timeout"
"""Acquire timeout in seconds (float)."""

ATTR_LOCK_ACQUIRED = "bulkmigrate.lock.acquired"
"""Whether the lock was acquired (boolean)."""

# =============================================================================
# Change Log Attributes
# =============================================================================

ATTR_CHANGE_COUNT = "bulkmigrate.changelog.count"
"""Number of change-log entries in an operation (integer)."""

ATTR_CHANGE_TYPE = "bulkmigrate.changelog.type"
"""Operation type tag of a change-log entry."""

# =============================================================================
# Retry / Rollback Attributes
# =============================================================================

ATTR_OPERATION_ID = "bulkmigrate.operation.id"
"""Caller-supplied identifier of a retried operation."""

ATTR_RETRY_COUNT = "bulkmigrate.retry.count"
"""Number of attempts made (integer)."""

ATTR_ERROR_TYPE = "bulkmigrate.error.type"
"""Exception class name of a failure."""

ATTR_ROLLBACK_DIRECTION = "bulkmigrate.rollback.direction"
"""Phase filter direction ('from', 'to', 'only')."""

ATTR_ROLLBACK_DRY_RUN = "bulkmigrate.rollback.dry_run"
"""Whether a rollback was a dry run (boolean)."""

# =============================================================================
# Database Attributes (OTEL semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"
"""Database system identifier (e.g., 'postgresql', 'sqlite')."""

ATTR_DB_OPERATION = "db.operation"
"""Database operation (e.g., 'INSERT', 'DELETE')."""


__all__ = [
    "ATTR_MIGRATION_ID",
    "ATTR_MIGRATION_PHASE",
    "ATTR_MIGRATION_STATUS",
    "ATTR_PROCESSED_COUNT",
    "ATTR_BATCH",
    "ATTR_LOCK_NAME",
    "ATTR_LOCK_OWNER",
    "ATTR_LOCK_TIMEOUT",
    "ATTR_LOCK_ACQUIRED",
    "ATTR_CHANGE_COUNT",
    "ATTR_CHANGE_TYPE",
    "ATTR_OPERATION_ID",
    "ATTR_RETRY_COUNT",
    "ATTR_ERROR_TYPE",
    "ATTR_ROLLBACK_DIRECTION",
    "ATTR_ROLLBACK_DRY_RUN",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
]
