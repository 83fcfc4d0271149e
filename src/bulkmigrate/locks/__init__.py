"""
Migration lock: single-writer mutual exclusion with expiry and resume.

Classes:
    MigrationLock: acquire / refresh / release for one migration ID
    LockRecord: The stored lock record
    LockStore: Protocol for lock persistence
    InMemoryLockStore: In-process store for tests
    SQLAlchemyLockStore: ``migration_locks`` table on PostgreSQL or SQLite
"""

from bulkmigrate.locks.migration_lock import DEFAULT_LOCK_NAME, MigrationLock, default_owner
from bulkmigrate.locks.store import (
    InMemoryLockStore,
    LockRecord,
    LockStore,
    SQLAlchemyLockStore,
)

__all__ = [
    "DEFAULT_LOCK_NAME",
    "MigrationLock",
    "default_owner",
    "LockRecord",
    "LockStore",
    "InMemoryLockStore",
    "SQLAlchemyLockStore",
]
