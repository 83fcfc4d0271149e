"""
Shared migration-state store: one status record per migration ID.
"""

from bulkmigrate.state.models import MigrationState, MigrationStatus
from bulkmigrate.state.store import (
    InMemoryMigrationStateStore,
    MigrationStateStore,
    SQLAlchemyMigrationStateStore,
)

__all__ = [
    "MigrationState",
    "MigrationStatus",
    "MigrationStateStore",
    "InMemoryMigrationStateStore",
    "SQLAlchemyMigrationStateStore",
]
