"""Shared type aliases and identifier validation."""

from __future__ import annotations

import re
from typing import Literal, TypeAlias

ItemId: TypeAlias = int | str
"""Identifier of a migrated item (asset ID, reference ID, path)."""

RollbackDirection = Literal["from", "to", "only"]
"""Phase filter direction for a partial rollback."""

_MIGRATION_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


def validate_migration_id(migration_id: str) -> str:
    """
    Check that a migration ID is safe to use as a file name.

    Migration IDs become checkpoint, state and change-log file names, so
    anything outside ``[A-Za-z0-9_-]`` (path separators, dots) is rejected.

    Args:
        migration_id: Candidate migration ID

    Returns:
        The migration ID unchanged

    Raises:
        ValueError: If the ID is empty or contains disallowed characters
    """
    if not isinstance(migration_id, str) or not _MIGRATION_ID_PATTERN.fullmatch(migration_id):
        raise ValueError(
            f"Invalid migration ID {migration_id!r}: "
            "only letters, digits, hyphens and underscores are allowed"
        )
    return migration_id


__all__ = [
    "ItemId",
    "RollbackDirection",
    "validate_migration_id",
]
