"""
Undo handlers for storage operations.

Payload conventions of the storage change types:

- ``copied_object``: ``target_provider``, ``target_path``. Undone by
  deleting the copy.
- ``moved_object`` and ``quarantined_orphaned_file``: ``source_provider``,
  ``source_path``, ``target_provider``, ``target_path``. Undone by copying
  the object back to its source and deleting it from the target.

Provider fields name entries of the ``providers`` mapping given to
:class:`StorageUndoHandlers`.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import TypeVar

from bulkmigrate.changelog import ChangeLogEntry
from bulkmigrate.providers import StorageProvider
from bulkmigrate.recovery import ErrorRecoveryManager
from bulkmigrate.rollback.engine import RollbackEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StorageUndoHandlers:
    """
    Undo handlers for object copies and moves.

    Args:
        providers: Storage providers by the names used in payloads
        recovery: Optional retry policy for provider calls

    Example:
        >>> handlers = StorageUndoHandlers({"local": local, "s3": s3}, recovery)
        >>> handlers.register(engine)
    """

    def __init__(
        self,
        providers: Mapping[str, StorageProvider],
        recovery: ErrorRecoveryManager | None = None,
    ) -> None:
        self._providers = dict(providers)
        self._recovery = recovery

    def register(self, engine: RollbackEngine) -> None:
        """Register all storage handlers on a rollback engine."""
        engine.register_handler("copied_object", self.undo_copy)
        engine.register_handler("moved_object", self.undo_move)
        engine.register_handler("quarantined_orphaned_file", self.undo_move)

    def _provider(self, entry: ChangeLogEntry, key: str) -> StorageProvider:
        name = entry.payload.get(key)
        if name not in self._providers:
            raise KeyError(f"Entry {entry.sequence}: unknown storage provider {name!r} in {key}")
        return self._providers[name]

    @staticmethod
    def _path(entry: ChangeLogEntry, key: str) -> str:
        path = entry.payload.get(key)
        if not path:
            raise KeyError(f"Entry {entry.sequence}: payload is missing {key}")
        return str(path)

    async def _call(self, operation: Callable[[], Awaitable[T]], operation_id: str) -> T:
        if self._recovery is None:
            return await operation()
        return await self._recovery.retry_operation(operation, operation_id)

    async def undo_copy(self, entry: ChangeLogEntry) -> None:
        """Delete the copy a ``copied_object`` entry created."""
        target = self._provider(entry, "target_provider")
        target_path = self._path(entry, "target_path")
        exists = await self._call(
            lambda: target.exists(target_path), f"rollback:{entry.sequence}:exists"
        )
        if not exists:
            logger.info("Copy %s already gone, nothing to undo", target_path)
            return
        await self._call(lambda: target.delete(target_path), f"rollback:{entry.sequence}:delete")
        logger.debug("Removed copied object %s", target_path)

    async def undo_move(self, entry: ChangeLogEntry) -> None:
        """Move an object back from its target to its source location."""
        source = self._provider(entry, "source_provider")
        target = self._provider(entry, "target_provider")
        source_path = self._path(entry, "source_path")
        target_path = self._path(entry, "target_path")

        await self._call(
            lambda: target.copy(target_path, source, source_path),
            f"rollback:{entry.sequence}:copy",
        )
        await self._call(lambda: target.delete(target_path), f"rollback:{entry.sequence}:delete")
        logger.debug("Moved %s back to %s", target_path, source_path)


__all__ = ["StorageUndoHandlers"]
