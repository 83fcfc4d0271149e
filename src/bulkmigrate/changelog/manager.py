"""
Change Log Manager.

Records every reversible mutation of a migration run with a gap-free
sequence number and the phase it happened in. Entries are buffered and
appended to the store in batches; callers must ``flush()`` before releasing
the migration lock.
"""

from __future__ import annotations

import logging
from typing import Any

from bulkmigrate.changelog.models import ChangeLogEntry, MigrationLogSummary
from bulkmigrate.changelog.store import ChangeLogStore
from bulkmigrate.clock import Clock, SystemClock
from bulkmigrate.exceptions import ChangeLogWriteError
from bulkmigrate.observability import (
    ATTR_CHANGE_COUNT,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_PHASE,
    Tracer,
    create_tracer,
)
from bulkmigrate.types import validate_migration_id

logger = logging.getLogger(__name__)

DEFAULT_PHASE = "unknown"


class ChangeLogManager:
    """
    Append-only journal writer for one migration ID.

    Only one manager may write a given migration's log at a time; the
    migration lock guarantees that. A manager created for a migration that
    already has entries continues numbering after the last persisted one.

    Args:
        migration_id: Run the journal belongs to
        store: Where entries are appended
        flush_threshold: Buffered entries that trigger an automatic flush
        clock: Time source for entry timestamps
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing

    Example:
        >>> changes = ChangeLogManager("mig-1", FileChangeLogStore(log_dir))
        >>> await changes.set_phase("copy")
        >>> await changes.log_change("copied_object", {"target_path": "a.jpg"})
        >>> await changes.flush()
    """

    def __init__(
        self,
        migration_id: str,
        store: ChangeLogStore,
        flush_threshold: int = 5,
        *,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if flush_threshold < 1:
            raise ValueError(f"flush_threshold must be positive, got {flush_threshold}")
        self.migration_id = validate_migration_id(migration_id)
        self.flush_threshold = flush_threshold
        self._store = store
        self._clock = clock or SystemClock()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._phase = DEFAULT_PHASE
        self._buffer: list[ChangeLogEntry] = []
        self._sequence: int | None = None

    @property
    def phase(self) -> str:
        """Phase label applied to newly logged entries."""
        return self._phase

    @property
    def pending_count(self) -> int:
        """Entries logged but not yet flushed."""
        return len(self._buffer)

    async def set_phase(self, phase: str) -> None:
        """
        Tag subsequent entries with ``phase``.

        Buffered entries of the previous phase are flushed first.
        """
        if self._buffer:
            await self.flush()
        logger.debug(
            "Migration %s change log phase: %s -> %s", self.migration_id, self._phase, phase
        )
        self._phase = phase

    async def log_change(
        self,
        change_type: str,
        payload: dict[str, Any] | None = None,
    ) -> ChangeLogEntry:
        """
        Record one mutation.

        Args:
            change_type: Operation tag used to pick the undo handler
            payload: Data needed to reverse the operation

        Returns:
            The buffered entry, with its sequence number assigned

        Raises:
            ChangeLogWriteError: If the automatic flush fails. The entry
                stays buffered.
        """
        if self._sequence is None:
            self._sequence = await self._store.last_sequence(self.migration_id)
        self._sequence += 1
        entry = ChangeLogEntry(
            migration_id=self.migration_id,
            sequence=self._sequence,
            phase=self._phase,
            type=change_type,
            payload=payload or {},
            timestamp=self._clock.now(),
        )
        self._buffer.append(entry)
        if len(self._buffer) >= self.flush_threshold:
            await self.flush()
        return entry

    async def flush(self) -> int:
        """
        Durably append all buffered entries.

        Returns:
            Number of entries written

        Raises:
            ChangeLogWriteError: If the store write fails. The buffer is
                kept so a later flush can retry.
        """
        if not self._buffer:
            return 0
        pending = list(self._buffer)
        with self._tracer.span(
            "bulkmigrate.changelog.flush",
            {
                ATTR_MIGRATION_ID: self.migration_id,
                ATTR_MIGRATION_PHASE: self._phase,
                ATTR_CHANGE_COUNT: len(pending),
            },
        ):
            try:
                await self._store.append(self.migration_id, pending)
            except (OSError, ValueError) as e:
                raise ChangeLogWriteError(
                    f"Failed to flush {len(pending)} change-log entries: {e}",
                    migration_id=self.migration_id,
                    pending=len(pending),
                ) from e
            del self._buffer[: len(pending)]
            logger.debug(
                "Flushed %d change-log entries for %s (last sequence %d)",
                len(pending),
                self.migration_id,
                pending[-1].sequence,
            )
            return len(pending)

    async def load_changes(self) -> list[ChangeLogEntry]:
        """
        All entries of this migration in sequence order.

        Includes entries still in the buffer, so the result reflects every
        ``log_change`` call made so far.
        """
        persisted = await self._store.load(self.migration_id)
        seen = {e.sequence for e in persisted}
        entries = persisted + [e for e in self._buffer if e.sequence not in seen]
        entries.sort(key=lambda e: e.sequence)
        return entries

    async def list_migrations(self) -> list[MigrationLogSummary]:
        """Summaries of every migration log in the store."""
        return await self._store.list_migrations()


__all__ = ["ChangeLogManager", "DEFAULT_PHASE"]
