"""
Checkpoint Manager.

Tracks "where am I" for one migration run: the full checkpoint, the quick
state, and the summary mirrored into the shared migration-state store.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import replace
from datetime import timedelta
from typing import Any

from pydantic import ValidationError

from bulkmigrate.checkpoints.models import Checkpoint, CheckpointSummary, QuickState, merge_ids
from bulkmigrate.checkpoints.store import CheckpointStore
from bulkmigrate.clock import Clock, SystemClock
from bulkmigrate.exceptions import CheckpointWriteError, PersistenceError
from bulkmigrate.observability import (
    ATTR_BATCH,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_PHASE,
    ATTR_MIGRATION_STATUS,
    ATTR_PROCESSED_COUNT,
    Tracer,
    create_tracer,
)
from bulkmigrate.state import MigrationState, MigrationStateStore, MigrationStatus
from bulkmigrate.types import ItemId, validate_migration_id

logger = logging.getLogger(__name__)

INITIAL_PHASE = "initializing"


class CheckpointManager:
    """
    Owns the checkpoint, quick state and state-store record of one migration.

    No other component writes these records for the same migration ID.

    Args:
        migration_id: Run identifier; must match ``[A-Za-z0-9_-]+``
        store: Checkpoint and quick-state persistence
        state_store: Shared migration-state store
        retention_hours: Default age for ``cleanup_old_checkpoints``
        clock: Time source for timestamps
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing

    Raises:
        ValueError: If ``migration_id`` contains disallowed characters

    Example:
        >>> checkpoints = CheckpointManager("mig-1", FileCheckpointStore(dir), state_store)
        >>> resume = await checkpoints.load_latest_checkpoint()
        >>> done = set(resume.processed_ids) if resume else set()
    """

    def __init__(
        self,
        migration_id: str,
        store: CheckpointStore,
        state_store: MigrationStateStore,
        *,
        retention_hours: int = 72,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self.migration_id = validate_migration_id(migration_id)
        self.retention_hours = retention_hours
        self._store = store
        self._state_store = state_store
        self._clock = clock or SystemClock()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    # =========================================================================
    # Checkpoints
    # =========================================================================

    async def save_checkpoint(self, checkpoint: Checkpoint | Mapping[str, Any]) -> bool:
        """
        Persist a full checkpoint, its quick state and the state summary.

        The quick state and state summary are written first and the full
        checkpoint last, by atomic replace. If any write fails the previous
        full checkpoint remains the latest one.

        Args:
            checkpoint: Snapshot to save (a Checkpoint or its field mapping)

        Returns:
            True once all three records are written

        Raises:
            CheckpointWriteError: If any of the writes fails
        """
        try:
            data = self._coerce(checkpoint)
        except ValidationError as e:
            raise CheckpointWriteError(
                f"Invalid checkpoint data: {e}", migration_id=self.migration_id
            ) from e

        now = self._clock.now()
        data = data.model_copy(update={"migration_id": self.migration_id, "created_at": now})
        quick_state = QuickState(
            migration_id=self.migration_id,
            phase=data.phase,
            batch=data.batch,
            processed_ids=data.processed_ids,
            stats=data.stats,
            updated_at=now,
        )

        with self._tracer.span(
            "bulkmigrate.checkpoint.save_checkpoint",
            {
                ATTR_MIGRATION_ID: self.migration_id,
                ATTR_MIGRATION_PHASE: data.phase,
                ATTR_BATCH: data.batch,
                ATTR_PROCESSED_COUNT: data.processed_count,
            },
        ):
            try:
                await self._store.write_quick_state(self.migration_id, quick_state)
                await self._mirror_state(data)
                await self._store.write_checkpoint(self.migration_id, data)
            except (OSError, PersistenceError) as e:
                logger.error("Failed to save checkpoint for %s: %s", self.migration_id, e)
                raise CheckpointWriteError(
                    f"Failed to save checkpoint: {e}", migration_id=self.migration_id
                ) from e

        logger.info(
            "Checkpoint saved for %s: phase=%s batch=%d processed=%d",
            self.migration_id,
            data.phase,
            data.batch,
            data.processed_count,
        )
        return True

    async def _mirror_state(self, data: Checkpoint) -> None:
        existing = await self._state_store.get_state(self.migration_id)
        base = existing or MigrationState(
            migration_id=self.migration_id, started_at=data.created_at
        )
        await self._state_store.save_state(
            replace(
                base,
                status=MigrationStatus.RUNNING,
                completed_at=None,
                phase=data.phase,
                processed_count=data.processed_count,
                current_batch=data.batch,
                total_count=data.total_count or base.total_count,
                stats=data.stats,
                checkpoint_file=self._store.location(self.migration_id),
            )
        )

    def _coerce(self, checkpoint: Checkpoint | Mapping[str, Any]) -> Checkpoint:
        if isinstance(checkpoint, Checkpoint):
            return checkpoint
        return Checkpoint.model_validate(dict(checkpoint))

    async def load_latest_checkpoint(self) -> Checkpoint | None:
        """The most recently saved full checkpoint, or None for a fresh start."""
        with self._tracer.span(
            "bulkmigrate.checkpoint.load_latest_checkpoint",
            {ATTR_MIGRATION_ID: self.migration_id},
        ):
            return await self._store.read_checkpoint(self.migration_id)

    # =========================================================================
    # Quick state
    # =========================================================================

    async def save_quick_state(self, quick_state: QuickState | Mapping[str, Any]) -> bool:
        """
        Persist only the quick state.

        Raises:
            CheckpointWriteError: If the write fails
        """
        if isinstance(quick_state, QuickState):
            data = quick_state
        else:
            data = QuickState.model_validate({"migration_id": self.migration_id, **quick_state})
        data = data.model_copy(
            update={"migration_id": self.migration_id, "updated_at": self._clock.now()}
        )
        try:
            await self._store.write_quick_state(self.migration_id, data)
        except OSError as e:
            raise CheckpointWriteError(
                f"Failed to save quick state: {e}", migration_id=self.migration_id
            ) from e
        return True

    async def load_quick_state(self) -> QuickState | None:
        """The most recently saved quick state, or None."""
        return await self._store.read_quick_state(self.migration_id)

    async def update_processed_ids(self, new_ids: Iterable[ItemId]) -> QuickState:
        """
        Add IDs to the quick state's processed set and persist it.

        A set union: IDs already present are ignored, so repeating a call
        with the same IDs changes nothing.

        Args:
            new_ids: Item IDs finished since the last update

        Returns:
            The updated quick state

        Raises:
            CheckpointWriteError: If the write fails
        """
        current = await self._store.read_quick_state(self.migration_id)
        if current is None:
            current = QuickState(migration_id=self.migration_id, phase=INITIAL_PHASE)
        updated = current.model_copy(
            update={
                "processed_ids": merge_ids(current.processed_ids, new_ids),
                "updated_at": self._clock.now(),
            }
        )
        try:
            await self._store.write_quick_state(self.migration_id, updated)
        except OSError as e:
            raise CheckpointWriteError(
                f"Failed to update processed IDs: {e}", migration_id=self.migration_id
            ) from e
        return updated

    # =========================================================================
    # Shared state record
    # =========================================================================

    async def register_migration_start(
        self,
        pid: int,
        session_id: str | None = None,
        command: str | None = None,
        total_count: int = 0,
    ) -> MigrationState:
        """
        Mark the migration as running in the shared state store.

        Progress counters of an existing record are kept so a resumed run
        keeps reporting from where it stopped.
        """
        existing = await self._state_store.get_state(self.migration_id)
        state = MigrationState(
            migration_id=self.migration_id,
            status=MigrationStatus.RUNNING,
            phase=INITIAL_PHASE,
            processed_count=existing.processed_count if existing else 0,
            current_batch=existing.current_batch if existing else 0,
            total_count=total_count,
            stats=existing.stats if existing else {},
            pid=pid,
            session_id=session_id,
            command=command,
            checkpoint_file=self._store.location(self.migration_id),
            started_at=existing.started_at if existing else self._clock.now(),
        )
        with self._tracer.span(
            "bulkmigrate.checkpoint.register_migration_start",
            {ATTR_MIGRATION_ID: self.migration_id, ATTR_MIGRATION_STATUS: state.status.value},
        ):
            await self._state_store.save_state(state)
        logger.info(
            "Registered migration %s start (pid %d, total %d)",
            self.migration_id,
            pid,
            total_count,
        )
        return state

    async def mark_migration_completed(self) -> None:
        """Set the shared state to completed."""
        await self._set_status(MigrationStatus.COMPLETED)

    async def mark_migration_failed(self, error_message: str) -> None:
        """Set the shared state to failed, recording the error."""
        await self._set_status(MigrationStatus.FAILED, error_message)

    async def mark_migration_paused(self) -> None:
        """Set the shared state to paused."""
        await self._set_status(MigrationStatus.PAUSED)

    async def _set_status(self, status: MigrationStatus, error_message: str | None = None) -> None:
        with self._tracer.span(
            "bulkmigrate.checkpoint.set_status",
            {ATTR_MIGRATION_ID: self.migration_id, ATTR_MIGRATION_STATUS: status.value},
        ):
            updated = await self._state_store.update_status(
                self.migration_id, status, error_message
            )
            if not updated:
                now = self._clock.now()
                await self._state_store.save_state(
                    MigrationState(
                        migration_id=self.migration_id,
                        status=status,
                        error_message=error_message,
                        checkpoint_file=self._store.location(self.migration_id),
                        completed_at=now if status.is_terminal else None,
                    )
                )
        logger.info("Migration %s marked %s", self.migration_id, status.value)

    async def get_migration_state(self) -> MigrationState | None:
        """The shared state record of this migration."""
        return await self._state_store.get_state(self.migration_id)

    # =========================================================================
    # Retention
    # =========================================================================

    async def list_checkpoints(self) -> list[CheckpointSummary]:
        """Summaries of every stored checkpoint, newest first."""
        summaries = await self._store.list_checkpoints()
        return sorted(
            summaries,
            key=lambda s: s.created_at.timestamp() if s.created_at else 0.0,
            reverse=True,
        )

    async def cleanup_old_checkpoints(self, older_than_hours: int | None = None) -> int:
        """
        Delete checkpoints of other migrations older than the retention age.

        This manager's own checkpoint is never removed.

        Args:
            older_than_hours: Age threshold; defaults to ``retention_hours``

        Returns:
            Number of migrations whose checkpoints were removed
        """
        hours = self.retention_hours if older_than_hours is None else older_than_hours
        cutoff = self._clock.now() - timedelta(hours=hours)
        removed = 0
        failed = 0
        for summary in await self._store.list_checkpoints():
            if summary.migration_id == self.migration_id:
                continue
            if summary.created_at is None or summary.created_at >= cutoff:
                continue
            try:
                if await self._store.delete(summary.migration_id):
                    removed += 1
            except OSError as e:
                failed += 1
                logger.warning("Failed to remove checkpoint %s: %s", summary.location, e)
        if removed:
            logger.info("Removed %d checkpoints older than %d hours", removed, hours)
        if failed:
            logger.warning("Could not remove %d expired checkpoints", failed)
        return removed


__all__ = ["CheckpointManager", "INITIAL_PHASE"]
