"""
MigrationRun - wires the lock, checkpoints, change log and retry policy
into the lifecycle of one migration run.

Phase executors (copying objects, rewriting references) are supplied by the
host application. They use the run to record progress and changes:

Usage:
    >>> run = MigrationRun.create(
    ...     "mig-2024-06-01",
    ...     lock_store=SQLAlchemyLockStore(engine),
    ...     state_store=SQLAlchemyMigrationStateStore(engine),
    ...     checkpoint_store=FileCheckpointStore(checkpoint_dir),
    ...     change_log_store=FileChangeLogStore(changelog_dir),
    ... )
    >>> async with run.session(resume=True, total_count=len(asset_ids)):
    ...     await run.enter_phase("copy")
    ...     for batch in batches(asset_ids, 100):
    ...         pending = [a for a in batch if a not in run.processed_ids]
    ...         for asset_id in pending:
    ...             await run.recovery.retry_operation(
    ...                 lambda: source.copy(path(asset_id), target, path(asset_id)),
    ...                 f"copy:{asset_id}",
    ...             )
    ...             await run.change_log.log_change(
    ...                 "copied_object",
    ...                 {"target_provider": "s3", "target_path": path(asset_id)},
    ...             )
    ...         await run.record_batch(pending)

On success the session flushes the change log, writes a final checkpoint,
marks the run completed and releases the lock. On an exception it flushes
what it can, records the error, marks the run failed, releases the lock and
re-raises. Cancellation or KeyboardInterrupt pauses the run instead, so a
later resume picks it up, and the lock is still released.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

from bulkmigrate.changelog import ChangeLogManager, ChangeLogStore
from bulkmigrate.checkpoints import INITIAL_PHASE, Checkpoint, CheckpointManager, CheckpointStore
from bulkmigrate.checkpoints.models import merge_ids
from bulkmigrate.clock import Clock
from bulkmigrate.config import MigrationSettings
from bulkmigrate.exceptions import LockAcquisitionError, LockLostError, PersistenceError
from bulkmigrate.locks import LockStore, MigrationLock
from bulkmigrate.observability import Tracer
from bulkmigrate.recovery import ErrorRecoveryManager
from bulkmigrate.state import MigrationStateStore
from bulkmigrate.types import ItemId

logger = logging.getLogger(__name__)

COMPLETE_PHASE = "complete"


class MigrationRun:
    """
    Lifecycle of one migration run.

    Args:
        migration_id: Run identifier
        lock: Migration lock for this run
        checkpoints: Checkpoint manager for this run
        change_log: Change log manager for this run
        recovery: Retry policy offered to phase executors
        settings: Batch/checkpoint cadence and lock timeouts
    """

    def __init__(
        self,
        migration_id: str,
        *,
        lock: MigrationLock,
        checkpoints: CheckpointManager,
        change_log: ChangeLogManager,
        recovery: ErrorRecoveryManager,
        settings: MigrationSettings | None = None,
    ) -> None:
        self.migration_id = migration_id
        self.lock = lock
        self.checkpoints = checkpoints
        self.change_log = change_log
        self.recovery = recovery
        self.settings = settings or MigrationSettings()
        self._phase = INITIAL_PHASE
        self._batch = 0
        self._processed_ids: list[ItemId] = []
        self._processed_set: set[ItemId] = set()
        self._stats: dict[str, Any] = {}
        self._total_count = 0
        self._started = False

    @classmethod
    def create(
        cls,
        migration_id: str,
        *,
        lock_store: LockStore,
        state_store: MigrationStateStore,
        checkpoint_store: CheckpointStore,
        change_log_store: ChangeLogStore,
        settings: MigrationSettings | None = None,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> MigrationRun:
        """Build a run and its components from stores and settings."""
        settings = settings or MigrationSettings()
        common: dict[str, Any] = {
            "clock": clock,
            "tracer": tracer,
            "enable_tracing": enable_tracing,
        }
        return cls(
            migration_id,
            lock=MigrationLock.from_settings(migration_id, lock_store, settings, **common),
            checkpoints=CheckpointManager(
                migration_id,
                checkpoint_store,
                state_store,
                retention_hours=settings.checkpoint_retention_hours,
                **common,
            ),
            change_log=ChangeLogManager(
                migration_id,
                change_log_store,
                settings.changelog_flush_every,
                **common,
            ),
            recovery=ErrorRecoveryManager.from_settings(settings, **common),
            settings=settings,
        )

    # =========================================================================
    # Progress accessors
    # =========================================================================

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def batch(self) -> int:
        return self._batch

    @property
    def processed_ids(self) -> frozenset[ItemId]:
        """IDs already processed, including those restored on resume."""
        return frozenset(self._processed_set)

    @property
    def stats(self) -> dict[str, Any]:
        """Mutable stats map saved with every checkpoint."""
        return self._stats

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(
        self,
        *,
        resume: bool = False,
        total_count: int = 0,
        command: str | None = None,
        session_id: str | None = None,
        timeout_seconds: float | None = None,
    ) -> bool:
        """
        Acquire the lock and initialize or restore progress.

        Args:
            resume: Continue from the latest checkpoint and accept a live
                lock already held by this migration ID
            total_count: Number of items the run will process
            command: Command line that started the run, for diagnostics
            session_id: Caller's session identifier, for diagnostics
            timeout_seconds: Lock acquire timeout (defaults to settings)

        Returns:
            False if another migration holds the lock
        """
        timeout = (
            self.settings.lock_acquire_timeout_seconds
            if timeout_seconds is None
            else timeout_seconds
        )
        if not await self.lock.acquire(timeout, allow_resume_same_id=resume):
            return False

        try:
            self._total_count = total_count
            if resume:
                await self._restore()
            await self.checkpoints.register_migration_start(
                os.getpid(),
                session_id=session_id,
                command=command,
                total_count=self._total_count,
            )
            if not resume or self._batch == 0:
                await self.checkpoints.save_quick_state(
                    {
                        "phase": self._phase,
                        "batch": self._batch,
                        "processed_ids": self._processed_ids,
                        "stats": self._stats,
                    }
                )
        except BaseException:
            await self.lock.release()
            raise

        self._started = True
        logger.info(
            "Migration %s started (resume=%s, phase=%s, %d already processed)",
            self.migration_id,
            resume,
            self._phase,
            len(self._processed_ids),
        )
        return True

    async def _restore(self) -> None:
        checkpoint = await self.checkpoints.load_latest_checkpoint()
        quick_state = await self.checkpoints.load_quick_state()
        if checkpoint is not None:
            self._phase = checkpoint.phase
            self._batch = checkpoint.batch
            self._stats = dict(checkpoint.stats)
            self._total_count = self._total_count or checkpoint.total_count
            self._add_processed(checkpoint.processed_ids)
        if quick_state is not None:
            # The quick state is written after every batch and may be ahead
            if quick_state.batch >= self._batch:
                self._phase = quick_state.phase
                self._batch = quick_state.batch
            self._add_processed(quick_state.processed_ids)
        if checkpoint or quick_state:
            await self.change_log.set_phase(self._phase)
            logger.info(
                "Resuming migration %s at phase %s, batch %d",
                self.migration_id,
                self._phase,
                self._batch,
            )

    def _add_processed(self, ids: Iterable[ItemId]) -> list[ItemId]:
        new = [i for i in dict.fromkeys(ids) if i not in self._processed_set]
        self._processed_ids = merge_ids(self._processed_ids, new)
        self._processed_set.update(new)
        return new

    def _snapshot(self, **overrides: Any) -> Checkpoint:
        data: dict[str, Any] = {
            "phase": self._phase,
            "processed_ids": self._processed_ids,
            "batch": self._batch,
            "total_count": self._total_count,
            "stats": self._stats,
        }
        data.update(overrides)
        return Checkpoint(**data)

    async def enter_phase(self, phase: str) -> None:
        """Switch the change log to ``phase`` and checkpoint the transition."""
        self._require_started()
        await self.change_log.set_phase(phase)
        self._phase = phase
        await self.checkpoints.save_checkpoint(self._snapshot())
        logger.info("Migration %s entered phase %s", self.migration_id, phase)

    async def record_batch(
        self,
        processed_ids: Iterable[ItemId],
        stats: dict[str, Any] | None = None,
    ) -> None:
        """
        Record a finished batch.

        Always updates the quick state. Every ``checkpoint_every_batches``
        batches it also flushes the change log, writes a full checkpoint and
        renews the lock.

        Raises:
            LockLostError: If the lock was lost; stop work immediately
        """
        self._require_started()
        self._batch += 1
        new_ids = self._add_processed(processed_ids)
        if stats:
            self._stats.update(stats)
        await self.checkpoints.save_quick_state(
            {
                "phase": self._phase,
                "batch": self._batch,
                "processed_ids": self._processed_ids,
                "stats": self._stats,
            }
        )
        logger.debug(
            "Migration %s batch %d: %d new items processed",
            self.migration_id,
            self._batch,
            len(new_ids),
        )
        if self._batch % self.settings.checkpoint_every_batches == 0:
            await self.checkpoint()

    async def checkpoint(self) -> None:
        """
        Flush the change log, write a full checkpoint and renew the lock.

        Raises:
            LockLostError: If the lock could not be renewed
        """
        self._require_started()
        await self.change_log.flush()
        await self.checkpoints.save_checkpoint(self._snapshot())
        if not await self.lock.refresh():
            raise LockLostError(
                "Migration lock was lost; stopping run",
                migration_id=self.migration_id,
            )

    async def complete(self) -> None:
        """Finalize a successful run and release the lock."""
        self._require_started()
        try:
            await self.change_log.set_phase(COMPLETE_PHASE)
            await self.change_log.flush()
            self._phase = COMPLETE_PHASE
            await self.checkpoints.save_checkpoint(self._snapshot(completed=True))
            await self.checkpoints.mark_migration_completed()
            await self.checkpoints.cleanup_old_checkpoints()
        finally:
            await self._finish()
        logger.info(
            "Migration %s completed: %d items processed, retries %s",
            self.migration_id,
            len(self._processed_ids),
            self.recovery.get_retry_stats(),
        )

    async def fail(self, error: BaseException) -> None:
        """
        Record a fatal error and release the lock.

        Secondary persistence failures are logged; the original error is
        what the caller re-raises.
        """
        message = str(error) or type(error).__name__
        try:
            try:
                await self.change_log.flush()
            except PersistenceError as e:
                logger.error(
                    "Could not flush change log of failed run %s: %s", self.migration_id, e
                )
            try:
                await self.checkpoints.save_checkpoint(self._snapshot(error=message))
            except PersistenceError as e:
                logger.error("Could not checkpoint failed run %s: %s", self.migration_id, e)
            await self.checkpoints.mark_migration_failed(message)
        finally:
            await self._finish()
        logger.error("Migration %s failed: %s", self.migration_id, message)

    async def interrupt(self) -> None:
        """Save progress, mark the run paused and release the lock."""
        try:
            try:
                await self.change_log.flush()
                await self.checkpoints.save_checkpoint(self._snapshot())
            except PersistenceError as e:
                logger.error(
                    "Could not save progress of interrupted run %s: %s", self.migration_id, e
                )
            await self.checkpoints.mark_migration_paused()
        finally:
            await self._finish()
        logger.warning("Migration %s interrupted at batch %d", self.migration_id, self._batch)

    async def _finish(self) -> None:
        self._started = False
        await self.lock.release()

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError(f"Migration run {self.migration_id} has not been started")

    @asynccontextmanager
    async def session(
        self,
        *,
        resume: bool = False,
        total_count: int = 0,
        command: str | None = None,
        session_id: str | None = None,
        timeout_seconds: float | None = None,
    ) -> AsyncIterator[MigrationRun]:
        """
        Run a block as a migration session.

        Raises:
            LockAcquisitionError: If another migration holds the lock
        """
        started = await self.start(
            resume=resume,
            total_count=total_count,
            command=command,
            session_id=session_id,
            timeout_seconds=timeout_seconds,
        )
        if not started:
            holder = await self.lock.get_holder()
            raise LockAcquisitionError(
                self.lock.lock_name,
                self.migration_id,
                self.settings.lock_acquire_timeout_seconds
                if timeout_seconds is None
                else timeout_seconds,
                holder=holder.migration_id if holder else None,
            )
        try:
            yield self
        except Exception as e:
            await self.fail(e)
            raise
        except BaseException:
            await self.interrupt()
            raise
        await self.complete()


__all__ = ["COMPLETE_PHASE", "MigrationRun"]
