"""
Single-runner mutual exclusion for migrations.

Two independent entry points (a console command and a queued background
job) may both try to start a migration. A :class:`MigrationLock` lets
exactly one of them proceed. The lock is a record with an expiry, so a
process that dies without releasing it blocks others only until
``lock_timeout_seconds`` have passed.

Usage:
    >>> lock = MigrationLock("mig-2024-06-01", SQLAlchemyLockStore(engine))
    >>> if not await lock.acquire(timeout_seconds=5):
    ...     raise SystemExit("another migration is running")
    >>> try:
    ...     await run_phases()
    ...     if not await lock.refresh():
    ...         raise SystemExit("lock lost")
    ... finally:
    ...     await lock.release()
"""

from __future__ import annotations

import logging
import os
import socket
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from bulkmigrate.clock import Clock, SystemClock
from bulkmigrate.config import MigrationSettings
from bulkmigrate.exceptions import LockAcquisitionError
from bulkmigrate.locks.store import LockRecord, LockStore
from bulkmigrate.observability import (
    ATTR_LOCK_ACQUIRED,
    ATTR_LOCK_NAME,
    ATTR_LOCK_OWNER,
    ATTR_LOCK_TIMEOUT,
    ATTR_MIGRATION_ID,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

DEFAULT_LOCK_NAME = "migration_lock"


def default_owner() -> str:
    """Identity tag for the current process: ``"<hostname>:<pid>"``."""
    return f"{socket.gethostname()}:{os.getpid()}"


class MigrationLock:
    """
    Lock guarding a single migration run.

    Args:
        migration_id: Migration the lock is acquired for
        store: Persistence for the lock record
        lock_name: Singleton key shared by all migrations
        lock_timeout_seconds: Record lifetime; ``refresh`` extends it
        poll_interval: Seconds between acquire attempts
        owner: Process identity tag (defaults to host:pid)
        clock: Time source (tests pass a FakeClock)
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        migration_id: str,
        store: LockStore,
        *,
        lock_name: str = DEFAULT_LOCK_NAME,
        lock_timeout_seconds: float = 43200,
        poll_interval: float = 0.5,
        owner: str | None = None,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")
        self.migration_id = migration_id
        self.lock_name = lock_name
        self.owner = owner or default_owner()
        self._store = store
        self._lock_timeout = timedelta(seconds=lock_timeout_seconds)
        self._poll_interval = poll_interval
        self._clock = clock or SystemClock()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._held = False

    @classmethod
    def from_settings(
        cls,
        migration_id: str,
        store: LockStore,
        settings: MigrationSettings,
        **kwargs: object,
    ) -> MigrationLock:
        """Create a lock using the timeouts from ``settings``."""
        return cls(
            migration_id,
            store,
            lock_name=settings.lock_name,
            lock_timeout_seconds=settings.lock_timeout_seconds,
            poll_interval=settings.lock_poll_interval_seconds,
            **kwargs,  # type: ignore[arg-type]
        )

    @property
    def is_locked(self) -> bool:
        """True while this instance believes it holds the lock."""
        return self._held

    async def acquire(
        self,
        timeout_seconds: float = 3.0,
        allow_resume_same_id: bool = False,
    ) -> bool:
        """
        Try to take the lock, polling until ``timeout_seconds`` elapse.

        At least one attempt is always made, even with a zero timeout.
        Contention is a normal outcome and is reported as ``False``.

        Args:
            timeout_seconds: Maximum time to keep polling
            allow_resume_same_id: Accept a live record that already belongs
                to this migration ID (crash resume). The record is left
                unchanged.

        Returns:
            True if the lock is held by this migration
        """
        with self._tracer.span(
            "bulkmigrate.lock.acquire",
            {
                ATTR_LOCK_NAME: self.lock_name,
                ATTR_MIGRATION_ID: self.migration_id,
                ATTR_LOCK_OWNER: self.owner,
                ATTR_LOCK_TIMEOUT: timeout_seconds,
            },
        ) as span:
            deadline = self._clock.monotonic() + timeout_seconds
            holder: LockRecord | None = None
            while True:
                acquired, holder = await self._attempt(allow_resume_same_id)
                if acquired:
                    self._held = True
                    if span:
                        span.set_attribute(ATTR_LOCK_ACQUIRED, True)
                    return True

                remaining = deadline - self._clock.monotonic()
                if remaining <= 0:
                    break
                await self._clock.sleep(min(self._poll_interval, remaining))

            if span:
                span.set_attribute(ATTR_LOCK_ACQUIRED, False)
            logger.info(
                "Could not acquire lock %s for migration %s within %.1fs (held by %s)",
                self.lock_name,
                self.migration_id,
                timeout_seconds,
                holder.migration_id if holder else "unknown",
            )
            return False

    async def _attempt(self, allow_resume_same_id: bool) -> tuple[bool, LockRecord | None]:
        now = self._clock.now()
        record = LockRecord(
            lock_name=self.lock_name,
            migration_id=self.migration_id,
            acquired_at=now,
            owner=self.owner,
            expires_at=now + self._lock_timeout,
        )
        if await self._store.try_acquire(record, now):
            logger.info(
                "Acquired lock %s for migration %s (owner %s, expires %s)",
                self.lock_name,
                self.migration_id,
                self.owner,
                record.expires_at.isoformat(),
            )
            return True, record

        current = await self._store.get(self.lock_name)
        if current is None or current.is_expired(now):
            # Released or expired between the two calls; next attempt takes it
            return False, current
        if allow_resume_same_id and current.migration_id == self.migration_id:
            logger.info(
                "Resuming migration %s under existing lock held by %s",
                self.migration_id,
                current.owner,
            )
            return True, current
        return False, current

    async def refresh(self) -> bool:
        """
        Extend the lock's expiry.

        Returns:
            False if the lock is no longer held by this migration. Callers
            must stop work immediately when this happens.
        """
        with self._tracer.span(
            "bulkmigrate.lock.refresh",
            {ATTR_LOCK_NAME: self.lock_name, ATTR_MIGRATION_ID: self.migration_id},
        ):
            if not self._held:
                return False
            now = self._clock.now()
            extended = await self._store.extend(
                self.lock_name,
                self.migration_id,
                now + self._lock_timeout,
                now,
            )
            if not extended:
                self._held = False
                logger.warning(
                    "Lock %s lost by migration %s; stop processing",
                    self.lock_name,
                    self.migration_id,
                )
            return extended

    async def release(self) -> None:
        """
        Release the lock if this migration owns it.

        Safe to call any number of times. Store failures are logged and
        left to lock expiry.
        """
        with self._tracer.span(
            "bulkmigrate.lock.release",
            {ATTR_LOCK_NAME: self.lock_name, ATTR_MIGRATION_ID: self.migration_id},
        ):
            self._held = False
            try:
                deleted = await self._store.delete(self.lock_name, self.migration_id)
            except Exception as e:
                logger.warning(
                    "Failed to release lock %s for migration %s: %s",
                    self.lock_name,
                    self.migration_id,
                    e,
                    exc_info=True,
                )
                return
            if deleted:
                logger.info("Released lock %s for migration %s", self.lock_name, self.migration_id)

    async def get_holder(self) -> LockRecord | None:
        """Return the current lock record, whoever holds it."""
        return await self._store.get(self.lock_name)

    @asynccontextmanager
    async def held(
        self,
        timeout_seconds: float = 3.0,
        allow_resume_same_id: bool = False,
    ) -> AsyncIterator[MigrationLock]:
        """
        Hold the lock for the duration of a block.

        Raises:
            LockAcquisitionError: If the lock could not be acquired in time

        Example:
            >>> async with lock.held(timeout_seconds=5):
            ...     await run_phases()
        """
        if not await self.acquire(timeout_seconds, allow_resume_same_id):
            holder = await self.get_holder()
            raise LockAcquisitionError(
                self.lock_name,
                self.migration_id,
                timeout_seconds,
                holder=holder.migration_id if holder else None,
            )
        try:
            yield self
        finally:
            await self.release()


__all__ = [
    "DEFAULT_LOCK_NAME",
    "MigrationLock",
    "default_owner",
]
