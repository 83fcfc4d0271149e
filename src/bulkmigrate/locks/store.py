"""
Lock record stores.

A lock store holds at most one record per lock name. ``try_acquire`` is the
only write that can create or take over a record and it is atomic: when
several processes race for an absent or expired record, exactly one of them
sees ``True``.

Ownership is keyed by migration ID rather than process identity, so a run
resumed in a new process (after ``acquire(allow_resume_same_id=True)``) can
still refresh and release the record its predecessor created.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from bulkmigrate._connection import dialect_name, execute_with_connection
from bulkmigrate.exceptions import LockStoreError
from bulkmigrate.observability import (
    ATTR_DB_SYSTEM,
    ATTR_LOCK_NAME,
    ATTR_MIGRATION_ID,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockRecord:
    """
    The singleton lock record.

    Attributes:
        lock_name: Fixed key of the record (one live record per name)
        migration_id: Migration that owns the lock
        acquired_at: When the record was created
        owner: Process identity tag ("<host>:<pid>") for diagnostics
        expires_at: After this instant the record is stale and reclaimable
    """

    lock_name: str
    migration_id: str
    acquired_at: datetime
    owner: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        """True once ``now`` has reached ``expires_at``."""
        return self.expires_at <= now


@runtime_checkable
class LockStore(Protocol):
    """Persistence for lock records."""

    async def get(self, lock_name: str) -> LockRecord | None:
        """Return the current record for ``lock_name``, live or expired."""
        ...

    async def try_acquire(self, record: LockRecord, now: datetime) -> bool:
        """
        Atomically write ``record`` if no record exists or the existing one
        has expired at ``now``.

        Returns:
            True if ``record`` is now the stored record
        """
        ...

    async def extend(
        self,
        lock_name: str,
        migration_id: str,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        """
        Move ``expires_at`` forward if the live record belongs to ``migration_id``.

        Returns:
            False if the record is gone, expired or owned by another migration
        """
        ...

    async def delete(self, lock_name: str, migration_id: str) -> bool:
        """
        Delete the record if it belongs to ``migration_id``.

        Returns:
            True if a record was deleted
        """
        ...


class InMemoryLockStore:
    """
    In-process lock store for tests and single-process tooling.

    An ``asyncio.Lock`` serializes the compare-and-swap so concurrent
    ``acquire`` calls from tasks in one event loop resolve to one winner.
    """

    def __init__(self) -> None:
        self._records: dict[str, LockRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, lock_name: str) -> LockRecord | None:
        async with self._lock:
            return self._records.get(lock_name)

    async def try_acquire(self, record: LockRecord, now: datetime) -> bool:
        async with self._lock:
            current = self._records.get(record.lock_name)
            if current is not None and not current.is_expired(now):
                return False
            self._records[record.lock_name] = record
            return True

    async def extend(
        self,
        lock_name: str,
        migration_id: str,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        async with self._lock:
            current = self._records.get(lock_name)
            if current is None or current.migration_id != migration_id:
                return False
            if current.is_expired(now):
                return False
            self._records[lock_name] = replace(current, expires_at=expires_at)
            return True

    async def delete(self, lock_name: str, migration_id: str) -> bool:
        async with self._lock:
            current = self._records.get(lock_name)
            if current is None or current.migration_id != migration_id:
                return False
            del self._records[lock_name]
            return True

    async def clear(self) -> None:
        """Remove all records. Useful for test isolation."""
        async with self._lock:
            self._records.clear()


def _to_epoch(value: datetime) -> float:
    return value.timestamp()


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=UTC)


class SQLAlchemyLockStore:
    """
    Lock store backed by the ``migration_locks`` table.

    Works on PostgreSQL and SQLite (3.24+), both of which support
    ``INSERT ... ON CONFLICT DO UPDATE ... WHERE``. The guarded upsert is a
    single statement, so the database's uniqueness constraint on
    ``lock_name`` decides races. Timestamps are stored as epoch seconds to
    keep comparisons identical on both backends.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://...")
        >>> store = SQLAlchemyLockStore(engine)
        >>> lock = MigrationLock("mig-2024-06-01", store)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        *,
        table_name: str = "migration_locks",
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._conn = conn
        self._table = table_name
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._db_system = dialect_name(conn)

    def _attrs(self, lock_name: str, migration_id: str | None = None) -> dict[str, Any]:
        attrs: dict[str, Any] = {ATTR_LOCK_NAME: lock_name, ATTR_DB_SYSTEM: self._db_system}
        if migration_id is not None:
            attrs[ATTR_MIGRATION_ID] = migration_id
        return attrs

    async def get(self, lock_name: str) -> LockRecord | None:
        with self._tracer.span("bulkmigrate.lock_store.get", self._attrs(lock_name)):
            query = text(f"""
                SELECT lock_name, migration_id, acquired_at, owner, expires_at
                FROM {self._table}
                WHERE lock_name = :lock_name
            """)  # nosec B608 - table name is set at construction, not user input
            try:
                async with execute_with_connection(self._conn, transactional=False) as conn:
                    result = await conn.execute(query, {"lock_name": lock_name})
                    row = result.fetchone()
            except SQLAlchemyError as e:
                raise LockStoreError(f"Failed to read lock '{lock_name}': {e}") from e

            if row is None:
                return None
            return LockRecord(
                lock_name=row[0],
                migration_id=row[1],
                acquired_at=_from_epoch(row[2]),
                owner=row[3],
                expires_at=_from_epoch(row[4]),
            )

    async def try_acquire(self, record: LockRecord, now: datetime) -> bool:
        with self._tracer.span(
            "bulkmigrate.lock_store.try_acquire",
            self._attrs(record.lock_name, record.migration_id),
        ):
            query = text(f"""
                INSERT INTO {self._table}
                    (lock_name, migration_id, acquired_at, owner, expires_at)
                VALUES (:lock_name, :migration_id, :acquired_at, :owner, :expires_at)
                ON CONFLICT (lock_name) DO UPDATE SET
                    migration_id = excluded.migration_id,
                    acquired_at = excluded.acquired_at,
                    owner = excluded.owner,
                    expires_at = excluded.expires_at
                WHERE {self._table}.expires_at <= :now
            """)  # nosec B608 - table name is set at construction, not user input
            params = {
                "lock_name": record.lock_name,
                "migration_id": record.migration_id,
                "acquired_at": _to_epoch(record.acquired_at),
                "owner": record.owner,
                "expires_at": _to_epoch(record.expires_at),
                "now": _to_epoch(now),
            }
            try:
                async with execute_with_connection(self._conn) as conn:
                    result = await conn.execute(query, params)
                    acquired = bool(result.rowcount)
            except IntegrityError:
                # A concurrent insert won the uniqueness check
                logger.debug("Lost race for lock %s", record.lock_name)
                return False
            except SQLAlchemyError as e:
                raise LockStoreError(f"Failed to acquire lock '{record.lock_name}': {e}") from e
            return acquired

    async def extend(
        self,
        lock_name: str,
        migration_id: str,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        with self._tracer.span(
            "bulkmigrate.lock_store.extend",
            self._attrs(lock_name, migration_id),
        ):
            query = text(f"""
                UPDATE {self._table}
                SET expires_at = :expires_at
                WHERE lock_name = :lock_name
                  AND migration_id = :migration_id
                  AND expires_at > :now
            """)  # nosec B608 - table name is set at construction, not user input
            try:
                async with execute_with_connection(self._conn) as conn:
                    result = await conn.execute(
                        query,
                        {
                            "lock_name": lock_name,
                            "migration_id": migration_id,
                            "expires_at": _to_epoch(expires_at),
                            "now": _to_epoch(now),
                        },
                    )
                    return bool(result.rowcount)
            except SQLAlchemyError as e:
                raise LockStoreError(f"Failed to refresh lock '{lock_name}': {e}") from e

    async def delete(self, lock_name: str, migration_id: str) -> bool:
        with self._tracer.span(
            "bulkmigrate.lock_store.delete",
            self._attrs(lock_name, migration_id),
        ):
            query = text(f"""
                DELETE FROM {self._table}
                WHERE lock_name = :lock_name AND migration_id = :migration_id
            """)  # nosec B608 - table name is set at construction, not user input
            try:
                async with execute_with_connection(self._conn) as conn:
                    result = await conn.execute(
                        query,
                        {"lock_name": lock_name, "migration_id": migration_id},
                    )
                    return bool(result.rowcount)
            except SQLAlchemyError as e:
                raise LockStoreError(f"Failed to release lock '{lock_name}': {e}") from e


__all__ = [
    "LockRecord",
    "LockStore",
    "InMemoryLockStore",
    "SQLAlchemyLockStore",
]
