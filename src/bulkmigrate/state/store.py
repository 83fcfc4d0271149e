"""
Shared migration-state stores.

One upsert-by-key record per migration ID. Dashboards and pollers in other
processes read it; the checkpoint manager of the running migration writes it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from bulkmigrate._connection import dialect_name, execute_with_connection
from bulkmigrate.clock import Clock, SystemClock
from bulkmigrate.exceptions import StateStoreError
from bulkmigrate.observability import (
    ATTR_DB_SYSTEM,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_STATUS,
    Tracer,
    create_tracer,
)
from bulkmigrate.serialization import json_dumps, json_loads
from bulkmigrate.state.models import MigrationState, MigrationStatus

logger = logging.getLogger(__name__)


@runtime_checkable
class MigrationStateStore(Protocol):
    """Keyed persistence for MigrationState records."""

    async def save_state(self, state: MigrationState) -> None:
        """Insert or replace the record for ``state.migration_id``."""
        ...

    async def get_state(self, migration_id: str) -> MigrationState | None:
        """The record for ``migration_id``, or None."""
        ...

    async def update_status(
        self,
        migration_id: str,
        status: MigrationStatus,
        error_message: str | None = None,
    ) -> bool:
        """
        Set the status of an existing record.

        ``completed_at`` is stamped for terminal statuses.

        Returns:
            False if no record exists
        """
        ...

    async def list_running(self) -> list[MigrationState]:
        """Records with status RUNNING, most recently updated first."""
        ...

    async def get_latest(self) -> MigrationState | None:
        """The most recently updated record of any status."""
        ...

    async def cleanup_old_states(self, older_than_days: int = 7) -> int:
        """Delete finished records not updated for ``older_than_days``. Returns count."""
        ...


class InMemoryMigrationStateStore:
    """Dict-backed state store for tests and single-process use."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._states: dict[str, MigrationState] = {}
        self._clock = clock or SystemClock()
        self._lock = asyncio.Lock()

    async def save_state(self, state: MigrationState) -> None:
        async with self._lock:
            existing = self._states.get(state.migration_id)
            started_at = (existing.started_at if existing else None) or state.started_at
            self._states[state.migration_id] = replace(
                state,
                started_at=started_at or self._clock.now(),
                last_updated_at=self._clock.now(),
            )

    async def get_state(self, migration_id: str) -> MigrationState | None:
        async with self._lock:
            return self._states.get(migration_id)

    async def update_status(
        self,
        migration_id: str,
        status: MigrationStatus,
        error_message: str | None = None,
    ) -> bool:
        async with self._lock:
            existing = self._states.get(migration_id)
            if existing is None:
                return False
            now = self._clock.now()
            self._states[migration_id] = replace(
                existing,
                status=status,
                error_message=error_message or existing.error_message,
                last_updated_at=now,
                completed_at=now if status.is_terminal else existing.completed_at,
            )
            return True

    async def list_running(self) -> list[MigrationState]:
        async with self._lock:
            running = [s for s in self._states.values() if s.status is MigrationStatus.RUNNING]
        return sorted(running, key=_updated_key, reverse=True)

    async def get_latest(self) -> MigrationState | None:
        async with self._lock:
            states = list(self._states.values())
        return max(states, key=_updated_key, default=None)

    async def cleanup_old_states(self, older_than_days: int = 7) -> int:
        cutoff = self._clock.now() - timedelta(days=older_than_days)
        async with self._lock:
            stale = [
                migration_id
                for migration_id, state in self._states.items()
                if state.status is not MigrationStatus.RUNNING
                and state.last_updated_at is not None
                and state.last_updated_at < cutoff
            ]
            for migration_id in stale:
                del self._states[migration_id]
        return len(stale)


def _updated_key(state: MigrationState) -> datetime:
    return state.last_updated_at or datetime.min.replace(tzinfo=UTC)


def _to_epoch(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _from_epoch(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, tz=UTC) if value is not None else None


_COLUMNS = (
    "migration_id, status, phase, processed_count, total_count, current_batch, "
    "stats, error_message, pid, session_id, command, checkpoint_file, "
    "started_at, last_updated_at, completed_at"
)


class SQLAlchemyMigrationStateStore:
    """
    State store backed by the ``migration_state`` table (PostgreSQL or SQLite).

    ``stats`` is stored as JSON text; timestamps as epoch seconds.

    Example:
        >>> store = SQLAlchemyMigrationStateStore(engine)
        >>> running = await store.list_running()
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        *,
        table_name: str = "migration_state",
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._conn = conn
        self._table = table_name
        self._clock = clock or SystemClock()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._db_system = dialect_name(conn)

    async def save_state(self, state: MigrationState) -> None:
        with self._tracer.span(
            "bulkmigrate.state_store.save_state",
            {
                ATTR_MIGRATION_ID: state.migration_id,
                ATTR_MIGRATION_STATUS: state.status.value,
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            now = self._clock.now()
            query = text(f"""
                INSERT INTO {self._table} ({_COLUMNS})
                VALUES (
                    :migration_id, :status, :phase, :processed_count, :total_count,
                    :current_batch, :stats, :error_message, :pid, :session_id, :command,
                    :checkpoint_file, :started_at, :last_updated_at, :completed_at
                )
                ON CONFLICT (migration_id) DO UPDATE SET
                    status = excluded.status,
                    phase = excluded.phase,
                    processed_count = excluded.processed_count,
                    total_count = excluded.total_count,
                    current_batch = excluded.current_batch,
                    stats = excluded.stats,
                    error_message = excluded.error_message,
                    pid = excluded.pid,
                    session_id = excluded.session_id,
                    command = excluded.command,
                    checkpoint_file = excluded.checkpoint_file,
                    started_at = COALESCE({self._table}.started_at, excluded.started_at),
                    last_updated_at = excluded.last_updated_at,
                    completed_at = excluded.completed_at
            """)  # nosec B608 - table name is set at construction, not user input
            params = {
                "migration_id": state.migration_id,
                "status": state.status.value,
                "phase": state.phase,
                "processed_count": state.processed_count,
                "total_count": state.total_count,
                "current_batch": state.current_batch,
                "stats": json_dumps(state.stats),
                "error_message": state.error_message,
                "pid": state.pid,
                "session_id": state.session_id,
                "command": state.command,
                "checkpoint_file": state.checkpoint_file,
                "started_at": _to_epoch(state.started_at or now),
                "last_updated_at": _to_epoch(now),
                "completed_at": _to_epoch(state.completed_at),
            }
            try:
                async with execute_with_connection(self._conn) as conn:
                    await conn.execute(query, params)
            except SQLAlchemyError as e:
                raise StateStoreError(
                    f"Failed to save migration state: {e}",
                    migration_id=state.migration_id,
                ) from e

    async def get_state(self, migration_id: str) -> MigrationState | None:
        with self._tracer.span(
            "bulkmigrate.state_store.get_state",
            {ATTR_MIGRATION_ID: migration_id, ATTR_DB_SYSTEM: self._db_system},
        ):
            rows = await self._select(
                f"SELECT {_COLUMNS} FROM {self._table} "  # nosec B608
                "WHERE migration_id = :migration_id",
                {"migration_id": migration_id},
            )
            return rows[0] if rows else None

    async def update_status(
        self,
        migration_id: str,
        status: MigrationStatus,
        error_message: str | None = None,
    ) -> bool:
        with self._tracer.span(
            "bulkmigrate.state_store.update_status",
            {
                ATTR_MIGRATION_ID: migration_id,
                ATTR_MIGRATION_STATUS: status.value,
                ATTR_DB_SYSTEM: self._db_system,
            },
        ):
            now = _to_epoch(self._clock.now())
            query = text(f"""
                UPDATE {self._table}
                SET status = :status,
                    error_message = COALESCE(:error_message, error_message),
                    last_updated_at = :now,
                    completed_at = CASE WHEN :terminal = 1 THEN :now ELSE completed_at END
                WHERE migration_id = :migration_id
            """)  # nosec B608 - table name is set at construction, not user input
            try:
                async with execute_with_connection(self._conn) as conn:
                    result = await conn.execute(
                        query,
                        {
                            "status": status.value,
                            "error_message": error_message,
                            "now": now,
                            "terminal": 1 if status.is_terminal else 0,
                            "migration_id": migration_id,
                        },
                    )
                    return bool(result.rowcount)
            except SQLAlchemyError as e:
                raise StateStoreError(
                    f"Failed to update migration status: {e}",
                    migration_id=migration_id,
                ) from e

    async def list_running(self) -> list[MigrationState]:
        return await self._select(
            f"SELECT {_COLUMNS} FROM {self._table} "  # nosec B608
            "WHERE status = :status ORDER BY last_updated_at DESC",
            {"status": MigrationStatus.RUNNING.value},
        )

    async def get_latest(self) -> MigrationState | None:
        rows = await self._select(
            f"SELECT {_COLUMNS} FROM {self._table} "  # nosec B608
            "ORDER BY last_updated_at DESC LIMIT 1",
            {},
        )
        return rows[0] if rows else None

    async def cleanup_old_states(self, older_than_days: int = 7) -> int:
        cutoff = self._clock.now() - timedelta(days=older_than_days)
        query = text(f"""
            DELETE FROM {self._table}
            WHERE status <> :running AND last_updated_at < :cutoff
        """)  # nosec B608 - table name is set at construction, not user input
        try:
            async with execute_with_connection(self._conn) as conn:
                result = await conn.execute(
                    query,
                    {"running": MigrationStatus.RUNNING.value, "cutoff": _to_epoch(cutoff)},
                )
                deleted = result.rowcount or 0
        except SQLAlchemyError as e:
            raise StateStoreError(f"Failed to clean up migration states: {e}") from e
        if deleted:
            logger.info(
                "Removed %d migration state records older than %d days",
                deleted,
                older_than_days,
            )
        return deleted

    async def _select(self, sql: str, params: dict[str, Any]) -> list[MigrationState]:
        try:
            async with execute_with_connection(self._conn, transactional=False) as conn:
                result = await conn.execute(text(sql), params)
                rows = result.fetchall()
        except SQLAlchemyError as e:
            raise StateStoreError(f"Failed to read migration state: {e}") from e
        return [self._row_to_state(row) for row in rows]

    @staticmethod
    def _row_to_state(row: Any) -> MigrationState:
        return MigrationState(
            migration_id=row[0],
            status=MigrationStatus(row[1]),
            phase=row[2],
            processed_count=row[3] or 0,
            total_count=row[4] or 0,
            current_batch=row[5] or 0,
            stats=json_loads(row[6]) if row[6] else {},
            error_message=row[7],
            pid=row[8],
            session_id=row[9],
            command=row[10],
            checkpoint_file=row[11],
            started_at=_from_epoch(row[12]),
            last_updated_at=_from_epoch(row[13]),
            completed_at=_from_epoch(row[14]),
        )


__all__ = [
    "MigrationStateStore",
    "InMemoryMigrationStateStore",
    "SQLAlchemyMigrationStateStore",
]
