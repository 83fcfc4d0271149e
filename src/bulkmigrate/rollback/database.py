"""
Whole-database restore from a pre-migration backup.

The coarse rollback path: instead of reversing entries one by one, replay
the SQL backup taken before the migration started. The restore is
all-or-nothing. It runs in one transaction with referential-integrity
checks disabled, and the checks are switched back on whether the restore
commits or fails.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncEngine

from bulkmigrate.exceptions import (
    BackupNotFoundError,
    BackupVerificationError,
    DatabaseRestoreError,
)
from bulkmigrate.observability import (
    ATTR_DB_SYSTEM,
    ATTR_MIGRATION_ID,
    Tracer,
    create_tracer,
)
from bulkmigrate.rollback.report import RestorePlan, RestoreResult, format_estimate
from bulkmigrate.types import validate_migration_id

logger = logging.getLogger(__name__)

BACKUP_KEYWORD_LINES = 100
BACKUP_SCAN_BYTES = 8192
BYTES_PER_SECOND_ESTIMATE = 5 * 1024 * 1024

_SQL_KEYWORD = re.compile(r"^\s*(CREATE|INSERT|UPDATE|DELETE|DROP|ALTER|USE)\b", re.IGNORECASE)
_SUSPICIOUS_PATTERNS: tuple[str, ...] = (
    "into outfile",
    "into dumpfile",
    "load_file",
    "eval(",
    "exec(",
    "system(",
)
_TABLE_NAME = re.compile(
    r"\b(?:CREATE\s+TABLE(?:\s+IF\s+NOT\s+EXISTS)?|INSERT\s+INTO)\s+[`\"\[]?(\w+)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class IntegrityToggle:
    """SQL that switches referential-integrity enforcement off and on."""

    disable: str
    enable: str

    @classmethod
    def for_dialect(cls, dialect: str) -> IntegrityToggle:
        """
        Toggle statements for a SQLAlchemy dialect name.

        Raises:
            ValueError: For a dialect with no known toggle
        """
        if dialect in ("mysql", "mariadb"):
            return cls("SET FOREIGN_KEY_CHECKS=0", "SET FOREIGN_KEY_CHECKS=1")
        if dialect == "sqlite":
            return cls("PRAGMA foreign_keys=OFF", "PRAGMA foreign_keys=ON")
        if dialect == "postgresql":
            return cls(
                "SET session_replication_role = replica",
                "SET session_replication_role = DEFAULT",
            )
        raise ValueError(f"No integrity-check toggle known for dialect {dialect!r}")


def split_statements(script: str) -> list[str]:
    """
    Split a dump into statements on ``;`` at end of line.

    ``--`` comment lines and blank statements are dropped.
    """
    statements: list[str] = []
    for chunk in re.split(r";\s*\n", script):
        lines = [line for line in chunk.splitlines() if not line.lstrip().startswith("--")]
        statement = "\n".join(lines).strip().rstrip(";").strip()
        if statement:
            statements.append(statement)
    return statements


class DatabaseRestorer:
    """
    Restores ``<backup_dir>/migration_<id>_db_backup.sql`` into a database.

    Args:
        engine: Target database engine
        backup_dir: Directory holding the backups; files outside it are refused
        integrity_toggle: Statements to disable/enable integrity checks
            (defaults to the engine dialect's toggle)
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing

    Example:
        >>> restorer = DatabaseRestorer(engine, Path("storage/migration-backups"))
        >>> plan = await restorer.plan("mig-2024-06-01")
        >>> await restorer.restore("mig-2024-06-01")
    """

    def __init__(
        self,
        engine: AsyncEngine,
        backup_dir: Path | str,
        *,
        integrity_toggle: IntegrityToggle | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._engine = engine
        self.backup_dir = Path(backup_dir)
        self._db_system = engine.dialect.name
        self._toggle = integrity_toggle or IntegrityToggle.for_dialect(self._db_system)
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def backup_path(self, migration_id: str) -> Path:
        """Expected backup file of a migration."""
        return self.backup_dir / f"migration_{validate_migration_id(migration_id)}_db_backup.sql"

    def _existing_backup(self, migration_id: str) -> Path:
        path = self.backup_path(migration_id)
        if not path.is_file():
            raise BackupNotFoundError(path, migration_id=migration_id)
        return path

    async def plan(self, migration_id: str) -> RestorePlan:
        """
        Describe the restore without touching the database.

        Raises:
            BackupNotFoundError: If the backup file does not exist
        """
        path = self._existing_backup(migration_id)
        size = path.stat().st_size
        script = await asyncio.to_thread(path.read_text, encoding="utf-8")
        tables = list(dict.fromkeys(m.group(1) for m in _TABLE_NAME.finditer(script)))
        return RestorePlan(
            migration_id=migration_id,
            backup_file=path,
            backup_size=size,
            tables=tables,
            estimated_time=format_estimate(size / BYTES_PER_SECOND_ESTIMATE),
        )

    def verify_backup(self, path: Path, migration_id: str | None = None) -> None:
        """
        Check that a backup file is safe to execute.

        Raises:
            BackupVerificationError: On the first failed check
        """

        def fail(reason: str) -> BackupVerificationError:
            return BackupVerificationError(path, reason, migration_id=migration_id)

        resolved = path.resolve()
        if not resolved.is_relative_to(self.backup_dir.resolve()):
            raise fail("file is outside the backup directory")
        if resolved.suffix.lower() != ".sql":
            raise fail("file does not have a .sql extension")
        if resolved.stat().st_size == 0:
            raise fail("file is empty")

        with resolved.open("r", encoding="utf-8", errors="replace") as f:
            head = f.read(BACKUP_SCAN_BYTES)
            f.seek(0)
            has_keyword = False
            for line_number, line in enumerate(f):
                if line_number >= BACKUP_KEYWORD_LINES:
                    break
                if _SQL_KEYWORD.match(line):
                    has_keyword = True
                    break
        if not has_keyword:
            raise fail(f"no SQL statements in the first {BACKUP_KEYWORD_LINES} lines")

        lowered = head.lower()
        for pattern in _SUSPICIOUS_PATTERNS:
            if pattern in lowered:
                raise fail(f"suspicious content: {pattern!r}")

    async def restore(self, migration_id: str) -> RestoreResult:
        """
        Execute the backup in a single transaction.

        Integrity checks are disabled for the duration and re-enabled on
        every exit path, including failures.

        Raises:
            BackupNotFoundError: If the backup file does not exist
            BackupVerificationError: If the backup fails safety checks
            DatabaseRestoreError: If any statement fails; the transaction
                is rolled back first
        """
        path = self._existing_backup(migration_id)
        await asyncio.to_thread(self.verify_backup, path, migration_id)
        script = await asyncio.to_thread(path.read_text, encoding="utf-8")
        statements = split_statements(script)

        with self._tracer.span(
            "bulkmigrate.rollback.restore_database",
            {ATTR_MIGRATION_ID: migration_id, ATTR_DB_SYSTEM: self._db_system},
        ):
            started = time.monotonic()
            logger.warning(
                "Restoring database from %s (%d statements) for migration %s",
                path,
                len(statements),
                migration_id,
            )
            executed = await self._execute(statements, migration_id)
            duration = time.monotonic() - started

        logger.info(
            "Database restored from %s in %.1fs (%d statements)",
            path,
            duration,
            executed,
        )
        return RestoreResult(
            migration_id=migration_id,
            backup_file=path,
            statements_executed=executed,
            duration_seconds=duration,
        )

    async def _execute(self, statements: list[str], migration_id: str) -> int:
        executed = 0
        async with self._engine.connect() as conn:
            trans = await conn.begin()
            checks_disabled = False
            try:
                await conn.exec_driver_sql(self._toggle.disable)
                checks_disabled = True
                for statement in statements:
                    await conn.exec_driver_sql(statement)
                    executed += 1
                await conn.exec_driver_sql(self._toggle.enable)
                checks_disabled = False
                await trans.commit()
            except Exception as e:
                logger.error(
                    "Database restore failed after %d of %d statements, rolling back: %s",
                    executed,
                    len(statements),
                    e,
                )
                await trans.rollback()
                raise DatabaseRestoreError(
                    f"Database restore failed at statement {executed + 1}: {e}",
                    migration_id=migration_id,
                ) from e
            finally:
                if checks_disabled:
                    try:
                        await conn.exec_driver_sql(self._toggle.enable)
                        logger.info("Re-enabled integrity checks after failed restore")
                    except Exception as e:
                        logger.error(
                            "Could not re-enable integrity checks for %s: %s", migration_id, e
                        )
        return executed


__all__ = [
    "DatabaseRestorer",
    "IntegrityToggle",
    "split_statements",
]
