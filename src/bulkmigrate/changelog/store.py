"""
Change-log stores.

A change log is an append-only sequence of entries per migration ID.
Stores never rewrite or truncate what has been appended.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from bulkmigrate.changelog.models import ChangeLogEntry, MigrationLogSummary
from bulkmigrate.types import validate_migration_id

logger = logging.getLogger(__name__)


@runtime_checkable
class ChangeLogStore(Protocol):
    """Append-only persistence for change-log entries."""

    async def append(self, migration_id: str, entries: Sequence[ChangeLogEntry]) -> None:
        """Durably append ``entries`` to the migration's log."""
        ...

    async def load(self, migration_id: str) -> list[ChangeLogEntry]:
        """All readable entries of a migration, in sequence order."""
        ...

    async def last_sequence(self, migration_id: str) -> int:
        """Highest persisted sequence number, or 0 for an empty log."""
        ...

    async def list_migrations(self) -> list[MigrationLogSummary]:
        """Summaries of every log in the store, most recently written first."""
        ...


class InMemoryChangeLogStore:
    """Change-log store kept in a dict. For tests and dry runs."""

    def __init__(self) -> None:
        self._logs: dict[str, list[ChangeLogEntry]] = {}
        self._modified: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def append(self, migration_id: str, entries: Sequence[ChangeLogEntry]) -> None:
        async with self._lock:
            self._logs.setdefault(migration_id, []).extend(entries)
            self._modified[migration_id] = datetime.now(UTC)

    async def load(self, migration_id: str) -> list[ChangeLogEntry]:
        async with self._lock:
            return sorted(self._logs.get(migration_id, []), key=lambda e: e.sequence)

    async def last_sequence(self, migration_id: str) -> int:
        async with self._lock:
            return max((e.sequence for e in self._logs.get(migration_id, [])), default=0)

    async def list_migrations(self) -> list[MigrationLogSummary]:
        async with self._lock:
            summaries = [
                MigrationLogSummary.from_entries(
                    migration_id,
                    sorted(entries, key=lambda e: e.sequence),
                    self._modified.get(migration_id),
                )
                for migration_id, entries in self._logs.items()
            ]
        return sorted(
            summaries,
            key=lambda s: s.last_modified or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )


class FileChangeLogStore:
    """
    JSON Lines change logs, one ``<migration_id>.jsonl`` file per run.

    Each append writes whole lines, then flushes and fsyncs before
    returning, so a returned ``append`` survives a crash. A torn final line
    left by a crash mid-write is skipped with a warning on load.

    File I/O runs in a worker thread to keep the event loop responsive.

    Example:
        >>> store = FileChangeLogStore(Path("storage/migration-changelogs"))
        >>> manager = ChangeLogManager("mig-2024-06-01", store)
    """

    SUFFIX = ".jsonl"

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def path_for(self, migration_id: str) -> Path:
        """Log file path for a migration ID."""
        return self.directory / f"{validate_migration_id(migration_id)}{self.SUFFIX}"

    async def append(self, migration_id: str, entries: Sequence[ChangeLogEntry]) -> None:
        if not entries:
            return
        lines = "".join(entry.model_dump_json() + "\n" for entry in entries)
        await asyncio.to_thread(self._append_sync, self.path_for(migration_id), lines)

    def _append_sync(self, path: Path, lines: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        if not _ends_with_newline(path):
            # Terminate a torn line so the first new entry starts on its own line
            lines = "\n" + lines
        with path.open("a", encoding="utf-8") as f:
            f.write(lines)
            f.flush()
            os.fsync(f.fileno())

    async def load(self, migration_id: str) -> list[ChangeLogEntry]:
        return await asyncio.to_thread(self._load_sync, self.path_for(migration_id))

    def _load_sync(self, path: Path) -> list[ChangeLogEntry]:
        if not path.exists():
            return []
        entries: list[ChangeLogEntry] = []
        with path.open("r", encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(ChangeLogEntry.model_validate_json(line))
                except ValidationError as e:
                    logger.warning(
                        "Skipping unreadable change-log line %d in %s: %s",
                        line_number,
                        path,
                        e.errors()[0]["msg"] if e.errors() else e,
                    )
        entries.sort(key=lambda e: e.sequence)
        return entries

    async def last_sequence(self, migration_id: str) -> int:
        entries = await self.load(migration_id)
        return entries[-1].sequence if entries else 0

    async def list_migrations(self) -> list[MigrationLogSummary]:
        return await asyncio.to_thread(self._list_sync)

    def _list_sync(self) -> list[MigrationLogSummary]:
        if not self.directory.exists():
            return []
        summaries: list[MigrationLogSummary] = []
        for path in self.directory.glob(f"*{self.SUFFIX}"):
            migration_id = path.name[: -len(self.SUFFIX)]
            try:
                validate_migration_id(migration_id)
            except ValueError:
                logger.debug("Ignoring change-log file with unexpected name: %s", path)
                continue
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)
            summaries.append(
                MigrationLogSummary.from_entries(migration_id, self._load_sync(path), modified)
            )
        summaries.sort(
            key=lambda s: s.last_modified or datetime.min.replace(tzinfo=UTC),
            reverse=True,
        )
        return summaries


def _ends_with_newline(path: Path) -> bool:
    """True for a missing or empty file, or one whose last byte is a newline."""
    try:
        with path.open("rb") as f:
            f.seek(0, os.SEEK_END)
            if f.tell() == 0:
                return True
            f.seek(-1, os.SEEK_END)
            return f.read(1) == b"\n"
    except FileNotFoundError:
        return True


__all__ = [
    "ChangeLogStore",
    "InMemoryChangeLogStore",
    "FileChangeLogStore",
]
