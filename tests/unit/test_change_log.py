"""
Unit tests for the change log.

Tests cover:
- Gap-free sequence numbering across automatic flushes
- Phase tagging and flush on phase change
- Continuing the sequence after a restart
- Buffer retention when a flush fails
- FileChangeLogStore durability format and torn-line handling
- Migration discovery via list_migrations
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from bulkmigrate.changelog import (
    DEFAULT_PHASE,
    ChangeLogEntry,
    ChangeLogManager,
    ChangeLogStore,
    FileChangeLogStore,
    InMemoryChangeLogStore,
)
from bulkmigrate.exceptions import ChangeLogWriteError
from bulkmigrate.observability import NullTracer
from bulkmigrate.testing import FakeClock


def manager_for(
    store: ChangeLogStore,
    clock: FakeClock,
    migration_id: str = "mig-1",
    flush_threshold: int = 5,
) -> ChangeLogManager:
    return ChangeLogManager(
        migration_id, store, flush_threshold, clock=clock, tracer=NullTracer()
    )


# ============================================================================
# ChangeLogEntry
# ============================================================================


class TestChangeLogEntry:
    """Tests for the entry model."""

    def test_sequence_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            ChangeLogEntry(migration_id="m", sequence=0, phase="copy", type="copied_object")

    def test_type_must_not_be_empty(self) -> None:
        with pytest.raises(ValueError):
            ChangeLogEntry(migration_id="m", sequence=1, phase="copy", type="")

    def test_entries_are_frozen(self) -> None:
        entry = ChangeLogEntry(migration_id="m", sequence=1, phase="copy", type="x")
        with pytest.raises(ValueError):
            entry.phase = "rewrite"  # type: ignore[misc]


# ============================================================================
# ChangeLogManager
# ============================================================================


class TestChangeLogManager:
    """Tests for ChangeLogManager."""

    def test_rejects_invalid_migration_id(
        self, change_log_store: InMemoryChangeLogStore
    ) -> None:
        """IDs with path separators are rejected."""
        with pytest.raises(ValueError):
            ChangeLogManager("../etc", change_log_store)

    def test_rejects_zero_threshold(self, change_log_store: InMemoryChangeLogStore) -> None:
        with pytest.raises(ValueError, match="flush_threshold"):
            ChangeLogManager("mig-1", change_log_store, 0)

    @pytest.mark.asyncio
    async def test_default_phase(self, change_log: ChangeLogManager) -> None:
        """Entries logged before any set_phase are tagged with the default phase."""
        entry = await change_log.log_change("copied_object")
        assert entry.phase == DEFAULT_PHASE
        assert entry.payload == {}

    @pytest.mark.asyncio
    async def test_sequence_is_gap_free_across_auto_flush(
        self,
        change_log: ChangeLogManager,
        change_log_store: InMemoryChangeLogStore,
        migration_id: str,
    ) -> None:
        """Twelve entries with threshold 5: two auto flushes, sequences 1..12."""
        await change_log.set_phase("copy")
        for i in range(12):
            await change_log.log_change("copied_object", {"target_path": f"a/{i}.jpg"})

        assert change_log.pending_count == 2
        assert len(await change_log_store.load(migration_id)) == 10

        assert await change_log.flush() == 2
        entries = await change_log_store.load(migration_id)
        assert [e.sequence for e in entries] == list(range(1, 13))
        assert {e.phase for e in entries} == {"copy"}

    @pytest.mark.asyncio
    async def test_set_phase_flushes_previous_phase(
        self,
        change_log: ChangeLogManager,
        change_log_store: InMemoryChangeLogStore,
        migration_id: str,
    ) -> None:
        """Changing phase flushes what was buffered under the old phase."""
        await change_log.set_phase("copy")
        await change_log.log_change("copied_object")
        await change_log.set_phase("rewrite")

        assert change_log.pending_count == 0
        assert change_log.phase == "rewrite"
        await change_log.log_change("url_rewrite")
        await change_log.flush()

        entries = await change_log_store.load(migration_id)
        assert [(e.sequence, e.phase) for e in entries] == [(1, "copy"), (2, "rewrite")]

    @pytest.mark.asyncio
    async def test_flush_with_empty_buffer(self, change_log: ChangeLogManager) -> None:
        assert await change_log.flush() == 0

    @pytest.mark.asyncio
    async def test_new_manager_continues_sequence(
        self, change_log_store: InMemoryChangeLogStore, fake_clock: FakeClock
    ) -> None:
        """A restarted run keeps numbering after the last persisted entry."""
        first = manager_for(change_log_store, fake_clock)
        for _ in range(3):
            await first.log_change("copied_object")
        await first.flush()

        second = manager_for(change_log_store, fake_clock)
        entry = await second.log_change("copied_object")
        assert entry.sequence == 4

    @pytest.mark.asyncio
    async def test_flush_failure_keeps_buffer(self, fake_clock: FakeClock) -> None:
        """A failed append raises ChangeLogWriteError and keeps entries for retry."""
        backing = InMemoryChangeLogStore()
        store = AsyncMock(wraps=backing)
        store.append.side_effect = [OSError("disk full"), None]
        manager = manager_for(store, fake_clock, flush_threshold=10)

        await manager.log_change("copied_object")
        await manager.log_change("copied_object")

        with pytest.raises(ChangeLogWriteError) as exc_info:
            await manager.flush()
        assert exc_info.value.pending == 2
        assert exc_info.value.migration_id == "mig-1"
        assert manager.pending_count == 2

        assert await manager.flush() == 2
        assert manager.pending_count == 0
        retried = store.append.await_args_list[1].args[1]
        assert [e.sequence for e in retried] == [1, 2]

    @pytest.mark.asyncio
    async def test_load_changes_includes_buffer(self, change_log: ChangeLogManager) -> None:
        """load_changes reflects unflushed entries too."""
        await change_log.log_change("copied_object")
        await change_log.flush()
        await change_log.log_change("moved_object")

        changes = await change_log.load_changes()
        assert [(e.sequence, e.type) for e in changes] == [
            (1, "copied_object"),
            (2, "moved_object"),
        ]

    @pytest.mark.asyncio
    async def test_timestamps_come_from_clock(
        self, change_log: ChangeLogManager, fake_clock: FakeClock
    ) -> None:
        entry = await change_log.log_change("copied_object")
        assert entry.timestamp == fake_clock.now()


# ============================================================================
# FileChangeLogStore
# ============================================================================


class TestFileChangeLogStore:
    """Tests for the JSON Lines store."""

    def test_implements_protocol(self, file_change_log_store: FileChangeLogStore) -> None:
        assert isinstance(file_change_log_store, ChangeLogStore)

    def test_path_for(self, file_change_log_store: FileChangeLogStore) -> None:
        path = file_change_log_store.path_for("mig-1")
        assert path.name == "mig-1.jsonl"
        with pytest.raises(ValueError):
            file_change_log_store.path_for("a/b")

    @pytest.mark.asyncio
    async def test_one_json_object_per_line(
        self, file_change_log_store: FileChangeLogStore, fake_clock: FakeClock
    ) -> None:
        """Each flushed entry is one line of JSON."""
        manager = manager_for(file_change_log_store, fake_clock)
        await manager.set_phase("copy")
        await manager.log_change("copied_object", {"target_path": "a.jpg"})
        await manager.log_change("copied_object", {"target_path": "b.jpg"})
        await manager.flush()

        lines = file_change_log_store.path_for("mig-1").read_text().splitlines()
        assert len(lines) == 2
        assert ChangeLogEntry.model_validate_json(lines[1]).payload == {"target_path": "b.jpg"}

    @pytest.mark.asyncio
    async def test_torn_line_is_skipped(
        self, file_change_log_store: FileChangeLogStore, fake_clock: FakeClock
    ) -> None:
        """A partial last line from a crash is ignored on load."""
        manager = manager_for(file_change_log_store, fake_clock)
        for _ in range(3):
            await manager.log_change("copied_object")
        await manager.flush()

        path = file_change_log_store.path_for("mig-1")
        with path.open("a", encoding="utf-8") as f:
            f.write('{"migration_id": "mig-1", "sequence": 4, "pha')

        entries = await file_change_log_store.load("mig-1")
        assert [e.sequence for e in entries] == [1, 2, 3]
        assert await file_change_log_store.last_sequence("mig-1") == 3

    @pytest.mark.asyncio
    async def test_append_after_torn_line_starts_new_line(
        self, file_change_log_store: FileChangeLogStore, fake_clock: FakeClock
    ) -> None:
        """Entries appended after a crash are not glued onto the torn line."""
        manager = manager_for(file_change_log_store, fake_clock)
        for _ in range(3):
            await manager.log_change("copied_object")
        await manager.flush()

        path = file_change_log_store.path_for("mig-1")
        with path.open("a", encoding="utf-8") as f:
            f.write('{"migration_id": "mig-1", "sequence": 4, "pha')

        resumed = manager_for(file_change_log_store, fake_clock)
        for _ in range(3):
            await resumed.log_change("copied_object")
        await resumed.flush()

        entries = await resumed.load_changes()
        assert [e.sequence for e in entries] == [1, 2, 3, 4, 5, 6]
        assert path.read_text().startswith('{"')
        assert path.read_text().endswith("\n")

    @pytest.mark.asyncio
    async def test_missing_log_is_empty(self, file_change_log_store: FileChangeLogStore) -> None:
        assert await file_change_log_store.load("never-ran") == []
        assert await file_change_log_store.last_sequence("never-ran") == 0
        assert await file_change_log_store.list_migrations() == []

    @pytest.mark.asyncio
    async def test_list_migrations(
        self, file_change_log_store: FileChangeLogStore, fake_clock: FakeClock
    ) -> None:
        """Each log file is summarized with entry counts per phase."""
        manager = manager_for(file_change_log_store, fake_clock, migration_id="mig-a")
        await manager.set_phase("copy")
        await manager.log_change("copied_object")
        await manager.log_change("copied_object")
        await manager.set_phase("rewrite")
        await manager.log_change("url_rewrite")
        await manager.flush()

        other = manager_for(file_change_log_store, fake_clock, migration_id="mig-b")
        await other.log_change("copied_object")
        await other.flush()

        (file_change_log_store.directory / "not a migration.jsonl").write_text("")

        summaries = {s.migration_id: s for s in await file_change_log_store.list_migrations()}
        assert set(summaries) == {"mig-a", "mig-b"}
        assert summaries["mig-a"].entry_count == 3
        assert summaries["mig-a"].phases == {"copy": 2, "rewrite": 1}
        assert summaries["mig-a"].first_timestamp == fake_clock.now()


# ============================================================================
# InMemoryChangeLogStore
# ============================================================================


class TestInMemoryChangeLogStore:
    """Tests for the in-memory store."""

    @pytest.mark.asyncio
    async def test_list_migrations_via_manager(
        self, change_log: ChangeLogManager, migration_id: str
    ) -> None:
        await change_log.set_phase("copy")
        await change_log.log_change("copied_object")
        await change_log.flush()

        summaries = await change_log.list_migrations()
        assert [s.migration_id for s in summaries] == [migration_id]
        assert summaries[0].phases == {"copy": 1}
