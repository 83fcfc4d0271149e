"""
Shared pytest fixtures for the bulkmigrate tests.

This module provides:
- Time fixtures (fake_clock)
- In-memory store fixtures (lock_store, state_store, checkpoint_store,
  change_log_store)
- File store fixtures backed by tmp_path
- Manager fixtures wired to the in-memory stores
- SQLite engine fixture for the SQL-backed stores
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
import pytest_asyncio

from bulkmigrate.changelog import ChangeLogManager, FileChangeLogStore, InMemoryChangeLogStore
from bulkmigrate.checkpoints import CheckpointManager, FileCheckpointStore, InMemoryCheckpointStore
from bulkmigrate.locks import InMemoryLockStore
from bulkmigrate.observability import NullTracer
from bulkmigrate.recovery import ErrorRecoveryManager
from bulkmigrate.state import InMemoryMigrationStateStore
from bulkmigrate.testing import FakeClock

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

# ============================================================================
# SQLite Availability Check
# ============================================================================

AIOSQLITE_AVAILABLE = False
try:
    import aiosqlite  # noqa: F401

    AIOSQLITE_AVAILABLE = True
except ImportError:
    pass


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for tests."""
    config.addinivalue_line("markers", "sqlite: marks tests that require SQLite (aiosqlite)")


# ============================================================================
# Skip Condition
# ============================================================================

skip_if_no_aiosqlite = pytest.mark.skipif(not AIOSQLITE_AVAILABLE, reason="aiosqlite not installed")


# ============================================================================
# Sample Data Fixtures
# ============================================================================

MIGRATION_ID = "mig-test-001"


@pytest.fixture
def migration_id() -> str:
    """Migration ID shared by the manager fixtures."""
    return MIGRATION_ID


@pytest.fixture
def fake_clock() -> FakeClock:
    """Virtual clock starting at 2024-01-01T00:00:00Z."""
    return FakeClock()


@pytest.fixture
def tracer() -> NullTracer:
    """Tracer that records nothing."""
    return NullTracer()


# ============================================================================
# In-Memory Store Fixtures
# ============================================================================


@pytest.fixture
def lock_store() -> InMemoryLockStore:
    return InMemoryLockStore()


@pytest.fixture
def state_store(fake_clock: FakeClock) -> InMemoryMigrationStateStore:
    return InMemoryMigrationStateStore(clock=fake_clock)


@pytest.fixture
def checkpoint_store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def change_log_store() -> InMemoryChangeLogStore:
    return InMemoryChangeLogStore()


# ============================================================================
# File Store Fixtures
# ============================================================================


@pytest.fixture
def file_checkpoint_store(tmp_path: Path) -> FileCheckpointStore:
    return FileCheckpointStore(tmp_path / "checkpoints")


@pytest.fixture
def file_change_log_store(tmp_path: Path) -> FileChangeLogStore:
    return FileChangeLogStore(tmp_path / "changelogs")


# ============================================================================
# Manager Fixtures
# ============================================================================


@pytest.fixture
def checkpoint_manager(
    migration_id: str,
    checkpoint_store: InMemoryCheckpointStore,
    state_store: InMemoryMigrationStateStore,
    fake_clock: FakeClock,
    tracer: NullTracer,
) -> CheckpointManager:
    return CheckpointManager(
        migration_id,
        checkpoint_store,
        state_store,
        clock=fake_clock,
        tracer=tracer,
    )


@pytest.fixture
def change_log(
    migration_id: str,
    change_log_store: InMemoryChangeLogStore,
    fake_clock: FakeClock,
    tracer: NullTracer,
) -> ChangeLogManager:
    return ChangeLogManager(
        migration_id,
        change_log_store,
        flush_threshold=5,
        clock=fake_clock,
        tracer=tracer,
    )


@pytest.fixture
def recovery(fake_clock: FakeClock, tracer: NullTracer) -> ErrorRecoveryManager:
    return ErrorRecoveryManager(max_retries=3, retry_delay_ms=1000, clock=fake_clock, tracer=tracer)


# ============================================================================
# SQLite Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """
    File-backed SQLite engine with the bulkmigrate schema created.

    A file database (not :memory:) so every pooled connection sees the
    same tables.
    """
    if not AIOSQLITE_AVAILABLE:
        pytest.skip("aiosqlite not installed")

    from sqlalchemy.ext.asyncio import create_async_engine

    from bulkmigrate.schema import create_schema

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bulkmigrate.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()
