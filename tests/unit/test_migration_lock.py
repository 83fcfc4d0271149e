"""
Unit tests for MigrationLock and the lock stores.

Tests cover:
- Acquire on a free lock and contention between migrations
- Crash resume under the same migration ID
- Reclaiming an expired record
- Refresh after the lock was lost
- Idempotent release
- Concurrent acquire resolving to one winner
- The held() context manager
- SQLAlchemyLockStore against SQLite
"""

from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from bulkmigrate.config import MigrationSettings
from bulkmigrate.exceptions import LockAcquisitionError
from bulkmigrate.locks import (
    DEFAULT_LOCK_NAME,
    InMemoryLockStore,
    LockRecord,
    LockStore,
    MigrationLock,
    SQLAlchemyLockStore,
    default_owner,
)
from bulkmigrate.observability import MockTracer, NullTracer
from bulkmigrate.testing import FakeClock
from tests.conftest import skip_if_no_aiosqlite


def make_lock(
    migration_id: str,
    store: LockStore,
    clock: FakeClock,
    **kwargs: object,
) -> MigrationLock:
    kwargs.setdefault("tracer", NullTracer())
    return MigrationLock(
        migration_id,
        store,
        owner=f"host:{migration_id}",
        clock=clock,
        **kwargs,  # type: ignore[arg-type]
    )


# ============================================================================
# Construction
# ============================================================================


class TestMigrationLockConstruction:
    """Tests for MigrationLock construction."""

    def test_default_owner_is_host_and_pid(self) -> None:
        """default_owner() should look like '<host>:<pid>'."""
        host, _, pid = default_owner().rpartition(":")
        assert host
        assert pid.isdigit()

    def test_rejects_non_positive_poll_interval(self, lock_store: InMemoryLockStore) -> None:
        """A zero poll interval should be rejected."""
        with pytest.raises(ValueError, match="poll_interval"):
            MigrationLock("mig-a", lock_store, poll_interval=0)

    def test_from_settings_uses_lock_name(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """from_settings should take the lock name from settings."""
        settings = MigrationSettings(lock_name="assets_lock")
        lock = MigrationLock.from_settings("mig-a", lock_store, settings, clock=fake_clock)
        assert lock.lock_name == "assets_lock"
        assert lock.is_locked is False

    def test_default_lock_name(self, lock_store: InMemoryLockStore) -> None:
        """The default lock name is shared by all migrations."""
        assert MigrationLock("mig-a", lock_store).lock_name == DEFAULT_LOCK_NAME


# ============================================================================
# Acquire
# ============================================================================


class TestAcquire:
    """Tests for MigrationLock.acquire()."""

    @pytest.mark.asyncio
    async def test_acquire_free_lock(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """Acquiring a free lock should succeed on the first attempt."""
        lock = make_lock("mig-a", lock_store, fake_clock)

        assert await lock.acquire(timeout_seconds=0) is True
        assert lock.is_locked is True
        assert fake_clock.sleeps == []

        holder = await lock.get_holder()
        assert holder is not None
        assert holder.migration_id == "mig-a"
        assert holder.owner == "host:mig-a"
        assert holder.expires_at == fake_clock.now() + timedelta(seconds=43200)

    @pytest.mark.asyncio
    async def test_second_migration_is_refused(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """A different migration should get False while the lock is live."""
        first = make_lock("mig-a", lock_store, fake_clock)
        second = make_lock("mig-b", lock_store, fake_clock)
        await first.acquire()

        assert await second.acquire(timeout_seconds=2.0) is False
        assert second.is_locked is False

        holder = await second.get_holder()
        assert holder is not None
        assert holder.migration_id == "mig-a"

    @pytest.mark.asyncio
    async def test_polls_until_timeout(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """Polling sleeps the poll interval and never overshoots the timeout."""
        await make_lock("mig-a", lock_store, fake_clock).acquire()
        waiter = make_lock("mig-b", lock_store, fake_clock, poll_interval=0.5)

        assert await waiter.acquire(timeout_seconds=1.2) is False
        assert fake_clock.sleeps == pytest.approx([0.5, 0.5, 0.2])

    @pytest.mark.asyncio
    async def test_zero_timeout_makes_one_attempt(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """A zero timeout still tries once and never sleeps."""
        await make_lock("mig-a", lock_store, fake_clock).acquire()
        store_spy = AsyncMock(wraps=lock_store)
        waiter = make_lock("mig-b", store_spy, fake_clock)

        assert await waiter.acquire(timeout_seconds=0) is False
        assert store_spy.try_acquire.await_count == 1
        assert fake_clock.sleeps == []

    @pytest.mark.asyncio
    async def test_resume_same_id_keeps_record(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """A resumed run with the same ID should proceed without rewriting the record."""
        crashed = make_lock("mig-a", lock_store, fake_clock)
        await crashed.acquire()
        original = await lock_store.get(DEFAULT_LOCK_NAME)

        fake_clock.advance(60)
        resumed = MigrationLock(
            "mig-a", lock_store, owner="host:other-pid", clock=fake_clock, tracer=NullTracer()
        )
        assert await resumed.acquire(timeout_seconds=0, allow_resume_same_id=True) is True
        assert resumed.is_locked is True
        assert await lock_store.get(DEFAULT_LOCK_NAME) == original

    @pytest.mark.asyncio
    async def test_same_id_without_resume_is_refused(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """Without allow_resume_same_id even the same migration is refused."""
        await make_lock("mig-a", lock_store, fake_clock).acquire()
        again = make_lock("mig-a", lock_store, fake_clock)
        assert await again.acquire(timeout_seconds=0) is False

    @pytest.mark.asyncio
    async def test_resume_does_not_override_other_migration(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """allow_resume_same_id never lets a different migration in."""
        await make_lock("mig-a", lock_store, fake_clock).acquire()
        other = make_lock("mig-b", lock_store, fake_clock)
        assert await other.acquire(timeout_seconds=0, allow_resume_same_id=True) is False

    @pytest.mark.asyncio
    async def test_expired_record_is_reclaimed(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """A record past its expiry can be taken by another migration."""
        stale = make_lock("mig-a", lock_store, fake_clock, lock_timeout_seconds=10)
        await stale.acquire()

        fake_clock.advance(10)
        fresh = make_lock("mig-b", lock_store, fake_clock)
        assert await fresh.acquire(timeout_seconds=0) is True

        holder = await fresh.get_holder()
        assert holder is not None
        assert holder.migration_id == "mig-b"

    @pytest.mark.asyncio
    async def test_concurrent_acquire_has_one_winner(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """Racing acquires from several tasks should admit exactly one."""
        locks = [make_lock(f"mig-{i}", lock_store, fake_clock) for i in range(5)]

        results = await asyncio.gather(*(lock.acquire(timeout_seconds=0) for lock in locks))

        assert results.count(True) == 1
        winner = locks[results.index(True)]
        holder = await lock_store.get(DEFAULT_LOCK_NAME)
        assert holder is not None
        assert holder.migration_id == winner.migration_id

    @pytest.mark.asyncio
    async def test_acquire_records_span(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """acquire() should emit a span through the configured tracer."""
        tracer = MockTracer()
        lock = make_lock("mig-a", lock_store, fake_clock, tracer=tracer)
        await lock.acquire()
        assert "bulkmigrate.lock.acquire" in tracer.span_names


# ============================================================================
# Refresh and Release
# ============================================================================


class TestRefreshAndRelease:
    """Tests for refresh(), release() and held()."""

    @pytest.mark.asyncio
    async def test_refresh_extends_expiry(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """refresh() should push expires_at forward from now."""
        lock = make_lock("mig-a", lock_store, fake_clock, lock_timeout_seconds=100)
        await lock.acquire()

        fake_clock.advance(50)
        assert await lock.refresh() is True

        holder = await lock.get_holder()
        assert holder is not None
        assert holder.expires_at == fake_clock.now() + timedelta(seconds=100)

    @pytest.mark.asyncio
    async def test_refresh_without_acquire_returns_false(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """An instance that never acquired cannot refresh."""
        lock = make_lock("mig-a", lock_store, fake_clock)
        assert await lock.refresh() is False

    @pytest.mark.asyncio
    async def test_refresh_after_takeover_returns_false(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """Once another migration took an expired lock, refresh reports loss."""
        first = make_lock("mig-a", lock_store, fake_clock, lock_timeout_seconds=10)
        await first.acquire()
        fake_clock.advance(11)
        await make_lock("mig-b", lock_store, fake_clock).acquire(timeout_seconds=0)

        assert await first.refresh() is False
        assert first.is_locked is False

    @pytest.mark.asyncio
    async def test_release_is_idempotent(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """release() can be called repeatedly without error."""
        lock = make_lock("mig-a", lock_store, fake_clock)
        await lock.acquire()

        await lock.release()
        await lock.release()

        assert lock.is_locked is False
        assert await lock.get_holder() is None

    @pytest.mark.asyncio
    async def test_release_does_not_remove_other_migrations_lock(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """A migration can only delete its own record."""
        await make_lock("mig-a", lock_store, fake_clock).acquire()
        other = make_lock("mig-b", lock_store, fake_clock)

        await other.release()

        holder = await lock_store.get(DEFAULT_LOCK_NAME)
        assert holder is not None
        assert holder.migration_id == "mig-a"

    @pytest.mark.asyncio
    async def test_release_swallows_store_errors(self, fake_clock: FakeClock) -> None:
        """A failing store on release is logged, not raised."""
        store = AsyncMock(spec=InMemoryLockStore)
        store.delete.side_effect = ConnectionError("database went away")
        lock = make_lock("mig-a", store, fake_clock)

        await lock.release()

        assert lock.is_locked is False

    @pytest.mark.asyncio
    async def test_held_releases_on_exit(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """held() should release the lock when the block raises."""
        lock = make_lock("mig-a", lock_store, fake_clock)

        with pytest.raises(RuntimeError):
            async with lock.held():
                assert lock.is_locked
                raise RuntimeError("phase failed")

        assert await lock_store.get(DEFAULT_LOCK_NAME) is None

    @pytest.mark.asyncio
    async def test_held_raises_when_contended(
        self, lock_store: InMemoryLockStore, fake_clock: FakeClock
    ) -> None:
        """held() should raise LockAcquisitionError naming the holder."""
        await make_lock("mig-a", lock_store, fake_clock).acquire()
        lock = make_lock("mig-b", lock_store, fake_clock)

        with pytest.raises(LockAcquisitionError) as exc_info:
            async with lock.held(timeout_seconds=0):
                pass

        assert exc_info.value.holder == "mig-a"
        assert exc_info.value.migration_id == "mig-b"


# ============================================================================
# LockRecord
# ============================================================================


class TestLockRecord:
    """Tests for LockRecord expiry."""

    def test_expired_at_boundary(self, fake_clock: FakeClock) -> None:
        """A record is expired once now reaches expires_at."""
        now = fake_clock.now()
        record = LockRecord(DEFAULT_LOCK_NAME, "mig-a", now, "h:1", now + timedelta(seconds=5))
        assert record.is_expired(now) is False
        assert record.is_expired(now + timedelta(seconds=5)) is True


# ============================================================================
# SQLAlchemyLockStore
# ============================================================================


@pytest.mark.sqlite
@skip_if_no_aiosqlite
class TestSQLAlchemyLockStore:
    """Tests for SQLAlchemyLockStore against a SQLite database."""

    @pytest.mark.asyncio
    async def test_implements_protocol(self, sqlite_engine) -> None:
        """SQLAlchemyLockStore should satisfy the LockStore protocol."""
        assert isinstance(SQLAlchemyLockStore(sqlite_engine, enable_tracing=False), LockStore)

    @pytest.mark.asyncio
    async def test_acquire_contend_release(self, sqlite_engine, fake_clock: FakeClock) -> None:
        """Full acquire / contention / release cycle through the table."""
        store = SQLAlchemyLockStore(sqlite_engine, enable_tracing=False)
        first = make_lock("mig-a", store, fake_clock)
        second = make_lock("mig-b", store, fake_clock)

        assert await first.acquire(timeout_seconds=0) is True
        assert await second.acquire(timeout_seconds=0) is False

        holder = await store.get(DEFAULT_LOCK_NAME)
        assert holder is not None
        assert holder.migration_id == "mig-a"
        assert holder.acquired_at == fake_clock.now()

        await first.release()
        assert await store.get(DEFAULT_LOCK_NAME) is None
        assert await second.acquire(timeout_seconds=0) is True

    @pytest.mark.asyncio
    async def test_expired_record_is_reclaimed(self, sqlite_engine, fake_clock: FakeClock) -> None:
        """The guarded upsert replaces an expired row."""
        store = SQLAlchemyLockStore(sqlite_engine, enable_tracing=False)
        first = make_lock("mig-a", store, fake_clock, lock_timeout_seconds=5)
        await first.acquire()

        fake_clock.advance(6)
        second = make_lock("mig-b", store, fake_clock)
        assert await second.acquire(timeout_seconds=0) is True
        assert await first.refresh() is False

    @pytest.mark.asyncio
    async def test_refresh_extends_row(self, sqlite_engine, fake_clock: FakeClock) -> None:
        """extend should update expires_at for the owning migration only."""
        store = SQLAlchemyLockStore(sqlite_engine, enable_tracing=False)
        lock = make_lock("mig-a", store, fake_clock, lock_timeout_seconds=30)
        await lock.acquire()

        fake_clock.advance(20)
        assert await lock.refresh() is True
        holder = await store.get(DEFAULT_LOCK_NAME)
        assert holder is not None
        assert holder.expires_at == fake_clock.now() + timedelta(seconds=30)

        later = fake_clock.now() + timedelta(seconds=60)
        assert await store.extend(DEFAULT_LOCK_NAME, "mig-b", later, fake_clock.now()) is False
