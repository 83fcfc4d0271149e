"""Deterministic clock for tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta


class FakeClock:
    """
    Clock whose time only moves when told to.

    ``sleep`` advances the clock by the requested amount instead of waiting,
    and records every call so tests can assert on backoff schedules.

    Example:
        >>> clock = FakeClock()
        >>> await clock.sleep(1.5)
        >>> clock.sleeps
        [1.5]
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=UTC)
        self._monotonic = 0.0
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        """Move both wall and monotonic time forward."""
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


__all__ = ["FakeClock"]
