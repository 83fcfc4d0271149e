"""
Time source abstraction.

The lock's poll loop and the retry backoff both wait on time. They take a
:class:`Clock` so tests can substitute :class:`bulkmigrate.testing.FakeClock`
and run instantly.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Wall-clock time, a monotonic reading and an awaitable sleep."""

    def now(self) -> datetime:
        """Current UTC time."""
        ...

    def monotonic(self) -> float:
        """Monotonic seconds, used for deadlines."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend for the given number of seconds."""
        ...


class SystemClock:
    """Clock backed by the system time and ``asyncio.sleep``."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


__all__ = ["Clock", "SystemClock"]
