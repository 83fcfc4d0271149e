"""
Testing utilities for bulkmigrate.

Provides a virtual-time clock and an in-memory storage provider so that
lock contention, retry backoff and rollback handlers can be exercised
without real time passing or a real object store.
"""

from bulkmigrate.providers import InMemoryStorageProvider
from bulkmigrate.testing.clock import FakeClock

__all__ = [
    "FakeClock",
    "InMemoryStorageProvider",
]
