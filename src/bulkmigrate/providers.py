"""
Storage provider boundary.

The orchestration core never talks to S3-like backends itself. Phase
executors and rollback handlers call a :class:`StorageProvider`, wrapping
each call in the error recovery manager and recording its effect in the
change log.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class ObjectMetadata:
    """Metadata of a stored object."""

    path: str
    size: int
    last_modified: datetime | None = None
    content_type: str | None = None


@runtime_checkable
class StorageProvider(Protocol):
    """Operations the core needs from a storage backend."""

    async def copy(
        self,
        source_path: str,
        target_provider: StorageProvider,
        target_path: str,
    ) -> None:
        """Copy an object from this provider to ``target_path`` on ``target_provider``."""
        ...

    async def exists(self, path: str) -> bool:
        """True if an object exists at ``path``."""
        ...

    async def delete(self, path: str) -> None:
        """Delete the object at ``path``."""
        ...

    async def metadata(self, path: str) -> ObjectMetadata:
        """Metadata of the object at ``path``."""
        ...


class InMemoryStorageProvider:
    """
    Storage provider holding objects in a dict.

    Missing objects raise ``FileNotFoundError`` with a message containing
    "does not exist", which the default error classifier treats as fatal.

    Example:
        >>> source = InMemoryStorageProvider({"a.jpg": b"..."})
        >>> target = InMemoryStorageProvider()
        >>> await source.copy("a.jpg", target, "assets/a.jpg")
    """

    def __init__(self, objects: dict[str, bytes] | None = None, name: str = "memory") -> None:
        self.name = name
        self._objects: dict[str, bytes] = dict(objects or {})
        self._modified: dict[str, datetime] = {path: datetime.now(UTC) for path in self._objects}
        self._lock = asyncio.Lock()

    async def read(self, path: str) -> bytes:
        async with self._lock:
            if path not in self._objects:
                raise FileNotFoundError(f"Object {path} does not exist in {self.name}")
            return self._objects[path]

    async def write(self, path: str, data: bytes) -> None:
        async with self._lock:
            self._objects[path] = data
            self._modified[path] = datetime.now(UTC)

    async def copy(
        self,
        source_path: str,
        target_provider: StorageProvider,
        target_path: str,
    ) -> None:
        data = await self.read(source_path)
        if not isinstance(target_provider, InMemoryStorageProvider):
            raise TypeError("InMemoryStorageProvider can only copy to another in-memory provider")
        await target_provider.write(target_path, data)

    async def exists(self, path: str) -> bool:
        async with self._lock:
            return path in self._objects

    async def delete(self, path: str) -> None:
        async with self._lock:
            if path not in self._objects:
                raise FileNotFoundError(f"Object {path} does not exist in {self.name}")
            del self._objects[path]
            self._modified.pop(path, None)

    async def metadata(self, path: str) -> ObjectMetadata:
        async with self._lock:
            if path not in self._objects:
                raise FileNotFoundError(f"Object {path} does not exist in {self.name}")
            return ObjectMetadata(
                path=path,
                size=len(self._objects[path]),
                last_modified=self._modified.get(path),
            )

    @property
    def paths(self) -> list[str]:
        """Stored object paths, sorted."""
        return sorted(self._objects)


__all__ = [
    "ObjectMetadata",
    "StorageProvider",
    "InMemoryStorageProvider",
]
