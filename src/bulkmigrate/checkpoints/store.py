"""
Checkpoint stores.

Each migration ID has one full checkpoint and one quick state. Writes
replace the previous record as a whole; a reader never sees a partially
written record.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ValidationError

from bulkmigrate.checkpoints.models import Checkpoint, CheckpointSummary, QuickState
from bulkmigrate.types import validate_migration_id

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@runtime_checkable
class CheckpointStore(Protocol):
    """Persistence for checkpoints and quick states, keyed by migration ID."""

    def location(self, migration_id: str) -> str:
        """Human-readable location of the full checkpoint (path or key)."""
        ...

    async def write_checkpoint(self, migration_id: str, checkpoint: Checkpoint) -> None:
        """Atomically replace the full checkpoint."""
        ...

    async def read_checkpoint(self, migration_id: str) -> Checkpoint | None:
        """The full checkpoint, or None."""
        ...

    async def write_quick_state(self, migration_id: str, state: QuickState) -> None:
        """Atomically replace the quick state."""
        ...

    async def read_quick_state(self, migration_id: str) -> QuickState | None:
        """The quick state, or None."""
        ...

    async def list_checkpoints(self) -> list[CheckpointSummary]:
        """Summaries of all stored checkpoints."""
        ...

    async def delete(self, migration_id: str) -> bool:
        """Remove the checkpoint and quick state. True if anything was removed."""
        ...


class InMemoryCheckpointStore:
    """Dict-backed checkpoint store for tests."""

    def __init__(self) -> None:
        self._checkpoints: dict[str, Checkpoint] = {}
        self._quick_states: dict[str, QuickState] = {}
        self._lock = asyncio.Lock()

    def location(self, migration_id: str) -> str:
        return f"memory://{migration_id}"

    async def write_checkpoint(self, migration_id: str, checkpoint: Checkpoint) -> None:
        async with self._lock:
            self._checkpoints[migration_id] = checkpoint

    async def read_checkpoint(self, migration_id: str) -> Checkpoint | None:
        async with self._lock:
            return self._checkpoints.get(migration_id)

    async def write_quick_state(self, migration_id: str, state: QuickState) -> None:
        async with self._lock:
            self._quick_states[migration_id] = state

    async def read_quick_state(self, migration_id: str) -> QuickState | None:
        async with self._lock:
            return self._quick_states.get(migration_id)

    async def list_checkpoints(self) -> list[CheckpointSummary]:
        async with self._lock:
            return [
                _summarize(migration_id, checkpoint, self.location(migration_id))
                for migration_id, checkpoint in self._checkpoints.items()
            ]

    async def delete(self, migration_id: str) -> bool:
        async with self._lock:
            removed = self._checkpoints.pop(migration_id, None) is not None
            removed = self._quick_states.pop(migration_id, None) is not None or removed
            return removed


def _summarize(migration_id: str, checkpoint: Checkpoint, location: str) -> CheckpointSummary:
    return CheckpointSummary(
        migration_id=migration_id,
        phase=checkpoint.phase,
        processed_count=checkpoint.processed_count,
        batch=checkpoint.batch,
        created_at=checkpoint.created_at,
        completed=checkpoint.completed,
        location=location,
    )


class FileCheckpointStore:
    """
    JSON files in one directory: ``<id>.json`` (checkpoint) and
    ``<id>.state.json`` (quick state).

    Writes go to a temporary file that is fsynced and then renamed over the
    target, so the previous record survives a failed or interrupted write.

    Example:
        >>> store = FileCheckpointStore(Path("storage/migration-checkpoints"))
        >>> checkpoints = CheckpointManager("mig-2024-06-01", store, state_store)
    """

    CHECKPOINT_SUFFIX = ".json"
    QUICK_STATE_SUFFIX = ".state.json"

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def checkpoint_path(self, migration_id: str) -> Path:
        return self.directory / f"{validate_migration_id(migration_id)}{self.CHECKPOINT_SUFFIX}"

    def quick_state_path(self, migration_id: str) -> Path:
        return self.directory / f"{validate_migration_id(migration_id)}{self.QUICK_STATE_SUFFIX}"

    def location(self, migration_id: str) -> str:
        return str(self.checkpoint_path(migration_id))

    async def write_checkpoint(self, migration_id: str, checkpoint: Checkpoint) -> None:
        await asyncio.to_thread(
            _atomic_write,
            self.checkpoint_path(migration_id),
            checkpoint.model_dump_json(indent=2),
        )

    async def read_checkpoint(self, migration_id: str) -> Checkpoint | None:
        return await asyncio.to_thread(_read_model, self.checkpoint_path(migration_id), Checkpoint)

    async def write_quick_state(self, migration_id: str, state: QuickState) -> None:
        await asyncio.to_thread(
            _atomic_write,
            self.quick_state_path(migration_id),
            state.model_dump_json(),
        )

    async def read_quick_state(self, migration_id: str) -> QuickState | None:
        return await asyncio.to_thread(_read_model, self.quick_state_path(migration_id), QuickState)

    async def list_checkpoints(self) -> list[CheckpointSummary]:
        return await asyncio.to_thread(self._list_sync)

    def _list_sync(self) -> list[CheckpointSummary]:
        if not self.directory.exists():
            return []
        summaries: list[CheckpointSummary] = []
        for path in self.directory.glob(f"*{self.CHECKPOINT_SUFFIX}"):
            if path.name.endswith(self.QUICK_STATE_SUFFIX):
                continue
            checkpoint = _read_model(path, Checkpoint)
            if checkpoint is None:
                continue
            migration_id = checkpoint.migration_id or path.name[: -len(self.CHECKPOINT_SUFFIX)]
            if checkpoint.created_at is None:
                checkpoint = checkpoint.model_copy(
                    update={"created_at": datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)}
                )
            summaries.append(_summarize(migration_id, checkpoint, str(path)))
        return summaries

    async def delete(self, migration_id: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, migration_id)

    def _delete_sync(self, migration_id: str) -> bool:
        removed = False
        for path in (self.checkpoint_path(migration_id), self.quick_state_path(migration_id)):
            if path.exists():
                path.unlink()
                removed = True
        return removed


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    try:
        with tmp_path.open("w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def _read_model(path: Path, model: type[ModelT]) -> ModelT | None:
    if not path.exists():
        return None
    try:
        return model.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as e:
        logger.warning("Ignoring unreadable %s at %s: %s", model.__name__, path, e)
        return None


__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "FileCheckpointStore",
]
