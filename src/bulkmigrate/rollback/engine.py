"""
Rollback Engine.

Replays a migration's change log backwards, handing each entry to the undo
handler registered for its operation type. Entries are reversed in strictly
descending sequence order because later operations may depend on earlier
ones still being in place.

Phase filtering is inclusive of the named phase:

- ``direction="from"``: the named phase and every phase after it
- ``direction="to"``: the named phase and every phase before it
- ``direction="only"``: exactly the named phase(s)

"Before" and "after" follow ``phase_order`` when the engine has one,
otherwise the order in which phases first appear in the change log.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import get_args

from bulkmigrate.changelog import ChangeLogEntry, ChangeLogManager
from bulkmigrate.exceptions import RollbackError
from bulkmigrate.observability import (
    ATTR_CHANGE_COUNT,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_PHASE,
    ATTR_ROLLBACK_DIRECTION,
    ATTR_ROLLBACK_DRY_RUN,
    Tracer,
    create_tracer,
)
from bulkmigrate.rollback.database import DatabaseRestorer
from bulkmigrate.rollback.report import (
    RestorePlan,
    RestoreResult,
    RollbackFailure,
    RollbackReport,
    format_estimate,
)
from bulkmigrate.types import RollbackDirection

logger = logging.getLogger(__name__)

UndoHandler = Callable[[ChangeLogEntry], Awaitable[None]]
"""Coroutine function that reverses one change-log entry."""

IRREVERSIBLE_TYPES: frozenset[str] = frozenset({"deleted_transform", "broken_link_not_fixed"})
"""Operation types that are reported but never reversed."""

PROGRESS_LOG_INTERVAL = 50
SECONDS_PER_OPERATION = 0.1


class RollbackEngine:
    """
    Reverses recorded operations of a migration.

    Args:
        change_log: Change log of the migration to roll back
        migration_id: Defaults to the change log's migration ID
        handlers: Undo handlers keyed by operation type
        phase_order: Canonical phase sequence for "from"/"to" filtering
        database_restorer: Needed for ``rollback_via_database``
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing

    Example:
        >>> engine = RollbackEngine(change_log, handlers={"url_rewrite": undo_rewrite})
        >>> report = await engine.rollback(phase="rewrite", direction="from", dry_run=True)
        >>> report.total_operations
        42
    """

    def __init__(
        self,
        change_log: ChangeLogManager,
        migration_id: str | None = None,
        *,
        handlers: Mapping[str, UndoHandler] | None = None,
        phase_order: Sequence[str] | None = None,
        database_restorer: DatabaseRestorer | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self.migration_id = migration_id or change_log.migration_id
        self._change_log = change_log
        self._handlers: dict[str, UndoHandler] = dict(handlers or {})
        self._phase_order = list(phase_order) if phase_order is not None else None
        self._database_restorer = database_restorer
        self._tracer = tracer or create_tracer(__name__, enable_tracing)

    def register_handler(self, change_type: str, handler: UndoHandler) -> None:
        """Register (or replace) the undo handler for an operation type."""
        if change_type in IRREVERSIBLE_TYPES:
            raise ValueError(f"{change_type!r} is irreversible and cannot have an undo handler")
        self._handlers[change_type] = handler

    @property
    def handled_types(self) -> frozenset[str]:
        """Operation types with a registered undo handler."""
        return frozenset(self._handlers)

    def _resolve_migration_id(self, migration_id: str | None) -> str:
        resolved = migration_id or self.migration_id
        if resolved != self._change_log.migration_id:
            raise ValueError(
                f"Change log belongs to {self._change_log.migration_id!r}, "
                f"cannot roll back {resolved!r}"
            )
        return resolved

    async def rollback(
        self,
        migration_id: str | None = None,
        phase: str | Sequence[str] | None = None,
        direction: RollbackDirection = "from",
        dry_run: bool = False,
    ) -> RollbackReport:
        """
        Reverse the migration's recorded operations.

        Args:
            migration_id: Migration to roll back (defaults to the engine's)
            phase: Phase filter; a list is accepted for ``direction="only"``
            direction: "from", "to" or "only" (see module docstring)
            dry_run: Report what would be reversed without executing

        Returns:
            RollbackReport with per-phase and per-type counts

        Raises:
            RollbackError: If the migration has no recorded changes
            ValueError: For an unknown direction or a phase not in the order
        """
        migration_id = self._resolve_migration_id(migration_id)
        if direction not in get_args(RollbackDirection):
            raise ValueError(f"direction must be 'from', 'to' or 'only', got {direction!r}")

        with self._tracer.span(
            "bulkmigrate.rollback.rollback",
            {
                ATTR_MIGRATION_ID: migration_id,
                ATTR_MIGRATION_PHASE: ",".join(_as_list(phase)),
                ATTR_ROLLBACK_DIRECTION: direction,
                ATTR_ROLLBACK_DRY_RUN: dry_run,
            },
        ) as span:
            entries = await self._change_log.load_changes()
            if not entries:
                raise RollbackError("No changes found for migration", migration_id=migration_id)

            selected = self._filter(entries, phase, direction)
            report = RollbackReport(migration_id=migration_id, dry_run=dry_run)
            report.total_operations = len(selected)
            for entry in selected:
                report.by_phase[entry.phase] = report.by_phase.get(entry.phase, 0) + 1
                report.by_type[entry.type] = report.by_type.get(entry.type, 0) + 1
            if span:
                span.set_attribute(ATTR_CHANGE_COUNT, len(selected))

            if dry_run:
                report.estimated_time = format_estimate(len(selected) * SECONDS_PER_OPERATION)
                return report

            logger.info(
                "Rolling back %d operations of migration %s",
                len(selected),
                migration_id,
            )
            await self._reverse_all(selected, report)
            logger.info(
                "Rollback of %s finished: %d reversed, %d skipped, %d failed",
                migration_id,
                report.reversed,
                report.skipped,
                report.failed,
            )
            return report

    async def _reverse_all(self, selected: list[ChangeLogEntry], report: RollbackReport) -> None:
        total = len(selected)
        for done, entry in enumerate(sorted(selected, key=lambda e: e.sequence, reverse=True), 1):
            handler = self._handlers.get(entry.type)
            if entry.type in IRREVERSIBLE_TYPES:
                report.skipped += 1
                logger.info("Entry %d (%s) is not reversible, skipping", entry.sequence, entry.type)
            elif handler is None:
                report.skipped += 1
                logger.warning(
                    "No undo handler for change type %s (entry %d), skipping",
                    entry.type,
                    entry.sequence,
                )
            else:
                try:
                    await handler(entry)
                    report.reversed += 1
                except Exception as e:
                    report.failed += 1
                    report.errors.append(
                        RollbackFailure(
                            sequence=entry.sequence,
                            phase=entry.phase,
                            type=entry.type,
                            error=str(e),
                        )
                    )
                    logger.error(
                        "Failed to reverse entry %d (%s): %s",
                        entry.sequence,
                        entry.type,
                        e,
                    )

            if done % PROGRESS_LOG_INTERVAL == 0:
                logger.info("[%d/%d] %d%% rolled back", done, total, round(done / total * 100))

    def _filter(
        self,
        entries: list[ChangeLogEntry],
        phase: str | Sequence[str] | None,
        direction: RollbackDirection,
    ) -> list[ChangeLogEntry]:
        phases = _as_list(phase)
        if not phases:
            return entries

        order = self._phase_order or _first_appearance(entries)
        for name in phases:
            if name not in order:
                raise ValueError(f"Unknown phase {name!r}; known phases: {', '.join(order)}")

        if direction == "only":
            wanted = set(phases)
            return [e for e in entries if e.phase in wanted]

        index = order.index(phases[0])
        included = set(order[index:] if direction == "from" else order[: index + 1])
        return [e for e in entries if e.phase in included]

    async def get_phases_summary(self, migration_id: str | None = None) -> dict[str, int]:
        """Number of recorded changes per phase, in order of first appearance."""
        self._resolve_migration_id(migration_id)
        summary: dict[str, int] = {}
        for entry in await self._change_log.load_changes():
            summary[entry.phase] = summary.get(entry.phase, 0) + 1
        return summary

    async def rollback_via_database(
        self,
        migration_id: str | None = None,
        dry_run: bool = False,
    ) -> RestorePlan | RestoreResult:
        """
        Restore the pre-migration database backup of the migration.

        Args:
            migration_id: Migration whose backup to restore
            dry_run: Return the restore plan without executing

        Returns:
            RestorePlan for a dry run, RestoreResult otherwise

        Raises:
            RollbackError: If no database restorer is configured
            BackupNotFoundError: If the backup file does not exist
            BackupVerificationError: If the backup fails safety checks
            DatabaseRestoreError: If the restore failed and was rolled back
        """
        migration_id = migration_id or self.migration_id
        if self._database_restorer is None:
            raise RollbackError(
                "Database rollback requires a DatabaseRestorer",
                migration_id=migration_id,
            )
        if dry_run:
            return await self._database_restorer.plan(migration_id)
        return await self._database_restorer.restore(migration_id)


def _as_list(phase: str | Sequence[str] | None) -> list[str]:
    if phase is None:
        return []
    if isinstance(phase, str):
        return [phase]
    return list(phase)


def _first_appearance(entries: list[ChangeLogEntry]) -> list[str]:
    return list(dict.fromkeys(e.phase for e in entries))


__all__ = [
    "IRREVERSIBLE_TYPES",
    "RollbackEngine",
    "UndoHandler",
]
