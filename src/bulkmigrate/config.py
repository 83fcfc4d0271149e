"""
Runtime settings for the migration orchestration core.

Loading the values (environment, settings file, CMS plugin config) is the
host application's concern. This module only defines the values, their
defaults and their validation.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any

# Keys used by the host application's plugin configuration.
_CAMEL_CASE_KEYS: dict[str, str] = {
    "maxRetries": "max_retries",
    "retryDelay": "retry_delay_ms",
    "retryDelayMs": "retry_delay_ms",
    "lockTimeoutSeconds": "lock_timeout_seconds",
    "lockAcquireTimeoutSeconds": "lock_acquire_timeout_seconds",
    "lockPollIntervalSeconds": "lock_poll_interval_seconds",
    "checkpointRetentionHours": "checkpoint_retention_hours",
    "checkpointEveryBatches": "checkpoint_every_batches",
    "changelogFlushEvery": "changelog_flush_every",
    "lockName": "lock_name",
}


@dataclass(frozen=True)
class MigrationSettings:
    """
    Settings consumed by the lock, checkpoint, change-log and retry components.

    Attributes:
        max_retries: Total attempts per retriable operation
        retry_delay_ms: Base backoff delay; attempt N waits delay * 2**(N-1)
        lock_timeout_seconds: Lifetime of a lock record before it is
            considered stale and may be reclaimed (default 12 hours)
        lock_acquire_timeout_seconds: How long ``acquire`` polls by default
        lock_poll_interval_seconds: Pause between acquire attempts
        checkpoint_retention_hours: Age after which checkpoints are removed
            by ``cleanup_old_checkpoints``
        checkpoint_every_batches: How many batches a phase executor should
            process between full checkpoints
        changelog_flush_every: Buffered entries that trigger an automatic flush
        lock_name: Name of the singleton lock record

    Example:
        >>> settings = MigrationSettings.from_mapping({"maxRetries": 5})
        >>> settings.max_retries
        5
    """

    max_retries: int = 3
    retry_delay_ms: int = 1000
    lock_timeout_seconds: int = 43200
    lock_acquire_timeout_seconds: float = 3.0
    lock_poll_interval_seconds: float = 0.5
    checkpoint_retention_hours: int = 72
    checkpoint_every_batches: int = 1
    changelog_flush_every: int = 5
    lock_name: str = "migration_lock"

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.max_retries < 1:
            raise ValueError(
                f"max_retries must be at least 1, got {self.max_retries}. "
                "Use 1 to disable retries."
            )
        if self.retry_delay_ms < 0:
            raise ValueError(f"retry_delay_ms must be >= 0, got {self.retry_delay_ms}")
        if self.lock_timeout_seconds <= 0:
            raise ValueError(
                f"lock_timeout_seconds must be positive, got {self.lock_timeout_seconds}"
            )
        if self.lock_acquire_timeout_seconds < 0:
            raise ValueError(
                "lock_acquire_timeout_seconds must be >= 0, "
                f"got {self.lock_acquire_timeout_seconds}"
            )
        if self.lock_poll_interval_seconds <= 0:
            raise ValueError(
                "lock_poll_interval_seconds must be positive, "
                f"got {self.lock_poll_interval_seconds}"
            )
        if self.checkpoint_retention_hours < 0:
            raise ValueError(
                "checkpoint_retention_hours must be >= 0, "
                f"got {self.checkpoint_retention_hours}"
            )
        if self.checkpoint_every_batches < 1:
            raise ValueError(
                f"checkpoint_every_batches must be positive, got {self.checkpoint_every_batches}"
            )
        if self.changelog_flush_every < 1:
            raise ValueError(
                f"changelog_flush_every must be positive, got {self.changelog_flush_every}"
            )
        if not self.lock_name:
            raise ValueError("lock_name must not be empty")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> MigrationSettings:
        """
        Build settings from a configuration mapping.

        Accepts both the camelCase keys of the plugin configuration and the
        snake_case attribute names. Unknown keys are ignored.

        Args:
            values: Raw configuration values

        Returns:
            Validated MigrationSettings
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in values.items():
            name = _CAMEL_CASE_KEYS.get(key, key)
            if name in known:
                kwargs[name] = value
        return cls(**kwargs)


__all__ = ["MigrationSettings"]
