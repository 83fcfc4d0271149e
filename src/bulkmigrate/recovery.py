"""
Classified retry policy for fallible migration operations.

Errors are split into two categories:

- FATAL: retrying cannot change the outcome (missing file, permission
  denied, invalid input, constraint violation). Re-raised immediately.
- RETRIABLE: everything else (timeouts, dropped connections, temporary
  locks). Retried with exponential backoff up to ``max_retries`` attempts.

Classification is a plain function over the error message, kept separate
from the retry loop so the pattern list can be replaced.

Example:
    >>> recovery = ErrorRecoveryManager(max_retries=3, retry_delay_ms=1000)
    >>> await recovery.retry_operation(
    ...     lambda: provider.copy(src, target, dst),
    ...     operation_id=f"copy:{asset_id}",
    ... )
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, TypeVar

from bulkmigrate.clock import Clock, SystemClock
from bulkmigrate.config import MigrationSettings
from bulkmigrate.exceptions import RetryExhaustedError
from bulkmigrate.observability import (
    ATTR_ERROR_TYPE,
    ATTR_OPERATION_ID,
    ATTR_RETRY_COUNT,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorCategory(Enum):
    """Outcome of classifying an operation failure."""

    FATAL = "fatal"
    """Retrying cannot succeed; abort this operation."""

    RETRIABLE = "retriable"
    """May succeed on a later attempt."""

    @property
    def should_retry(self) -> bool:
        """True only for RETRIABLE errors."""
        return self is ErrorCategory.RETRIABLE


DEFAULT_FATAL_PATTERNS: tuple[str, ...] = (
    "does not exist",
    "permission denied",
    "access denied",
    "invalid",
    "constraint violation",
)
"""Lower-case message fragments that mark an error as fatal."""


def classify_error(
    error: BaseException,
    patterns: Sequence[str] = DEFAULT_FATAL_PATTERNS,
) -> ErrorCategory:
    """
    Classify an error by case-insensitive substring match on its message.

    Args:
        error: The exception raised by an operation
        patterns: Fatal message fragments, checked in order

    Returns:
        FATAL if any pattern occurs in the message, RETRIABLE otherwise

    Example:
        >>> classify_error(FileNotFoundError("File does not exist"))
        <ErrorCategory.FATAL: 'fatal'>
        >>> classify_error(TimeoutError("read timed out"))
        <ErrorCategory.RETRIABLE: 'retriable'>
    """
    message = str(error).lower()
    for pattern in patterns:
        if pattern.lower() in message:
            return ErrorCategory.FATAL
    return ErrorCategory.RETRIABLE


class ErrorClassifier(Protocol):
    """Anything that maps an exception to an ErrorCategory."""

    def __call__(self, error: BaseException) -> ErrorCategory: ...


class FatalPatternClassifier:
    """
    Callable classifier over a configurable list of fatal patterns.

    Example:
        >>> classifier = FatalPatternClassifier(extra_patterns=["quota exceeded"])
        >>> recovery = ErrorRecoveryManager(classifier=classifier)
    """

    def __init__(
        self,
        patterns: Sequence[str] = DEFAULT_FATAL_PATTERNS,
        extra_patterns: Sequence[str] = (),
    ) -> None:
        self.patterns = tuple(p.lower() for p in (*patterns, *extra_patterns))

    def __call__(self, error: BaseException) -> ErrorCategory:
        return classify_error(error, self.patterns)


@dataclass
class RetryRecord:
    """
    Run-scoped retry state for one operation ID. Never persisted.

    Attributes:
        operation_id: Caller-supplied operation identifier
        attempts: Failed attempts so far in the current call
        last_error: Message of the most recent failure
        last_category: Classification of the most recent failure
    """

    operation_id: str
    attempts: int = 0
    last_error: str | None = None
    last_category: ErrorCategory | None = None


class ErrorRecoveryManager:
    """
    Runs operations under the classified retry policy.

    Args:
        max_retries: Total attempts per ``retry_operation`` call (>= 1)
        retry_delay_ms: Base delay; the wait after failed attempt N is
            ``retry_delay_ms * 2**(N-1)`` milliseconds
        classifier: Error classifier (defaults to the fatal pattern list)
        clock: Time source for backoff sleeps
        tracer: Optional custom Tracer instance
        enable_tracing: Whether to enable OpenTelemetry tracing
    """

    def __init__(
        self,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        *,
        classifier: ErrorClassifier | None = None,
        clock: Clock | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")
        if retry_delay_ms < 0:
            raise ValueError(f"retry_delay_ms must be >= 0, got {retry_delay_ms}")
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self._classifier: ErrorClassifier = classifier or FatalPatternClassifier()
        self._clock = clock or SystemClock()
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._records: dict[str, RetryRecord] = {}
        self._total_retries = 0
        self._operations_retried: set[str] = set()

    @classmethod
    def from_settings(cls, settings: MigrationSettings, **kwargs: object) -> ErrorRecoveryManager:
        """Create a manager using ``max_retries`` and ``retry_delay_ms`` from settings."""
        return cls(
            settings.max_retries,
            settings.retry_delay_ms,
            **kwargs,  # type: ignore[arg-type]
        )

    def backoff_seconds(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        return self.retry_delay_ms * (2 ** (attempt - 1)) / 1000.0

    async def retry_operation(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_id: str,
    ) -> T:
        """
        Await ``operation()`` under the retry policy.

        Args:
            operation: Zero-argument coroutine function
            operation_id: Identifier used for retry bookkeeping and logs

        Returns:
            The operation's result

        Raises:
            Exception: The original error, unchanged, if it is fatal
            RetryExhaustedError: After ``max_retries`` retriable failures;
                chained from the last underlying error
        """
        with self._tracer.span(
            "bulkmigrate.recovery.retry_operation",
            {ATTR_OPERATION_ID: operation_id},
        ) as span:
            attempt = 0
            while True:
                attempt += 1
                try:
                    result = await operation()
                except Exception as e:
                    category = self._classifier(e)
                    record = self._records.setdefault(operation_id, RetryRecord(operation_id))
                    record.attempts = attempt
                    record.last_error = str(e)
                    record.last_category = category

                    if span:
                        span.set_attribute(ATTR_RETRY_COUNT, attempt)
                        span.set_attribute(ATTR_ERROR_TYPE, type(e).__name__)

                    if not category.should_retry:
                        logger.error(
                            "Fatal error in operation %s, not retrying: %s",
                            operation_id,
                            e,
                            extra={
                                "operation_id": operation_id,
                                "attempt": attempt,
                                "error_type": type(e).__name__,
                            },
                        )
                        raise

                    if attempt >= self.max_retries:
                        logger.error(
                            "Operation %s failed after %d attempts",
                            operation_id,
                            attempt,
                            extra={
                                "operation_id": operation_id,
                                "attempts": attempt,
                                "error": str(e),
                                "error_type": type(e).__name__,
                            },
                        )
                        raise RetryExhaustedError(operation_id, attempt, e) from e

                    delay = self.backoff_seconds(attempt)
                    self._total_retries += 1
                    self._operations_retried.add(operation_id)
                    logger.warning(
                        "Retrying %s after failure (attempt %d/%d, waiting %.3fs): %s",
                        operation_id,
                        attempt,
                        self.max_retries,
                        delay,
                        e,
                        extra={
                            "operation_id": operation_id,
                            "attempt": attempt,
                            "max_retries": self.max_retries,
                            "delay_seconds": delay,
                            "error_type": type(e).__name__,
                        },
                    )
                    await self._clock.sleep(delay)
                    continue

                if self._records.pop(operation_id, None) is not None:
                    logger.info("Operation %s succeeded on attempt %d", operation_id, attempt)
                return result

    def get_retry_stats(self) -> dict[str, int]:
        """
        Cumulative retry counters for this manager instance.

        Returns:
            ``total_retries``: re-invocations performed after a retriable
            failure; ``operations_retried``: distinct operation IDs retried
            at least once
        """
        return {
            "total_retries": self._total_retries,
            "operations_retried": len(self._operations_retried),
        }

    def get_retry_record(self, operation_id: str) -> RetryRecord | None:
        """Retry state of an operation that has failed and not yet succeeded."""
        return self._records.get(operation_id)


__all__ = [
    "DEFAULT_FATAL_PATTERNS",
    "ErrorCategory",
    "ErrorClassifier",
    "ErrorRecoveryManager",
    "FatalPatternClassifier",
    "RetryRecord",
    "classify_error",
]
