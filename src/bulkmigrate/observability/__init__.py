"""
Observability utilities for bulkmigrate.

Provides the composition-based tracer used by every manager and store, and
the standard span attribute names.

Note:
    OpenTelemetry is an optional dependency. All utilities in this module
    handle the case where OpenTelemetry is not installed.
"""

from bulkmigrate.observability.attributes import (
    ATTR_BATCH,
    ATTR_CHANGE_COUNT,
    ATTR_CHANGE_TYPE,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ERROR_TYPE,
    ATTR_LOCK_ACQUIRED,
    ATTR_LOCK_NAME,
    ATTR_LOCK_OWNER,
    ATTR_LOCK_TIMEOUT,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_PHASE,
    ATTR_MIGRATION_STATUS,
    ATTR_OPERATION_ID,
    ATTR_PROCESSED_COUNT,
    ATTR_RETRY_COUNT,
    ATTR_ROLLBACK_DIRECTION,
    ATTR_ROLLBACK_DRY_RUN,
)
from bulkmigrate.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from bulkmigrate.observability.tracing import OTEL_AVAILABLE, get_tracer

__all__ = [
    # Tracing
    "OTEL_AVAILABLE",
    "get_tracer",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    # Attributes
    "ATTR_BATCH",
    "ATTR_CHANGE_COUNT",
    "ATTR_CHANGE_TYPE",
    "ATTR_DB_OPERATION",
    "ATTR_DB_SYSTEM",
    "ATTR_ERROR_TYPE",
    "ATTR_LOCK_ACQUIRED",
    "ATTR_LOCK_NAME",
    "ATTR_LOCK_OWNER",
    "ATTR_LOCK_TIMEOUT",
    "ATTR_MIGRATION_ID",
    "ATTR_MIGRATION_PHASE",
    "ATTR_MIGRATION_STATUS",
    "ATTR_OPERATION_ID",
    "ATTR_PROCESSED_COUNT",
    "ATTR_RETRY_COUNT",
    "ATTR_ROLLBACK_DIRECTION",
    "ATTR_ROLLBACK_DRY_RUN",
]
