"""
OpenTelemetry availability detection for bulkmigrate.

OpenTelemetry is an optional dependency. Every component that traces goes
through :func:`bulkmigrate.observability.create_tracer`, which consults
``OTEL_AVAILABLE`` and falls back to a no-op tracer when the SDK is missing.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from opentelemetry.trace import Tracer

# Optional OpenTelemetry import - single source of truth
try:
    from opentelemetry import trace

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None  # type: ignore[assignment]


def get_tracer(name: str) -> Tracer | None:
    """
    Get an OpenTelemetry tracer if available.

    Args:
        name: The name for the tracer (typically __name__ of the module)

    Returns:
        OpenTelemetry Tracer if available, None otherwise
    """
    if not OTEL_AVAILABLE:
        return None
    return trace.get_tracer(name)


__all__ = [
    "OTEL_AVAILABLE",
    "get_tracer",
]
