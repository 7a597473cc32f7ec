"""
OpenTelemetry observability package for the access API.

Usage:
    from backend.observability import (
        configure_observability,
        get_tracer,
        traced,
        AccessMetrics,
    )

    # Initialize in application startup
    configure_observability(settings)

    # Use decorator for automatic tracing
    @traced
    async def my_function():
        ...

    # Record metrics
    AccessMetrics.rate_limit_hits_total().add(1, {"scope": "ip"})
"""

from backend.observability.config import (
    configure_observability,
    instrument_app,
    shutdown_observability,
)
from backend.observability.metrics import AccessMetrics
from backend.observability.tracing import (
    add_span_attributes,
    get_current_trace_id,
    get_tracer,
    traced,
)

__all__ = [
    # Configuration
    "configure_observability",
    "instrument_app",
    "shutdown_observability",
    # Tracing
    "get_tracer",
    "traced",
    "add_span_attributes",
    "get_current_trace_id",
    # Metrics
    "AccessMetrics",
]
