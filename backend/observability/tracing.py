"""
Tracing utilities for OpenTelemetry.

Provides the @traced decorator, get_tracer() and current trace id lookup.
"""

import functools
import inspect
import logging
from typing import Any, Callable, Optional, TypeVar, Union

from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

_DEFAULT_TRACER_NAME = "genealogy-access-api"


def get_tracer(name: Optional[str] = None) -> trace.Tracer:
    """
    Get an OpenTelemetry tracer instance.

    Args:
        name: Optional tracer name. Defaults to "genealogy-access-api".

    Returns:
        Tracer instance for creating spans.
    """
    return trace.get_tracer(name or _DEFAULT_TRACER_NAME)


def traced(
    _func: Optional[Callable] = None,
    *,
    name: Optional[str] = None,
    kind: SpanKind = SpanKind.INTERNAL,
) -> Union[Callable[[F], F], F]:
    """
    Decorator to create a span around a sync or async function.

    Example:
        @traced
        def normalize(...):
            ...

        @traced(name="usage.check_and_reserve")
        async def check_and_reserve(...):
            ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                with get_tracer().start_as_current_span(span_name, kind=kind) as span:
                    try:
                        result = await func(*args, **kwargs)
                        span.set_status(Status(StatusCode.OK))
                        return result
                    except Exception as e:
                        span.set_status(Status(StatusCode.ERROR, str(e)))
                        span.record_exception(e)
                        raise

            return async_wrapper  # type: ignore

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with get_tracer().start_as_current_span(span_name, kind=kind) as span:
                try:
                    result = func(*args, **kwargs)
                    span.set_status(Status(StatusCode.OK))
                    return result
                except Exception as e:
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    span.record_exception(e)
                    raise

        return sync_wrapper  # type: ignore

    if _func is not None:
        return decorator(_func)

    return decorator


def add_span_attributes(attributes: dict) -> None:
    """Add attributes to the current span, if one is recording."""
    span = trace.get_current_span()
    if span and span.is_recording():
        for key, value in attributes.items():
            span.set_attribute(key, value)


def get_current_trace_id() -> Optional[str]:
    """
    Get the current trace ID as a hex string.

    Returns:
        Trace ID string or None if no active span.
    """
    span = trace.get_current_span()
    if span and span.is_recording():
        span_context = span.get_span_context()
        if span_context.is_valid:
            return format(span_context.trace_id, "032x")
    return None
