"""
Fixtures for observability tests.

In-memory tracer and meter providers are installed once per session; each
test gets the shared reader/capture with AccessMetrics instruments rebound.
"""

import pytest
from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor

from backend.observability import AccessMetrics
from tests.fixtures.otel import SpanCapture

_capture = SpanCapture()
_reader = InMemoryMetricReader()


@pytest.fixture(scope="session", autouse=True)
def _install_providers():
    tracer_provider = TracerProvider()
    tracer_provider.add_span_processor(SimpleSpanProcessor(_capture.exporter))
    trace.set_tracer_provider(tracer_provider)
    metrics.set_meter_provider(MeterProvider(metric_readers=[_reader]))
    yield


@pytest.fixture
def span_capture() -> SpanCapture:
    """Captured spans, cleared before each test."""
    _capture.clear()
    yield _capture
    _capture.clear()


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    """Shared reader. Values are cumulative, so compare before/after."""
    AccessMetrics.reset()
    yield _reader
    AccessMetrics.reset()
