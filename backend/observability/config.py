"""
OpenTelemetry SDK setup for the access API.

configure_observability() installs the global tracer and meter providers
once per process. instrument_app() attaches FastAPI server spans to a
specific app instance, so test apps built with otel disabled stay clean.
"""

import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter as GrpcMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter as GrpcSpanExporter
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter as HttpMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter as HttpSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.b3 import B3MultiFormat
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

if TYPE_CHECKING:
    from backend.settings import Settings

logger = logging.getLogger(__name__)

_initialized = False


def configure_observability(settings: "Settings") -> bool:
    """
    Install tracer and meter providers, propagators and client instrumentation.

    Args:
        settings: Application settings with the otel_* fields.

    Returns:
        True when providers are installed (now or by an earlier call).
    """
    global _initialized

    if _initialized:
        return True
    if not settings.otel_enabled:
        logger.info("OpenTelemetry disabled via settings")
        return False

    try:
        resource = _build_resource(settings)
        endpoint = settings.otel_exporter_otlp_endpoint
        protocol = settings.otel_exporter_otlp_protocol

        tracer_provider = TracerProvider(
            resource=resource,
            sampler=ParentBased(TraceIdRatioBased(settings.otel_traces_sample_rate)),
        )
        if endpoint:
            tracer_provider.add_span_processor(BatchSpanProcessor(_span_exporter(endpoint, protocol)))
        else:
            tracer_provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(tracer_provider)

        # Without a collector, AccessMetrics instruments stay no-ops
        if endpoint:
            reader = PeriodicExportingMetricReader(
                _metric_exporter(endpoint, protocol),
                export_interval_millis=settings.otel_metrics_export_interval_ms,
            )
            metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=[reader]))

        # W3C TraceContext for the web client, B3 for the edge proxies
        set_global_textmap(CompositePropagator([TraceContextTextMapPropagator(), B3MultiFormat()]))

        # Supabase (postgrest) and Anthropic both use httpx underneath
        HTTPXClientInstrumentor().instrument()
        if settings.otel_log_correlation:
            LoggingInstrumentor().instrument(set_logging_format=True)

    except Exception as e:
        logger.error("Failed to initialize OpenTelemetry: %s", e)
        return False

    _initialized = True
    logger.info(
        "OpenTelemetry initialized: service=%s, sample_rate=%.2f, endpoint=%s",
        settings.otel_service_name,
        settings.otel_traces_sample_rate,
        endpoint or "console",
    )
    return True


def instrument_app(app: FastAPI) -> None:
    """Server spans for every request handled by ``app``. No-op until configured."""
    if not _initialized:
        return
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,health/ready")


def _build_resource(settings: "Settings") -> Resource:
    attributes = {
        SERVICE_NAME: settings.otel_service_name,
        SERVICE_VERSION: "1.0.0",
        "deployment.environment": settings.environment,
    }
    if settings.git_commit:
        attributes["service.instance.id"] = settings.git_commit
    return Resource.create(attributes)


def _signal_url(endpoint: str, signal: str) -> str:
    return f"{endpoint.rstrip('/')}/v1/{signal}"


def _span_exporter(endpoint: str, protocol: str):
    if protocol == "grpc":
        return GrpcSpanExporter(endpoint=endpoint)
    return HttpSpanExporter(endpoint=_signal_url(endpoint, "traces"))


def _metric_exporter(endpoint: str, protocol: str):
    if protocol == "grpc":
        return GrpcMetricExporter(endpoint=endpoint)
    return HttpMetricExporter(endpoint=_signal_url(endpoint, "metrics"))


def shutdown_observability() -> None:
    """Flush and shut down the providers installed by configure_observability()."""
    global _initialized

    if not _initialized:
        return

    for provider in (trace.get_tracer_provider(), metrics.get_meter_provider()):
        shutdown = getattr(provider, "shutdown", None)
        if shutdown is None:
            continue
        try:
            shutdown()
        except Exception as e:
            logger.error("Error shutting down %s: %s", type(provider).__name__, e)

    _initialized = False
    logger.info("OpenTelemetry shutdown complete")
