"""Telemetry setup for OpenTelemetry traces and metrics.

Configures tracing and metrics export over OTLP when OTLP_ENABLED=true,
otherwise installs in-process providers that export nothing. Recording
helpers are safe to call before create_metrics() has run.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from ralph.config import RalphConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
iterations_counter: metrics.Counter
retries_counter: metrics.Counter
halts_counter: metrics.Counter
agent_duration: metrics.Histogram


def setup_telemetry(config: RalphConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry with optional OTLP export.

    Args:
        config: Ralph configuration with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and config.otlp_endpoint:
        # Import OTLP exporters only when needed
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        trace_provider = TracerProvider()
        trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
        )
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=config.otlp_endpoint)
        )
        metrics.set_meter_provider(MeterProvider(metric_readers=[metric_reader]))
    else:
        trace.set_tracer_provider(TracerProvider())
        metrics.set_meter_provider(MeterProvider())

    tracer = trace.get_tracer(config.service_name)
    meter = metrics.get_meter(config.service_name)

    return tracer, meter


def create_metrics(meter: metrics.Meter) -> None:
    """Create metric instruments for session tracking.

    Counters:
    - Build iterations (by status)
    - Retries (by error kind)
    - Halts (by error kind)

    Histogram:
    - Agent call duration

    Args:
        meter: OpenTelemetry meter for creating instruments
    """
    global iterations_counter, retries_counter, halts_counter, agent_duration

    iterations_counter = meter.create_counter(
        "ralph_iterations_total",
        description="Total build iterations",
    )

    retries_counter = meter.create_counter(
        "ralph_retries_total",
        description="Total retried agent calls",
    )

    halts_counter = meter.create_counter(
        "ralph_halts_total",
        description="Total loop halts on fatal or critical errors",
    )

    agent_duration = meter.create_histogram(
        "ralph_agent_duration_seconds",
        description="Agent invocation duration",
        unit="s",
    )


def record_iteration(session_id: str, status: str, duration_seconds: float) -> None:
    """Record one build iteration if instruments exist."""
    try:
        iterations_counter.add(1, {"session": session_id, "status": status})
        agent_duration.record(duration_seconds, {"session": session_id})
    except NameError:
        # Instruments not created - telemetry disabled
        pass


def record_retry(kind: str) -> None:
    try:
        retries_counter.add(1, {"kind": kind})
    except NameError:
        pass


def record_halt(session_id: str, kind: str) -> None:
    try:
        halts_counter.add(1, {"session": session_id, "kind": kind})
    except NameError:
        pass
