"""Telemetry setup for OpenTelemetry traces and metrics.

Exports traces and metrics over OTLP when OTLP_ENABLED=true; otherwise
uses in-process providers with no exporters.
"""

import logging
import os

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from specloop.config import SpecLoopConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)

# Module-level metric instruments (set by create_metrics)
iterations_counter: metrics.Counter
tasks_counter: metrics.Counter
tokens_counter: metrics.Counter
cost_counter: metrics.Counter
iteration_duration: metrics.Histogram
learnings_counter: metrics.Counter
stuck_counter: metrics.Counter


def setup_telemetry(config: SpecLoopConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry.

    If OTLP_ENABLED is not "true" or no endpoint is configured, uses no-op
    providers.

    Args:
        config: Configuration with OTLP endpoint and service name

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
    """Create metric instruments for run tracking.

    Counters: iterations (by status), tasks resolved (by status), tokens,
    cost, learnings created, stuck runs. Histogram: iteration duration.
    """
    global iterations_counter, tasks_counter, tokens_counter, cost_counter
    global iteration_duration, learnings_counter, stuck_counter

    iterations_counter = meter.create_counter(
        "specloop_iterations_total",
        description="Total agent iterations run",
    )

    tasks_counter = meter.create_counter(
        "specloop_tasks_resolved_total",
        description="Total tasks resolved",
    )

    tokens_counter = meter.create_counter(
        "specloop_tokens_total",
        description="Total tokens used",
    )

    cost_counter = meter.create_counter(
        "specloop_cost_usd_total",
        description="Total cost in USD",
    )

    iteration_duration = meter.create_histogram(
        "specloop_iteration_duration_seconds",
        description="Iteration duration",
        unit="s",
    )

    learnings_counter = meter.create_counter(
        "specloop_learnings_total",
        description="Total learnings captured",
    )

    stuck_counter = meter.create_counter(
        "specloop_stuck_runs_total",
        description="Total runs stopped as stuck",
    )
