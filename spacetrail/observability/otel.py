"""OpenTelemetry wiring with a Prometheus fallback for transcript ingestion."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from spacetrail import config

logger = logging.getLogger("spacetrail.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_batches_counter: Any | None = None
_batch_latency_hist: Any | None = None
_bytes_counter: Any | None = None
_tool_counter: Any | None = None

_prom_enabled = False
_prom_batches_counter: Any | None = None
_prom_batch_latency_hist: Any | None = None
_prom_bytes_counter: Any | None = None
_prom_tool_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip().rstrip("/")
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _label(value: str | None) -> str:
    return (value or "").strip() or "unknown"


def _start_prometheus() -> None:
    global _prom_enabled, _prom_batches_counter, _prom_batch_latency_hist
    global _prom_bytes_counter, _prom_tool_counter

    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        _prom_batches_counter = Counter(
            "spacetrail_ingest_batches_total",
            "Transcript batches handed to the reconciler",
            ["result", "agent"],
        )
        _prom_batch_latency_hist = Histogram(
            "spacetrail_ingest_latency_ms",
            "Read plus reconcile latency per transcript batch",
            ["result", "agent"],
        )
        _prom_bytes_counter = Counter(
            "spacetrail_transcript_bytes_total",
            "Transcript bytes consumed by the incremental reader",
            ["agent"],
        )
        _prom_tool_counter = Counter(
            "spacetrail_tool_invocations_total",
            "Tool invocations recorded as activities",
            ["tool", "agent"],
        )
        _prom_enabled = True
        logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
    except (ImportError, OSError, ValueError) as exc:
        logger.warning("Prometheus fallback not started: %s", exc)
        _prom_enabled = False


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _batches_counter, _batch_latency_hist, _bytes_counter, _tool_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (SPACETRAIL_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    service_name = config.OTEL_SERVICE_NAME or "spacetrail"
    resource = Resource.create({"service.name": service_name, "service.namespace": "spacetrail"})

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(
        endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces") or None
    )
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(
            endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics") or None
        )
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("spacetrail.ingest")

    _batches_counter = meter.create_counter(
        "spacetrail_ingest_batches_total",
        unit="1",
        description="Transcript batches handed to the reconciler",
    )
    _batch_latency_hist = meter.create_histogram(
        "spacetrail_ingest_latency_ms",
        unit="ms",
        description="Read plus reconcile latency per transcript batch",
    )
    _bytes_counter = meter.create_counter(
        "spacetrail_transcript_bytes_total",
        unit="By",
        description="Transcript bytes consumed by the incremental reader",
    )
    _tool_counter = meter.create_counter(
        "spacetrail_tool_invocations_total",
        unit="1",
        description="Tool invocations recorded as activities",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = trace.get_tracer("spacetrail")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        _start_prometheus()

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    if app and _fastapi_instrumentor:
        try:
            _fastapi_instrumentor.uninstrument_app(app)
        except Exception as exc:  # noqa: BLE001
            logger.debug("FastAPI uninstrument failed: %s", exc)
    for provider in (_meter_provider, _trace_provider):
        if provider is None:
            continue
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_ingestion(result: str, duration_ms: float, *, agent: str) -> None:
    labels = {"result": _label(result), "agent": _label(agent)}
    duration = max(0.0, float(duration_ms))
    if _enabled and _batches_counter is not None:
        _batches_counter.add(1, labels)
    if _enabled and _batch_latency_hist is not None:
        _batch_latency_hist.record(duration, labels)
    if _prom_enabled and _prom_batches_counter is not None:
        _prom_batches_counter.labels(**labels).inc()
    if _prom_enabled and _prom_batch_latency_hist is not None:
        _prom_batch_latency_hist.labels(**labels).observe(duration)


def record_bytes_read(count: int, *, agent: str) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {"agent": _label(agent)}
    if _enabled and _bytes_counter is not None:
        _bytes_counter.add(safe_count, labels)
    if _prom_enabled and _prom_bytes_counter is not None:
        _prom_bytes_counter.labels(**labels).inc(safe_count)


def record_tool_invocations(tool: str, *, agent: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {"tool": _label(tool), "agent": _label(agent)}
    if _enabled and _tool_counter is not None:
        _tool_counter.add(safe_count, labels)
    if _prom_enabled and _prom_tool_counter is not None:
        _prom_tool_counter.labels(**labels).inc(safe_count)
