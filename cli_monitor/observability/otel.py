"""OpenTelemetry + Prometheus fallback wiring for the CLI monitor daemon."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from cli_monitor import config

logger = logging.getLogger("cli_monitor.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None

_parse_counter: Any | None = None
_parse_latency_hist: Any | None = None
_parser_failure_counter: Any | None = None
_transport_counter: Any | None = None
_circuit_counter: Any | None = None

_prom_enabled = False
_prom_parse_counter: Any | None = None
_prom_parse_latency_hist: Any | None = None
_prom_parser_failure_counter: Any | None = None
_prom_transport_counter: Any | None = None
_prom_circuit_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _label(value: str | None) -> str:
    return (value or "").strip() or "unknown"


def _start_prometheus() -> None:
    global _prom_enabled
    global _prom_parse_counter, _prom_parse_latency_hist, _prom_parser_failure_counter
    global _prom_transport_counter, _prom_circuit_counter

    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        _prom_parse_counter = Counter(
            "cli_monitor_parse_events_total",
            "Transcript events applied to the session store",
            ["result"],
        )
        _prom_parse_latency_hist = Histogram(
            "cli_monitor_parse_latency_ms",
            "Latency of one incremental parse call",
            ["result"],
        )
        _prom_parser_failure_counter = Counter(
            "cli_monitor_parser_failures_total",
            "Transcript lines skipped by the parser",
            ["reason"],
        )
        _prom_transport_counter = Counter(
            "cli_monitor_transport_calls_total",
            "Outbound calls to the monitoring server",
            ["operation", "result"],
        )
        _prom_circuit_counter = Counter(
            "cli_monitor_circuit_transitions_total",
            "Circuit breaker state transitions",
            ["state"],
        )
        _prom_enabled = True
        logger.info("Prometheus metrics server listening on port %s", config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus metrics not started: %s", exc)
        _prom_enabled = False


def initialize() -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider
    global _parse_counter, _parse_latency_hist, _parser_failure_counter
    global _transport_counter, _circuit_counter

    if _initialized:
        return
    _initialized = True

    if config.PROM_PORT > 0:
        _start_prometheus()

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CLI_MONITOR_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "cli-monitor"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "cli-monitor",
            "service.version": config.VERSION,
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=metrics_endpoint or None))
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("cli_monitor")

    _parse_counter = meter.create_counter(
        "cli_monitor_parse_events_total",
        unit="1",
        description="Transcript events applied to the session store",
    )
    _parse_latency_hist = meter.create_histogram(
        "cli_monitor_parse_latency_ms",
        unit="ms",
        description="Latency of one incremental parse call",
    )
    _parser_failure_counter = meter.create_counter(
        "cli_monitor_parser_failures_total",
        unit="1",
        description="Transcript lines skipped by the parser",
    )
    _transport_counter = meter.create_counter(
        "cli_monitor_transport_calls_total",
        unit="1",
        description="Outbound calls to the monitoring server",
    )
    _circuit_counter = meter.create_counter(
        "cli_monitor_circuit_transitions_total",
        unit="1",
        description="Circuit breaker state transitions",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = trace.get_tracer("cli_monitor")
    _enabled = True

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown() -> None:
    global _enabled
    if not _initialized:
        return
    for provider in (_meter_provider, _trace_provider):
        if provider is None:
            continue
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Telemetry provider shutdown failed: %s", exc)
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


def record_parse(result: str, events: int, duration_ms: float) -> None:
    labels = {"result": _label(result)}
    safe_events = max(0, int(events))
    if _enabled and _parse_counter is not None and safe_events:
        _parse_counter.add(safe_events, labels)
    if _enabled and _parse_latency_hist is not None:
        _parse_latency_hist.record(max(0.0, float(duration_ms)), labels)
    if _prom_enabled and _prom_parse_counter is not None and safe_events:
        _prom_parse_counter.labels(**labels).inc(safe_events)
    if _prom_enabled and _prom_parse_latency_hist is not None:
        _prom_parse_latency_hist.labels(**labels).observe(max(0.0, float(duration_ms)))


def record_parser_failure(reason: str) -> None:
    labels = {"reason": _label(reason)}
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(1, labels)
    if _prom_enabled and _prom_parser_failure_counter is not None:
        _prom_parser_failure_counter.labels(**labels).inc()


def record_transport_call(operation: str, result: str) -> None:
    labels = {"operation": _label(operation), "result": _label(result)}
    if _enabled and _transport_counter is not None:
        _transport_counter.add(1, labels)
    if _prom_enabled and _prom_transport_counter is not None:
        _prom_transport_counter.labels(**labels).inc()


def record_circuit_state(state: str) -> None:
    labels = {"state": _label(state)}
    if _enabled and _circuit_counter is not None:
        _circuit_counter.add(1, labels)
    if _prom_enabled and _prom_circuit_counter is not None:
        _prom_circuit_counter.labels(**labels).inc()
