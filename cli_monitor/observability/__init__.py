"""Observability helpers."""

from cli_monitor.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_parse,
    record_parser_failure,
    record_transport_call,
    record_circuit_state,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_parse",
    "record_parser_failure",
    "record_transport_call",
    "record_circuit_state",
]
