"""Tracing module for OpenTelemetry integration."""

from reportcast.core.tracing.telemetry import create_span, get_tracer, setup_telemetry

__all__ = [
    "setup_telemetry",
    "get_tracer",
    "create_span",
]
