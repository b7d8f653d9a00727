"""Agent run tracing."""

from observability.tracing.exporters import (
    HttpSpanExporter,
    NullSpanExporter,
    SpanExporter,
    exporter_from_config,
)
from observability.tracing.models import AgentSpan, AgentTrace, SpanType, TokenTotals
from observability.tracing.tracer import Tracer, TracerState, reduce_event

__all__ = [
    "AgentSpan",
    "AgentTrace",
    "HttpSpanExporter",
    "NullSpanExporter",
    "SpanExporter",
    "SpanType",
    "TokenTotals",
    "Tracer",
    "TracerState",
    "exporter_from_config",
    "reduce_event",
]
