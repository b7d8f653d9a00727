"""Span-tree tracer for agent runs.

``reduce_event`` is a pure function from (state, event) to a new state.
``Tracer`` wraps it with id generation, finalization and persistence.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import aiofiles

from observability.events.models import (
    AgentEnd,
    AgentEvent,
    AutoCompactionStart,
    AutoRetryStart,
    MessageEnd,
    ToolExecutionEnd,
    ToolExecutionStart,
    TurnEnd,
    TurnStart,
    parse_event,
)
from observability.paths import DEFAULT_TRACE_DIR
from observability.tracing.exporters import NullSpanExporter, SpanExporter
from observability.tracing.models import (
    AgentSpan,
    AgentTrace,
    SpanType,
    new_span_id,
    new_trace_id,
    now_ms,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TracerState:
    """Trace under construction plus the bookkeeping needed to pair events.

    ``open_tools`` maps an external tool-call id to the span it opened.
    """

    trace: AgentTrace
    current_turn_span_id: str | None = None
    open_tools: dict[str, str] = field(default_factory=dict)


def _replace_span(trace: AgentTrace, span_id: str, update: Callable[[AgentSpan], AgentSpan]) -> AgentTrace:
    spans = tuple(update(span) if span.span_id == span_id else span for span in trace.spans)
    return replace(trace, spans=spans)


def _find_span(trace: AgentTrace, span_id: str | None) -> AgentSpan | None:
    if span_id is None:
        return None
    for span in trace.spans:
        if span.span_id == span_id:
            return span
    return None


def reduce_event(
    state: TracerState,
    event: AgentEvent,
    now: int,
    span_id_factory: Callable[[], str] = new_span_id,
) -> TracerState:
    """Apply one event to the tracer state and return the new state."""
    trace = state.trace

    if isinstance(event, TurnStart):
        span = AgentSpan(
            span_id=span_id_factory(),
            type=SpanType.GENERATION,
            name="agent_turn",
            started_at=now,
        )
        return replace(
            state,
            trace=replace(trace, spans=trace.spans + (span,)),
            current_turn_span_id=span.span_id,
        )

    if isinstance(event, TurnEnd):
        if _find_span(trace, state.current_turn_span_id) is None:
            return state
        return replace(
            state,
            trace=_replace_span(trace, state.current_turn_span_id, lambda s: replace(s, ended_at=now)),
        )

    if isinstance(event, MessageEnd):
        if event.role != "assistant":
            return state
        usage = event.usage
        if usage is not None:
            trace = replace(
                trace,
                total_cost=trace.total_cost + usage.cost,
                total_tokens=trace.total_tokens.add(usage),
            )
        if _find_span(trace, state.current_turn_span_id) is not None:
            trace = _replace_span(
                trace,
                state.current_turn_span_id,
                lambda s: s.with_attributes(
                    model=event.model,
                    provider=event.provider,
                    stopReason=event.stop_reason,
                    inputTokens=usage.input if usage else None,
                    outputTokens=usage.output if usage else None,
                    cacheReadTokens=usage.cache_read if usage else None,
                    cost=usage.cost if usage else None,
                    errorMessage=event.error_message,
                ),
            )
        if event.stop_reason == "error":
            trace = replace(
                trace,
                success=False,
                error=event.error_message or "Assistant generation failed",
            )
        return replace(state, trace=trace)

    if isinstance(event, ToolExecutionStart):
        span = AgentSpan(
            span_id=span_id_factory(),
            type=SpanType.TOOL_EXECUTION,
            name=event.tool_name,
            started_at=now,
            parent_span_id=state.current_turn_span_id,
            attributes={"args": event.args},
        )
        return replace(
            state,
            trace=replace(trace, spans=trace.spans + (span,)),
            open_tools={**state.open_tools, event.tool_call_id: span.span_id},
        )

    if isinstance(event, ToolExecutionEnd):
        span_id = state.open_tools.get(event.tool_call_id)
        if span_id is None:
            return state
        open_tools = {k: v for k, v in state.open_tools.items() if k != event.tool_call_id}
        span = _find_span(trace, span_id)
        if span is None:
            return replace(state, open_tools=open_tools)

        trace = _replace_span(
            trace,
            span_id,
            lambda s: replace(
                s.with_attributes(durationMs=now - s.started_at, isError=event.is_error),
                ended_at=now,
            ),
        )
        if event.is_error:
            trace = replace(trace, success=False)
        return replace(state, trace=trace, open_tools=open_tools)

    if isinstance(event, AutoRetryStart):
        attempt = event.attempt
        span = AgentSpan(
            span_id=f"span_retry_{attempt if attempt is not None else now}",
            type=SpanType.RETRY,
            name=f"retry_attempt_{attempt if attempt is not None else 'unknown'}",
            started_at=now,
            attributes={
                "attempt": attempt,
                "maxAttempts": event.max_attempts,
                "errorMessage": event.error_message,
            },
        )
        return replace(state, trace=replace(trace, spans=trace.spans + (span,)))

    if isinstance(event, AutoCompactionStart):
        span = AgentSpan(
            span_id=span_id_factory(),
            type=SpanType.COMPACTION,
            name="auto_compaction",
            started_at=now,
        )
        return replace(state, trace=replace(trace, spans=trace.spans + (span,)))

    if isinstance(event, AgentEnd):
        return replace(state, trace=replace(trace, ended_at=now))

    return state


class Tracer:
    """Builds and persists the trace for one agent run."""

    def __init__(
        self,
        session_id: str | None = None,
        user_id: str | None = None,
        task_type: str | None = None,
        trace_dir: str | Path = DEFAULT_TRACE_DIR,
        exporter: SpanExporter | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._clock = clock
        started_at = clock()
        self._state = TracerState(
            trace=AgentTrace(
                trace_id=new_trace_id(),
                session_id=session_id or f"session_{started_at}",
                started_at=started_at,
                user_id=user_id,
                task_type=task_type,
            )
        )
        self.trace_dir = Path(trace_dir)
        self.exporter = exporter or NullSpanExporter()
        self._finalized: AgentTrace | None = None

    @property
    def trace_id(self) -> str:
        return self._state.trace.trace_id

    def process_event(self, event: AgentEvent | dict[str, Any]) -> None:
        if isinstance(event, dict):
            event = parse_event(event)
            if event is None:
                return
        if self._finalized is not None:
            logger.debug(f"Ignoring {event.kind} for finalized trace {self.trace_id}")
            return
        self._state = reduce_event(self._state, event, self._clock())

    def get_trace(self) -> AgentTrace:
        return self._finalized or self._state.trace

    def finalize(self) -> AgentTrace:
        """Stamp the end time (if unset) and freeze the trace. Idempotent."""
        if self._finalized is not None:
            return self._finalized

        trace = self._state.trace
        if trace.ended_at is None:
            trace = replace(trace, ended_at=self._clock())
        self._finalized = trace

        for span in trace.spans:
            self.exporter.record_span(trace.trace_id, span)
        return trace

    async def save(self) -> Path:
        """Persist the finalized trace as ``<trace_dir>/<trace_id>.json``."""
        trace = self.finalize()
        self.trace_dir.mkdir(parents=True, exist_ok=True)
        path = self.trace_dir / f"{trace.trace_id}.json"

        async with aiofiles.open(path, "w") as f:
            await f.write(json.dumps(trace.to_dict(), indent=2, default=str))

        logger.info("Trace saved", extra={"trace_id": trace.trace_id, "path": str(path)})
        await self.exporter.flush()
        return path
