"""Span and trace data models."""

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from observability.events.models import Usage


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_span_id() -> str:
    return f"span_{uuid.uuid4().hex[:16]}"


def new_trace_id() -> str:
    return f"trace_{uuid.uuid4().hex}"


class SpanType(str, Enum):
    GENERATION = "generation"
    TOOL_EXECUTION = "tool_execution"
    COMPACTION = "compaction"
    RETRY = "retry"


@dataclass(frozen=True)
class TokenTotals:
    input: int = 0
    output: int = 0
    cache_read: int = 0

    def add(self, usage: Usage) -> "TokenTotals":
        return TokenTotals(
            input=self.input + usage.input,
            output=self.output + usage.output,
            cache_read=self.cache_read + usage.cache_read,
        )

    def to_dict(self) -> dict[str, int]:
        return {"input": self.input, "output": self.output, "cacheRead": self.cache_read}


@dataclass(frozen=True)
class AgentSpan:
    """A timed segment of an agent run.

    Tool spans are parented to the turn that was open when they started.
    """

    span_id: str
    type: SpanType
    name: str
    started_at: int
    parent_span_id: str | None = None
    ended_at: int | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def with_attributes(self, **updates: Any) -> "AgentSpan":
        return replace(self, attributes={**self.attributes, **updates})

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"spanId": self.span_id}
        if self.parent_span_id is not None:
            data["parentSpanId"] = self.parent_span_id
        data.update(
            {
                "type": self.type.value,
                "name": self.name,
                "startedAt": self.started_at,
            }
        )
        if self.ended_at is not None:
            data["endedAt"] = self.ended_at
        data["attributes"] = dict(self.attributes)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentSpan":
        return cls(
            span_id=data["spanId"],
            type=SpanType(data["type"]),
            name=data["name"],
            started_at=data["startedAt"],
            parent_span_id=data.get("parentSpanId"),
            ended_at=data.get("endedAt"),
            attributes=dict(data.get("attributes") or {}),
        )


@dataclass(frozen=True)
class AgentTrace:
    """The span tree and aggregates for one agent run."""

    trace_id: str
    session_id: str
    started_at: int
    user_id: str | None = None
    task_type: str | None = None
    ended_at: int | None = None
    spans: tuple[AgentSpan, ...] = ()
    total_cost: float = 0.0
    total_tokens: TokenTotals = field(default_factory=TokenTotals)
    success: bool = True
    error: str | None = None

    def spans_of(self, span_type: SpanType) -> list[AgentSpan]:
        return [span for span in self.spans if span.type == span_type]

    @property
    def generation_spans(self) -> list[AgentSpan]:
        return self.spans_of(SpanType.GENERATION)

    @property
    def tool_spans(self) -> list[AgentSpan]:
        return self.spans_of(SpanType.TOOL_EXECUTION)

    def duration_ms(self, now: int | None = None) -> int:
        end = self.ended_at if self.ended_at is not None else (now if now is not None else now_ms())
        return end - self.started_at

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "traceId": self.trace_id,
            "sessionId": self.session_id,
        }
        if self.user_id is not None:
            data["userId"] = self.user_id
        if self.task_type is not None:
            data["taskType"] = self.task_type
        data["startedAt"] = self.started_at
        if self.ended_at is not None:
            data["endedAt"] = self.ended_at
        data.update(
            {
                "spans": [span.to_dict() for span in self.spans],
                "totalCost": self.total_cost,
                "totalTokens": self.total_tokens.to_dict(),
                "success": self.success,
            }
        )
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentTrace":
        tokens = data.get("totalTokens") or {}
        return cls(
            trace_id=data["traceId"],
            session_id=data["sessionId"],
            started_at=data["startedAt"],
            user_id=data.get("userId"),
            task_type=data.get("taskType"),
            ended_at=data.get("endedAt"),
            spans=tuple(AgentSpan.from_dict(s) for s in data.get("spans", [])),
            total_cost=data.get("totalCost", 0.0),
            total_tokens=TokenTotals(
                input=tokens.get("input", 0),
                output=tokens.get("output", 0),
                cache_read=tokens.get("cacheRead", 0),
            ),
            success=data.get("success", True),
            error=data.get("error"),
        )
