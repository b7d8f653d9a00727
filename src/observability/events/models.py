"""Agent run event kinds consumed by the tracer.

Each event kind is a frozen dataclass carrying only the fields it needs.
``parse_event`` converts the loosely typed dicts emitted by an agent loop
into these types.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar


@dataclass(frozen=True)
class Usage:
    """Token and cost accounting for one assistant message."""

    input: int = 0
    output: int = 0
    cache_read: int = 0
    cost: float = 0.0


@dataclass(frozen=True)
class TurnStart:
    kind: ClassVar[str] = "turn_start"


@dataclass(frozen=True)
class TurnEnd:
    kind: ClassVar[str] = "turn_end"


@dataclass(frozen=True)
class MessageEnd:
    """End of a message. Only assistant messages affect the trace."""

    kind: ClassVar[str] = "message_end"

    role: str
    usage: Usage | None = None
    model: str | None = None
    provider: str | None = None
    stop_reason: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class ToolExecutionStart:
    kind: ClassVar[str] = "tool_execution_start"

    tool_call_id: str
    tool_name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolExecutionEnd:
    kind: ClassVar[str] = "tool_execution_end"

    tool_call_id: str
    tool_name: str = ""
    is_error: bool = False
    result: Any = None


@dataclass(frozen=True)
class AutoRetryStart:
    kind: ClassVar[str] = "auto_retry_start"

    attempt: int | None = None
    max_attempts: int | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class AutoCompactionStart:
    kind: ClassVar[str] = "auto_compaction_start"

    reason: str | None = None


@dataclass(frozen=True)
class AgentEnd:
    kind: ClassVar[str] = "agent_end"


AgentEvent = (
    TurnStart
    | TurnEnd
    | MessageEnd
    | ToolExecutionStart
    | ToolExecutionEnd
    | AutoRetryStart
    | AutoCompactionStart
    | AgentEnd
)


def _parse_usage(raw: dict[str, Any] | None) -> Usage | None:
    if not raw:
        return None
    cost = raw.get("cost")
    if isinstance(cost, dict):
        cost = cost.get("total")
    return Usage(
        input=int(raw.get("input") or 0),
        output=int(raw.get("output") or 0),
        cache_read=int(raw.get("cacheRead") or raw.get("cache_read") or 0),
        cost=float(cost or 0.0),
    )


def parse_event(data: dict[str, Any]) -> AgentEvent | None:
    """Build a typed event from an agent-loop dict; unknown kinds return None."""
    kind = data.get("type")

    if kind == "turn_start":
        return TurnStart()
    if kind == "turn_end":
        return TurnEnd()
    if kind == "message_end":
        message = data.get("message") or {}
        return MessageEnd(
            role=message.get("role", ""),
            usage=_parse_usage(message.get("usage")),
            model=message.get("model"),
            provider=message.get("provider"),
            stop_reason=message.get("stopReason"),
            error_message=message.get("errorMessage"),
        )
    if kind == "tool_execution_start":
        return ToolExecutionStart(
            tool_call_id=data["toolCallId"],
            tool_name=data.get("toolName", ""),
            args=data.get("args") or {},
        )
    if kind == "tool_execution_end":
        return ToolExecutionEnd(
            tool_call_id=data["toolCallId"],
            tool_name=data.get("toolName", ""),
            is_error=bool(data.get("isError")),
            result=data.get("result"),
        )
    if kind == "auto_retry_start":
        return AutoRetryStart(
            attempt=data.get("attempt"),
            max_attempts=data.get("maxAttempts"),
            error_message=data.get("errorMessage"),
        )
    if kind == "auto_compaction_start":
        return AutoCompactionStart(reason=data.get("reason"))
    if kind == "agent_end":
        return AgentEnd()
    return None
