"""Typed agent run events."""

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
    Usage,
    parse_event,
)

__all__ = [
    "AgentEnd",
    "AgentEvent",
    "AutoCompactionStart",
    "AutoRetryStart",
    "MessageEnd",
    "ToolExecutionEnd",
    "ToolExecutionStart",
    "TurnEnd",
    "TurnStart",
    "Usage",
    "parse_event",
]
