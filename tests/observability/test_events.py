"""Tests for agent run event parsing."""

import pytest

from observability.events.models import (
    AgentEnd,
    AutoCompactionStart,
    AutoRetryStart,
    MessageEnd,
    ToolExecutionEnd,
    ToolExecutionStart,
    TurnStart,
    Usage,
    parse_event,
)


class TestParseEvent:
    def test_message_end_with_usage(self):
        event = parse_event(
            {
                "type": "message_end",
                "message": {
                    "role": "assistant",
                    "model": "claude-sonnet-4-5",
                    "provider": "anthropic",
                    "stopReason": "toolUse",
                    "usage": {"input": 120, "output": 40, "cacheRead": 10, "cost": {"total": 0.012}},
                },
            }
        )
        assert event == MessageEnd(
            role="assistant",
            usage=Usage(input=120, output=40, cache_read=10, cost=0.012),
            model="claude-sonnet-4-5",
            provider="anthropic",
            stop_reason="toolUse",
        )

    def test_plain_cost_value(self):
        event = parse_event({"type": "message_end", "message": {"role": "assistant", "usage": {"cost": 0.5}}})
        assert event.usage.cost == 0.5
        assert event.usage.input == 0

    def test_tool_events(self):
        start = parse_event({"type": "tool_execution_start", "toolCallId": "t1", "toolName": "bash", "args": {"command": "ls"}})
        end = parse_event({"type": "tool_execution_end", "toolCallId": "t1", "toolName": "bash", "isError": True})

        assert start == ToolExecutionStart(tool_call_id="t1", tool_name="bash", args={"command": "ls"})
        assert end == ToolExecutionEnd(tool_call_id="t1", tool_name="bash", is_error=True)

    @pytest.mark.parametrize(
        "data,expected",
        [
            ({"type": "turn_start"}, TurnStart()),
            ({"type": "agent_end"}, AgentEnd()),
            ({"type": "auto_compaction_start", "reason": "overflow"}, AutoCompactionStart(reason="overflow")),
            (
                {"type": "auto_retry_start", "attempt": 2, "maxAttempts": 3, "errorMessage": "overloaded"},
                AutoRetryStart(attempt=2, max_attempts=3, error_message="overloaded"),
            ),
        ],
    )
    def test_simple_events(self, data, expected):
        assert parse_event(data) == expected

    def test_unknown_kind(self):
        assert parse_event({"type": "message_update"}) is None
        assert parse_event({}) is None

    def test_kind_is_class_level(self):
        assert TurnStart.kind == "turn_start"
        assert MessageEnd(role="user").kind == "message_end"
