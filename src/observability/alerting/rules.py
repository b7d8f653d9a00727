"""Post-hoc alert rules evaluated against a finalized trace."""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from observability.tracing.models import AgentTrace

COST_LIMIT = 0.50
TURN_LIMIT = 15
TOOL_ERROR_RATE_LIMIT = 0.3
DURATION_LIMIT_MS = 120_000


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AlertRule:
    name: str
    severity: Severity
    condition: Callable[[AgentTrace], bool]
    message: Callable[[AgentTrace], str]


@dataclass(frozen=True)
class Alert:
    timestamp: str
    trace_id: str
    rule: str
    severity: Severity
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "traceId": self.trace_id,
            "rule": self.rule,
            "severity": self.severity.value,
            "message": self.message,
        }


def _tool_errors(trace: AgentTrace) -> tuple[int, int]:
    tools = trace.tool_spans
    errors = [span for span in tools if span.attributes.get("isError")]
    return len(errors), len(tools)


def _tool_error_rate_exceeded(trace: AgentTrace) -> bool:
    errors, total = _tool_errors(trace)
    return total > 0 and errors / total > TOOL_ERROR_RATE_LIMIT


DEFAULT_RULES: tuple[AlertRule, ...] = (
    AlertRule(
        name="high_cost",
        severity=Severity.CRITICAL,
        condition=lambda t: t.total_cost > COST_LIMIT,
        message=lambda t: f"Trace {t.trace_id} cost ${t.total_cost:.3f} (limit ${COST_LIMIT:.2f})",
    ),
    AlertRule(
        name="high_turn_count",
        severity=Severity.WARNING,
        condition=lambda t: len(t.generation_spans) > TURN_LIMIT,
        message=lambda t: f"Trace {t.trace_id} used {len(t.generation_spans)} turns - possible loop",
    ),
    AlertRule(
        name="tool_error_rate",
        severity=Severity.WARNING,
        condition=_tool_error_rate_exceeded,
        message=lambda t: "Trace {} had {}/{} tool errors (>30%)".format(t.trace_id, *_tool_errors(t)),
    ),
    AlertRule(
        name="slow_execution",
        severity=Severity.WARNING,
        condition=lambda t: t.duration_ms() > DURATION_LIMIT_MS,
        message=lambda t: f"Trace {t.trace_id} took {t.duration_ms() / 1000:g}s (>2min)",
    ),
)
