"""Post-hoc quality checks for a finished agent run."""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from observability.tracing.models import AgentTrace

COST_CEILING = 0.5
LOOP_LENGTH = 3


@dataclass(frozen=True)
class EvalCheck:
    name: str
    passed: bool
    detail: str


@dataclass(frozen=True)
class EvalResult:
    trace_id: str
    score: float
    passed: bool
    checks: list[EvalCheck] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "traceId": self.trace_id,
            "score": self.score,
            "passed": self.passed,
            "checks": [{"name": c.name, "passed": c.passed, "detail": c.detail} for c in self.checks],
        }


@dataclass(frozen=True)
class EvalCase:
    """A scripted run with the tools it is expected to call."""

    name: str
    prompt: str
    expected_tools: list[str]
    max_cost: float
    max_turns: int
    validator: Callable[[AgentTrace], bool] | None = None


EVAL_DATASET: list[EvalCase] = [
    EvalCase(
        name="create_success",
        prompt="Create a new instance named test-eval for user user_eval123",
        expected_tools=["instance_create", "report_result"],
        max_cost=0.1,
        max_turns=10,
    ),
    EvalCase(
        name="create_failure_recovery",
        prompt=(
            "Create instance named bad-test for user user_eval123 "
            "with invalid aiProvider 'nonexistent'"
        ),
        expected_tools=["instance_create", "report_result"],
        max_cost=0.15,
        max_turns=10,
        validator=lambda trace: any(span.name == "report_result" for span in trace.spans),
    ),
    EvalCase(
        name="heartbeat_normal",
        prompt="Perform health check cycle on all instances.",
        expected_tools=["bash", "report_result"],
        max_cost=0.05,
        max_turns=10,
    ),
    EvalCase(
        name="heartbeat_recovery",
        prompt="Perform health check. Instance cltest123 container has exited.",
        expected_tools=["bash", "instance_start", "report_result"],
        max_cost=0.1,
        max_turns=10,
    ),
    EvalCase(
        name="delete_flow",
        prompt="Delete instance cltest456 owned by user user_eval123",
        expected_tools=["instance_delete", "report_result"],
        max_cost=0.1,
        max_turns=8,
    ),
]


def _has_loop(tool_names: list[str]) -> bool:
    """True if any tool was called LOOP_LENGTH times in a row."""
    for i in range(LOOP_LENGTH - 1, len(tool_names)):
        window = tool_names[i - LOOP_LENGTH + 1 : i + 1]
        if len(set(window)) == 1:
            return True
    return False


def evaluate_agent_run(trace: AgentTrace, expected_tools: list[str] | None = None) -> EvalResult:
    """Score a run by the fraction of checks it passes."""
    checks = [
        EvalCheck(
            name="completion",
            passed=trace.success,
            detail="Agent completed" if trace.success else f"Agent failed: {trace.error or 'unknown'}",
        )
    ]

    tool_names = [span.name for span in trace.tool_spans]

    if expected_tools is not None:
        called = set(tool_names)
        missing = [tool for tool in expected_tools if tool not in called]
        checks.append(
            EvalCheck(
                name="expected_tools",
                passed=not missing,
                detail="All expected tools called" if not missing else f"Missing: {', '.join(missing)}",
            )
        )

    checks.append(
        EvalCheck(
            name="cost_reasonable",
            passed=trace.total_cost < COST_CEILING,
            detail=f"Cost: ${trace.total_cost:.4f}",
        )
    )

    looping = _has_loop(tool_names)
    checks.append(
        EvalCheck(
            name="no_loops",
            passed=not looping,
            detail="Detected tool call loop" if looping else "No loops detected",
        )
    )

    passed_count = sum(1 for check in checks if check.passed)
    return EvalResult(
        trace_id=trace.trace_id,
        score=passed_count / len(checks),
        passed=passed_count == len(checks),
        checks=checks,
    )
