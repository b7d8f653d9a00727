"""Offline evaluation of agent runs."""

from observability.analysis.evaluator import (
    EVAL_DATASET,
    EvalCase,
    EvalCheck,
    EvalResult,
    evaluate_agent_run,
)

__all__ = ["EVAL_DATASET", "EvalCase", "EvalCheck", "EvalResult", "evaluate_agent_run"]
