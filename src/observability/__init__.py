"""Tracing, alerting and evaluation for agent runs and lifecycle tasks."""

from observability.alerting import AlertEngine
from observability.analysis import evaluate_agent_run
from observability.tracing import Tracer

__all__ = ["AlertEngine", "Tracer", "evaluate_agent_run"]

__version__ = "0.1.0"
