"""Rule-based alerting over finalized traces."""

from observability.alerting.engine import AlertEngine
from observability.alerting.rules import DEFAULT_RULES, Alert, AlertRule, Severity

__all__ = ["DEFAULT_RULES", "Alert", "AlertEngine", "AlertRule", "Severity"]
