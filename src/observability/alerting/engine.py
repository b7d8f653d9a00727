"""Evaluates alert rules and appends triggered alerts to a JSONL log."""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

import aiofiles

from observability.alerting.rules import DEFAULT_RULES, Alert, AlertRule
from observability.paths import DEFAULT_ALERT_FILE
from observability.tracing.models import AgentTrace

logger = logging.getLogger(__name__)


class AlertEngine:
    """Runs every rule independently against a finalized trace.

    A rule that raises, or an alert that cannot be persisted, is logged and
    does not stop the remaining rules.
    """

    def __init__(
        self,
        alert_file: str | Path = DEFAULT_ALERT_FILE,
        rules: tuple[AlertRule, ...] | list[AlertRule] = DEFAULT_RULES,
    ):
        self.alert_file = Path(alert_file)
        self.rules = tuple(rules)

    async def evaluate(self, trace: AgentTrace) -> list[Alert]:
        triggered: list[Alert] = []

        for rule in self.rules:
            try:
                if not rule.condition(trace):
                    continue
                alert = Alert(
                    timestamp=datetime.now(UTC).isoformat(),
                    trace_id=trace.trace_id,
                    rule=rule.name,
                    severity=rule.severity,
                    message=rule.message(trace),
                )
            except Exception as e:
                logger.error(f"Alert rule {rule.name} failed: {e}", exc_info=True)
                continue

            logger.warning(f"Alert triggered: {rule.name}", extra={"alert": alert.to_dict()})
            triggered.append(alert)
            await self._persist(alert)

        return triggered

    async def _persist(self, alert: Alert) -> None:
        try:
            self.alert_file.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.alert_file, "a") as f:
                await f.write(json.dumps(alert.to_dict()) + "\n")
        except Exception as e:
            logger.error(f"Failed to persist alert {alert.rule}: {e}")
