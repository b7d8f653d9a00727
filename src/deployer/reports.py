"""Durable log of run outcome reports."""

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles

logger = logging.getLogger(__name__)


class ReportLog:
    """Appends ``{success, action, data?, errors?, timestamp}`` reports as JSON lines."""

    def __init__(self, report_dir: str | Path):
        self.report_dir = Path(report_dir)
        self.path = self.report_dir / "reports.jsonl"

    async def report_result(
        self,
        success: bool,
        action: str,
        data: dict[str, Any] | None = None,
        errors: list[str] | None = None,
    ) -> dict[str, Any]:
        """Record the final outcome of an autonomous run.

        Persistence failures are logged and swallowed; the report is always returned.
        """
        report: dict[str, Any] = {"success": success, "action": action}
        if data is not None:
            report["data"] = data
        if errors:
            report["errors"] = errors
        report["timestamp"] = datetime.now(UTC).isoformat()

        level = logging.INFO if success else logging.WARNING
        logger.log(level, f"Run report: {action} success={success}", extra={"report": report})

        try:
            self.report_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.path, "a") as f:
                await f.write(json.dumps(report, default=str) + "\n")
        except Exception as e:
            logger.warning(f"Failed to persist report: {e}")

        return report
