"""Default on-disk locations shared by the deployer and observability."""

from pathlib import Path

DEFAULT_LOG_ROOT = Path("/tmp/clawdeploy_logs")
DEFAULT_TRACE_DIR = DEFAULT_LOG_ROOT / "traces"
DEFAULT_REPORT_DIR = DEFAULT_LOG_ROOT / "reports"
DEFAULT_ALERT_FILE = DEFAULT_LOG_ROOT / "alerts.jsonl"
