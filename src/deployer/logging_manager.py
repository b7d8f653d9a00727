"""Structured logging for the deployer.

Console output is human readable, the rotating file log is one JSON object
per line, and lifecycle mutations additionally land in a daily audit trail.
"""

import json
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Any

from observability.paths import DEFAULT_LOG_ROOT

ROOT_LOGGER = "deployer"
OBSERVABILITY_LOGGER = "observability"
AUDIT_LOGGER = "deployer.audit"
MANAGED_PREFIXES = (f"{ROOT_LOGGER}.", f"{OBSERVABILITY_LOGGER}.")

_RESERVED_ATTRS = frozenset(
    [
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "exc_info",
        "exc_text",
        "stack_info",
        "asctime",
        "taskName",
    ]
)


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    extras = {}
    for key, value in record.__dict__.items():
        if key in _RESERVED_ATTRS:
            continue
        try:
            json.dumps(value)  # Ensure serializable
            extras[key] = value
        except (TypeError, ValueError):
            extras[key] = str(value)
    return extras


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record, including any ``extra=`` fields."""

    def __init__(self, message_key: str = "message"):
        super().__init__()
        self.message_key = message_key

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            self.message_key: record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        log_obj.update(_extra_fields(record))
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_obj)


class AuditForwardHandler(logging.Handler):
    """Copies records tagged ``is_audit`` into the audit logger."""

    def __init__(self, audit_logger: logging.Logger):
        super().__init__(level=logging.INFO)
        self.audit_logger = audit_logger

    def emit(self, record: logging.LogRecord) -> None:
        if getattr(record, "is_audit", False):
            self.audit_logger.handle(record)


class LoggingManager:
    """Configures the ``deployer`` and ``observability`` logger trees and the audit trail."""

    def __init__(self, log_dir: str | Path = DEFAULT_LOG_ROOT, log_level: str = "INFO"):
        """Initialize logging manager.

        Args:
            log_dir: Base directory for all logs
            log_level: Console log level
        """
        self.log_dir = Path(log_dir)
        self.log_level = getattr(logging, log_level.upper())

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.audit_dir = self.log_dir / "audit"
        self.audit_dir.mkdir(exist_ok=True)

        self._setup_audit_logger()
        self._setup_handlers()
        self.deployer_logger = self._attach(ROOT_LOGGER)
        self.observability_logger = self._attach(OBSERVABILITY_LOGGER)

        # Modules that called getLogger(__name__) before setup inherit from their tree root
        for name in list(logging.Logger.manager.loggerDict.keys()):
            if name == AUDIT_LOGGER or not name.startswith(MANAGED_PREFIXES):
                continue
            child_logger = logging.getLogger(name)
            if isinstance(child_logger, logging.Logger):
                child_logger.setLevel(logging.NOTSET)
                child_logger.propagate = True
                child_logger.handlers.clear()

    def _attach(self, name: str) -> logging.Logger:
        logger = logging.getLogger(name)
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        logger.handlers.clear()
        for handler in self.handlers:
            logger.addHandler(handler)
        return logger

    def _setup_handlers(self):
        """Build the console, JSON file and audit-forward handlers shared by both trees."""
        console_handler = logging.StreamHandler()
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

        file_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / "deployer.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JsonLineFormatter())

        self.handlers = [console_handler, file_handler, AuditForwardHandler(self.audit_logger)]

    def _setup_audit_logger(self):
        """Setup audit trail logger (JSON Lines format, daily rotation)."""
        logger = logging.getLogger(AUDIT_LOGGER)
        logger.setLevel(logging.INFO)
        logger.propagate = False
        logger.handlers.clear()

        file_handler = logging.handlers.TimedRotatingFileHandler(
            self.audit_dir / "audit.jsonl",
            when="midnight",
            interval=1,
            backupCount=30,  # Keep 30 days
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(JsonLineFormatter(message_key="event"))
        logger.addHandler(file_handler)

        self.audit_logger = logger

    def read_audit_events(self, limit: int = 100) -> list[dict[str, Any]]:
        """Return the most recent audit entries from the current audit file."""
        audit_file = self.audit_dir / "audit.jsonl"
        if not audit_file.exists():
            return []
        entries = []
        for line in audit_file.read_text().splitlines()[-limit:]:
            if line.strip():
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return entries

    def shutdown(self):
        for name in (ROOT_LOGGER, OBSERVABILITY_LOGGER, AUDIT_LOGGER):
            logger = logging.getLogger(name)
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)


def audit_log(
    logger: logging.Logger,
    message: str,
    action: str | None = None,
    metadata: dict[str, Any] | None = None,
    level: int = logging.INFO,
    **kwargs,
):
    """Log an event that is also copied to the audit trail.

    Example:
        >>> audit_log(
        ...     logger,
        ...     "Instance abc123 created",
        ...     action="instance_create",
        ...     metadata={"instance_id": "abc123", "port": 10042}
        ... )
    """
    extra = {
        "is_audit": True,
        "action": action,
        "metadata": metadata or {},
    }
    extra.update(kwargs)

    logger.log(level, message, extra=extra)
