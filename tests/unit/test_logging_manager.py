"""Unit tests for logging_manager module."""

import json
import logging

import pytest

from deployer.logging_manager import (
    AUDIT_LOGGER,
    OBSERVABILITY_LOGGER,
    ROOT_LOGGER,
    JsonLineFormatter,
    LoggingManager,
    audit_log,
)
from observability.alerting.engine import AlertEngine
from observability.tracing.models import AgentTrace
from observability.tracing.tracer import Tracer


@pytest.fixture
def logging_manager(tmp_path):
    manager = LoggingManager(tmp_path / "logs", "INFO")
    yield manager
    manager.shutdown()


def flush_all():
    for name in (ROOT_LOGGER, OBSERVABILITY_LOGGER, AUDIT_LOGGER):
        for handler in logging.getLogger(name).handlers:
            handler.flush()


class TestJsonLineFormatter:
    def test_includes_extra_fields(self):
        record = logging.LogRecord("deployer.test", logging.INFO, __file__, 10, "hello %s", ("world",), None)
        record.instance_id = "abc"
        record.unserializable = object()

        data = json.loads(JsonLineFormatter().format(record))
        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["instance_id"] == "abc"
        assert isinstance(data["unserializable"], str)

    def test_custom_message_key(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "instance_create", (), None)
        data = json.loads(JsonLineFormatter(message_key="event").format(record))
        assert data["event"] == "instance_create"
        assert "message" not in data


class TestLoggingManager:
    def test_creates_directories(self, logging_manager, tmp_path):
        assert (tmp_path / "logs").is_dir()
        assert (tmp_path / "logs" / "audit").is_dir()

    def test_handlers_configured(self, logging_manager):
        root = logging.getLogger(ROOT_LOGGER)
        kinds = {type(h).__name__ for h in root.handlers}
        assert {"StreamHandler", "RotatingFileHandler", "AuditForwardHandler"} <= kinds
        assert root.propagate is False

    def test_module_logs_reach_json_file(self, logging_manager, tmp_path):
        logging.getLogger("deployer.lifecycle").info("created", extra={"instance_id": "abc"})
        flush_all()

        lines = (tmp_path / "logs" / "deployer.log").read_text().splitlines()
        entry = json.loads(lines[-1])
        assert entry["message"] == "created"
        assert entry["instance_id"] == "abc"
        assert entry["logger"] == "deployer.lifecycle"

    def test_audit_log_is_forwarded(self, logging_manager):
        logger = logging.getLogger("deployer.lifecycle")
        logger.info("plain message")
        audit_log(
            logger,
            "Instance abc created",
            action="instance_create",
            metadata={"instance_id": "abc", "port": 10042},
        )
        flush_all()

        events = logging_manager.read_audit_events()
        assert len(events) == 1
        assert events[0]["event"] == "Instance abc created"
        assert events[0]["action"] == "instance_create"
        assert events[0]["metadata"] == {"instance_id": "abc", "port": 10042}

    def test_read_audit_events_respects_limit(self, logging_manager):
        logger = logging.getLogger("deployer.task_queue")
        for i in range(5):
            audit_log(logger, f"event_{i}", action="task_completed")
        flush_all()

        events = logging_manager.read_audit_events(limit=2)
        assert [e["event"] for e in events] == ["event_3", "event_4"]

    def test_observability_tree_configured(self, logging_manager):
        logger = logging.getLogger(OBSERVABILITY_LOGGER)
        kinds = {type(h).__name__ for h in logger.handlers}
        assert {"StreamHandler", "RotatingFileHandler", "AuditForwardHandler"} <= kinds
        assert logger.propagate is False

    @pytest.mark.asyncio
    async def test_alert_warning_reaches_json_file(self, logging_manager, tmp_path):
        engine = AlertEngine(tmp_path / "alerts.jsonl")
        trace = AgentTrace(trace_id="trace_cost", session_id="s1", started_at=0, ended_at=10, total_cost=0.51)

        alerts = await engine.evaluate(trace)
        flush_all()

        assert [a.rule for a in alerts] == ["high_cost"]
        entries = [json.loads(line) for line in (tmp_path / "logs" / "deployer.log").read_text().splitlines()]
        alert_entries = [e for e in entries if e["message"] == "Alert triggered: high_cost"]
        assert alert_entries[0]["logger"] == "observability.alerting.engine"
        assert alert_entries[0]["level"] == "WARNING"
        assert alert_entries[0]["alert"]["traceId"] == "trace_cost"

    @pytest.mark.asyncio
    async def test_trace_saved_info_reaches_json_file(self, logging_manager, tmp_path):
        tracer = Tracer(session_id="s1", trace_dir=tmp_path / "traces")

        await tracer.save()
        flush_all()

        entries = [json.loads(line) for line in (tmp_path / "logs" / "deployer.log").read_text().splitlines()]
        saved = [e for e in entries if e["message"] == "Trace saved"]
        assert saved[0]["trace_id"] == tracer.trace_id
