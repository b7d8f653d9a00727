"""Unit tests for reports.py - run outcome reports."""

import json

import pytest

from deployer.reports import ReportLog


class TestReportLog:
    @pytest.mark.asyncio
    async def test_report_is_appended(self, tmp_path):
        log = ReportLog(tmp_path / "reports")

        first = await log.report_result(True, "instance_create", data={"instance_id": "abc"})
        second = await log.report_result(False, "heartbeat", errors=["container exited"])

        lines = (tmp_path / "reports" / "reports.jsonl").read_text().splitlines()
        assert [json.loads(line) for line in lines] == [first, second]
        assert first["data"] == {"instance_id": "abc"}
        assert "errors" not in first
        assert second["errors"] == ["container exited"]
        assert "timestamp" in second

    @pytest.mark.asyncio
    async def test_empty_errors_omitted(self, tmp_path):
        report = await ReportLog(tmp_path).report_result(True, "nginx_sync", errors=[])
        assert set(report) == {"success", "action", "timestamp"}

    @pytest.mark.asyncio
    async def test_persist_failure_still_returns_report(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        report = await ReportLog(blocker / "reports").report_result(True, "instance_stop")

        assert report["success"] is True
        assert report["action"] == "instance_stop"
