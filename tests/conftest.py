"""Shared fixtures for deployer tests."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from deployer.lifecycle import LifecycleTools
from deployer.provisioner import InstanceConfigProvisioner
from deployer.rebuild import ImageRebuilder, RebuildSlot
from deployer.reports import ReportLog
from deployer.store import RecordStore


@pytest.fixture
def store() -> RecordStore:
    """In-memory record store."""
    return RecordStore()


@pytest.fixture
def mock_runtime():
    """Container runtime client with every operation mocked."""
    mock = MagicMock()
    mock.create = AsyncMock(return_value={"container_id": "c0ffee123456", "port": 12345})
    mock.start = AsyncMock()
    mock.stop = AsyncMock()
    mock.remove = AsyncMock()
    mock.logs = AsyncMock(return_value="log line\n")
    mock.status = AsyncMock(return_value="running")
    mock.ping = AsyncMock(return_value=True)
    mock.build_image = AsyncMock()
    mock.open_shell = AsyncMock()
    return mock


@pytest.fixture
def mock_proxy():
    mock = MagicMock()
    mock.sync = AsyncMock(return_value={"instances": 0, "reloaded": True})
    mock.verify = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def provisioner(tmp_path: Path) -> InstanceConfigProvisioner:
    return InstanceConfigProvisioner(tmp_path / "data")


@pytest.fixture
def rebuilder(mock_runtime):
    rebuilder = ImageRebuilder(mock_runtime, "/opt/openclaw-src", "openclaw:local", RebuildSlot())
    rebuilder._pull_source = AsyncMock()
    return rebuilder


@pytest.fixture
def tools(store, mock_runtime, provisioner, mock_proxy, rebuilder, tmp_path: Path) -> LifecycleTools:
    return LifecycleTools(
        store=store,
        runtime=mock_runtime,
        provisioner=provisioner,
        proxy=mock_proxy,
        rebuilder=rebuilder,
        reports=ReportLog(tmp_path / "reports"),
    )
