"""Unit tests for server.py HTTP endpoints and the terminal WebSocket route."""

import asyncio
import logging

import pytest
from fastapi.testclient import TestClient

from deployer.config import DeployerConfig
from deployer.logging_manager import LoggingManager, audit_log
from deployer.server import DeployerServer
from deployer.services import DeployerServices
from deployer.simple_models import Instance, InstanceStatus, Task, TaskType

AUTH = {"Authorization": "Bearer user_1"}
OTHER_AUTH = {"Authorization": "Bearer user_2"}


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def config(tmp_path):
    return DeployerConfig(
        data_root=str(tmp_path / "data"),
        log_dir=str(tmp_path / "logs"),
        store_path=None,
        trace_dir=str(tmp_path / "traces"),
        report_dir=str(tmp_path / "reports"),
        proxy_map_path=str(tmp_path / "port_map.conf"),
    )


@pytest.fixture
def logging_manager(config):
    manager = LoggingManager(config.log_dir, "INFO")
    yield manager
    manager.shutdown()


@pytest.fixture
def services(config, store, mock_runtime, mock_proxy):
    return DeployerServices(config, store=store, runtime=mock_runtime, proxy=mock_proxy)


@pytest.fixture
def server(config, services, logging_manager):
    return DeployerServer(config, services=services, run_processor=False, logging_manager=logging_manager)


@pytest.fixture
def client(server):
    return TestClient(server.app)


def seed_instance(store, **fields) -> Instance:
    instance = Instance(**{"user_id": "user_1", "name": "seeded", **fields})
    asyncio.run(store.insert("instances", instance.to_record()))
    return instance


def stored(store, collection):
    return asyncio.run(store.find_many(collection))


# ============================================================================
# TESTS
# ============================================================================


class TestRootAndHealth:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health(self, client):
        response = client.get("/health")
        assert response.json() == {
            "status": "healthy",
            "task_processor": False,
            "container_runtime": True,
        }


class TestAuth:
    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "user_1"}, {"Authorization": "Bearer not-a-user"}],
    )
    def test_rejects_missing_or_invalid_identity(self, client, headers):
        response = client.get("/api/instances", headers=headers)
        assert response.status_code == 401


class TestCreateInstance:
    def test_create_enqueues_task(self, client, store):
        response = client.post(
            "/api/instances",
            json={"name": " t1 ", "channel": "telegram", "botToken": "123:abc", "aiProvider": "anthropic"},
            headers=AUTH,
        )

        assert response.status_code == 202
        body = response.json()
        assert body["instance"]["name"] == "t1"
        assert body["instance"]["status"] == "creating"
        assert body["instance"]["botToken"] is None
        assert body["task"]["type"] == "instance_create"
        assert body["task"]["params"]["bot_token"] is None
        assert body["task"]["instanceId"] == body["instance"]["id"]

        tasks = stored(store, "tasks")
        assert len(tasks) == 1
        assert tasks[0]["params"]["bot_token"] == "123:abc"
        assert tasks[0]["status"] == "pending"
        assert len(stored(store, "instances")) == 1

    def test_unknown_channel(self, client, store):
        response = client.post("/api/instances", json={"name": "t1", "channel": "slack"}, headers=AUTH)

        assert response.status_code == 400
        assert "Unknown channel" in response.json()["error"]
        assert stored(store, "tasks") == []

    def test_blank_name(self, client):
        assert client.post("/api/instances", json={"name": "   "}, headers=AUTH).status_code == 400
        assert client.post("/api/instances", json={"name": ""}, headers=AUTH).status_code == 422


class TestInstanceEndpoints:
    def test_list_only_own_instances(self, client, store):
        seed_instance(store, name="mine")
        seed_instance(store, user_id="user_2", name="theirs")

        response = client.get("/api/instances", headers=AUTH)
        assert [i["name"] for i in response.json()["instances"]] == ["mine"]

    def test_get_instance(self, client, store):
        instance = seed_instance(store, api_key="sk-secret")

        response = client.get(f"/api/instances/{instance.id}", headers=AUTH)
        assert response.status_code == 200
        assert response.json()["apiKey"] is None

        assert client.get(f"/api/instances/{instance.id}", headers=OTHER_AUTH).status_code == 404

    def test_action_enqueues_task(self, client, store):
        instance = seed_instance(store, status=InstanceStatus.RUNNING, container_id="c1", port=10001)

        response = client.post(f"/api/instances/{instance.id}/stop", headers=AUTH)

        assert response.status_code == 202
        assert response.json()["type"] == "instance_stop"
        assert stored(store, "tasks")[0]["instance_id"] == instance.id

    def test_action_unknown_or_foreign(self, client, store):
        instance = seed_instance(store)

        assert client.post(f"/api/instances/{instance.id}/explode", headers=AUTH).status_code == 400
        assert client.post(f"/api/instances/{instance.id}/start", headers=OTHER_AUTH).status_code == 404
        assert stored(store, "tasks") == []

    def test_logs(self, client, store, mock_runtime):
        instance = seed_instance(store, status=InstanceStatus.RUNNING, container_id="c1", port=10001)

        response = client.get(f"/api/instances/{instance.id}/logs?tail=all", headers=AUTH)
        assert response.json() == {"logs": "log line\n"}
        mock_runtime.logs.assert_awaited_once_with("c1", "all")

        assert client.get(f"/api/instances/{instance.id}/logs?tail=abc", headers=AUTH).status_code == 400

    def test_logs_without_container(self, client, store):
        instance = seed_instance(store)
        response = client.get(f"/api/instances/{instance.id}/logs", headers=AUTH)
        assert response.status_code == 400


class TestTasksAndProxy:
    def test_proxy_sync_enqueues_task(self, client):
        response = client.post("/api/proxy/sync", headers=AUTH)
        assert response.status_code == 202
        assert response.json()["type"] == "nginx_sync"

    def test_get_task(self, client, store):
        task = Task(type=TaskType.NGINX_SYNC, user_id="user_1")
        asyncio.run(store.insert("tasks", task.to_record()))

        assert client.get(f"/api/tasks/{task.id}", headers=AUTH).json()["id"] == task.id
        missing = client.get(f"/api/tasks/{task.id}", headers=OTHER_AUTH)
        assert missing.status_code == 404
        assert missing.json()["detail"] == "Task not found"

    def test_audit_events(self, client, logging_manager):
        audit_log(logging.getLogger("deployer.lifecycle"), "Instance abc created", action="instance_create")
        for handler in logging_manager.audit_logger.handlers:
            handler.flush()

        response = client.get("/api/audit?limit=5", headers=AUTH)
        assert response.json()["events"][-1]["action"] == "instance_create"


class TestTerminalRoute:
    def test_requires_token(self, client):
        with client.websocket_connect("/ws/terminal/abc") as ws:
            assert ws.receive_json() == {"type": "error", "message": "Authentication required"}

    def test_unknown_instance(self, client):
        with client.websocket_connect("/ws/terminal/abc?token=user_1") as ws:
            assert ws.receive_json()["message"] == "Instance not found or not running"
