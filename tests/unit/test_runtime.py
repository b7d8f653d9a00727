"""Unit tests for runtime.py - container runtime client over docker-py."""

import random
import struct
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, DockerException, NotFound

from deployer.errors import (
    ContainerNotFoundError,
    ContainerRuntimeError,
    NoAvailablePortError,
    ValidationError,
)
from deployer.runtime import (
    MAX_LOG_CHARS,
    SHELL_BOOTSTRAP,
    ContainerRuntimeClient,
    container_name,
    demultiplex,
    is_not_found,
    normalize_tail,
)

PORT_CONFLICT = "driver failed programming external connectivity: Bind for 0.0.0.0 failed: port is already allocated"


def frame(stream: int, payload: bytes) -> bytes:
    return bytes([stream, 0, 0, 0]) + struct.pack(">I", len(payload)) + payload


@pytest.fixture
def docker_client():
    client = MagicMock()
    container = MagicMock()
    container.id = "abc123def456"
    container.attrs = {"State": {"Status": "running", "Running": True}}
    client.containers.create.return_value = container
    client.containers.get.return_value = container
    return client


@pytest.fixture
def runtime(docker_client):
    return ContainerRuntimeClient(client=docker_client, rng=random.Random(7))


def created_ports(docker_client) -> list[int]:
    return [
        call.kwargs["ports"]["18789/tcp"] for call in docker_client.containers.create.call_args_list
    ]


class TestHelpers:
    def test_container_name(self):
        assert container_name("abc") == "clawdeploy-abc"

    def test_is_not_found(self):
        assert is_not_found(NotFound("gone"))
        assert is_not_found(APIError("boom", response=MagicMock(status_code=404)))
        assert is_not_found(DockerException("Error: No such container: abc"))
        assert not is_not_found(APIError("boom", response=MagicMock(status_code=500)))

    @pytest.mark.parametrize("tail,expected", [(100, 100), ("25", 25), ("all", "all")])
    def test_normalize_tail_accepts(self, tail, expected):
        assert normalize_tail(tail) == expected

    @pytest.mark.parametrize("tail", [0, -5, "abc", "", True, None])
    def test_normalize_tail_rejects(self, tail):
        with pytest.raises(ValidationError):
            normalize_tail(tail)

    def test_demultiplex_strips_headers(self):
        raw = frame(1, b"hello ") + frame(2, b"world\n")
        assert demultiplex(raw) == b"hello world\n"

    def test_demultiplex_passes_plain_text_through(self):
        assert demultiplex(b"plain tty output\n") == b"plain tty output\n"


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_success(self, runtime, docker_client):
        result = await runtime.create("inst1", {"OPENCLAW_GATEWAY_TOKEN": "tok"}, {"/a": {"bind": "/b", "mode": "rw"}})

        assert result["container_id"] == "abc123def456"
        assert 10000 <= result["port"] < 20000

        kwargs = docker_client.containers.create.call_args.kwargs
        assert docker_client.containers.create.call_args.args == ("openclaw:local",)
        assert kwargs["name"] == "clawdeploy-inst1"
        assert kwargs["labels"] == {"clawdeploy": "true", "instanceId": "inst1"}
        assert kwargs["ports"] == {"18789/tcp": result["port"]}
        assert kwargs["nano_cpus"] == 500_000_000
        assert kwargs["mem_limit"] == 256 * 1024 * 1024
        assert kwargs["restart_policy"] == {"Name": "always"}
        docker_client.containers.create.return_value.start.assert_called_once()

    @pytest.mark.asyncio
    async def test_port_conflict_retries_with_distinct_ports(self, runtime, docker_client):
        container = docker_client.containers.create.return_value
        container.start.side_effect = APIError(PORT_CONFLICT)

        with pytest.raises(NoAvailablePortError, match="no available port in range 10000-20000"):
            await runtime.create("inst1", {})

        ports = created_ports(docker_client)
        assert len(ports) == 10
        assert len(set(ports)) == 10
        assert all(10000 <= p < 20000 for p in ports)
        # Each half-created container is discarded
        assert container.remove.call_count == 10

    @pytest.mark.asyncio
    async def test_conflict_then_success(self, runtime, docker_client):
        container = docker_client.containers.create.return_value
        container.start.side_effect = [APIError(PORT_CONFLICT), None]

        result = await runtime.create("inst1", {})

        ports = created_ports(docker_client)
        assert len(ports) == 2
        assert result["port"] == ports[1]

    @pytest.mark.asyncio
    async def test_other_error_aborts_immediately(self, runtime, docker_client):
        docker_client.containers.create.side_effect = APIError("No such image: openclaw:local")

        with pytest.raises(ContainerRuntimeError, match='Failed to create container "clawdeploy-inst1"'):
            await runtime.create("inst1", {})

        assert docker_client.containers.create.call_count == 1

    @pytest.mark.asyncio
    async def test_single_port_range_exhausts(self, docker_client):
        runtime = ContainerRuntimeClient(client=docker_client, min_port=15000, max_port=15001)
        docker_client.containers.create.return_value.start.side_effect = APIError(PORT_CONFLICT)

        with pytest.raises(NoAvailablePortError):
            await runtime.create("inst1", {})

        assert created_ports(docker_client) == [15000]


class TestControl:
    @pytest.mark.asyncio
    async def test_start_missing_container(self, runtime, docker_client):
        docker_client.containers.get.side_effect = NotFound("No such container: gone")

        with pytest.raises(ContainerNotFoundError) as exc_info:
            await runtime.start("gone")
        assert exc_info.value.container_id == "gone"

    @pytest.mark.asyncio
    async def test_stop(self, runtime, docker_client):
        await runtime.stop("abc")
        docker_client.containers.get.return_value.stop.assert_called_once()

    @pytest.mark.asyncio
    async def test_remove_stops_running_container_first(self, runtime, docker_client):
        container = docker_client.containers.get.return_value
        await runtime.remove("abc")

        container.stop.assert_called_once()
        container.remove.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_remove_skips_stop_when_exited(self, runtime, docker_client):
        container = docker_client.containers.get.return_value
        container.attrs = {"State": {"Status": "exited", "Running": False}}
        await runtime.remove("abc")

        container.stop.assert_not_called()
        container.remove.assert_called_once()

    @pytest.mark.asyncio
    async def test_status(self, runtime, docker_client):
        assert await runtime.status("abc") == "running"

        docker_client.containers.get.side_effect = NotFound("gone")
        assert await runtime.status("abc") == "not_found"

    @pytest.mark.asyncio
    async def test_status_other_errors_propagate(self, runtime, docker_client):
        docker_client.containers.get.side_effect = DockerException("daemon unavailable")
        with pytest.raises(ContainerRuntimeError):
            await runtime.status("abc")

    @pytest.mark.asyncio
    async def test_ping(self, runtime, docker_client):
        docker_client.ping.return_value = True
        assert await runtime.ping() is True

        docker_client.ping.side_effect = DockerException("unreachable")
        assert await runtime.ping() is False


class TestLogs:
    @pytest.mark.asyncio
    async def test_logs_demultiplexed(self, runtime, docker_client):
        container = docker_client.containers.get.return_value
        container.logs.return_value = frame(1, b"out\n") + frame(2, b"err\n")

        assert await runtime.logs("abc", tail="all") == "out\nerr\n"
        assert container.logs.call_args.kwargs["tail"] == "all"

    @pytest.mark.asyncio
    async def test_logs_keep_the_tail_end(self, runtime, docker_client):
        container = docker_client.containers.get.return_value
        container.logs.return_value = b"a" * 10 + b"b" * MAX_LOG_CHARS

        text = await runtime.logs("abc")
        assert len(text) == MAX_LOG_CHARS
        assert set(text) == {"b"}

    @pytest.mark.asyncio
    async def test_logs_invalid_tail(self, runtime, docker_client):
        with pytest.raises(ValidationError):
            await runtime.logs("abc", tail="-1")
        docker_client.containers.get.assert_not_called()


class TestShell:
    @pytest.mark.asyncio
    async def test_open_shell(self, runtime, docker_client):
        docker_client.api.exec_create.return_value = {"Id": "exec1"}
        sock = MagicMock()
        docker_client.api.exec_start.return_value = sock

        session = await runtime.open_shell("abc", 120, 32)

        args, kwargs = docker_client.api.exec_create.call_args
        assert args[0] == "abc"
        assert args[1][:2] == ["/bin/bash", "-lc"]
        assert kwargs["tty"] is True and kwargs["stdin"] is True
        docker_client.api.exec_resize.assert_called_once_with("exec1", height=32, width=120)

        sock._sock.recv.return_value = b"$ "
        assert await session.read() == b"$ "
        await session.write(b"ls\n")
        sock._sock.sendall.assert_called_once_with(b"ls\n")

        await session.close()
        assert await session.read() == b""

    @pytest.mark.asyncio
    async def test_open_shell_installs_openclaw_wrapper(self, runtime, docker_client):
        docker_client.api.exec_create.return_value = {"Id": "exec1"}
        docker_client.api.exec_start.return_value = MagicMock()

        await runtime.open_shell("abc", 120, 32)

        script = docker_client.api.exec_create.call_args[0][1][2]
        assert script == SHELL_BOOTSTRAP
        assert "openclaw.mjs security audit" in script
        assert "'if [ \"$1\" = \"onboard\" ]; then'" in script
        assert "config set --json gateway.controlUi.allowInsecureAuth true" in script
        assert script.index("onboard") < script.index("'exec node /app/openclaw.mjs \"$@\"'")
        assert script.endswith("exec /bin/bash -i")

    @pytest.mark.asyncio
    async def test_open_shell_failure(self, runtime, docker_client):
        docker_client.api.exec_create.side_effect = APIError("container is not running")
        with pytest.raises(ContainerRuntimeError):
            await runtime.open_shell("abc", 120, 32)
