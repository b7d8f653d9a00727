"""Container runtime client built on docker-py.

Every docker-py call blocks, so each one runs through ``asyncio.to_thread``
to keep the event loop free.
"""

import asyncio
import logging
import random
import socket
import struct
from typing import Any

import docker
from docker.errors import APIError, DockerException, NotFound

from .errors import (
    ContainerNotFoundError,
    ContainerRuntimeError,
    NoAvailablePortError,
    ValidationError,
)

logger = logging.getLogger(__name__)

CONTAINER_NAME_PREFIX = "clawdeploy"
PORT_CONFLICT_MARKER = "port is already allocated"
MAX_LOG_CHARS = 100_000
IMAGE_BUILD_TIMEOUT = 600

# Installs an ``openclaw`` wrapper on PATH, then hands over to an interactive bash.
# ``doctor`` runs the security audit. After a successful ``onboard``,
# ``gateway.controlUi.allowInsecureAuth`` is set back to true.
SHELL_BOOTSTRAP = (
    "mkdir -p /tmp/clawdeploy-bin && "
    "printf '%s\\n' "
    "'#!/bin/sh' "
    "'if [ \"$1\" = \"doctor\" ]; then' "
    "'  shift' "
    "'  exec node /app/openclaw.mjs security audit \"$@\"' "
    "'fi' "
    "'if [ \"$1\" = \"onboard\" ]; then' "
    "'  node /app/openclaw.mjs \"$@\"' "
    "'  status=$?' "
    "'  if [ \"$status\" -eq 0 ]; then' "
    "'    node /app/openclaw.mjs config set --json gateway.controlUi.allowInsecureAuth true >/dev/null 2>&1 || true' "
    "'  fi' "
    "'  exit \"$status\"' "
    "'fi' "
    "'exec node /app/openclaw.mjs \"$@\"' "
    "> /tmp/clawdeploy-bin/openclaw && "
    "chmod +x /tmp/clawdeploy-bin/openclaw && "
    'export PATH="/tmp/clawdeploy-bin:$PATH" && '
    "exec /bin/bash -i"
)


def container_name(instance_id: str) -> str:
    return f"{CONTAINER_NAME_PREFIX}-{instance_id}"


def is_not_found(error: Exception) -> bool:
    """Classify a runtime error as "container does not exist"."""
    if isinstance(error, NotFound):
        return True
    if isinstance(error, APIError) and error.status_code == 404:
        return True
    return "no such container" in str(error).lower()


def normalize_tail(tail: int | str) -> int | str:
    """Accept a positive integer or the sentinel ``"all"``."""
    if tail == "all":
        return "all"
    if isinstance(tail, bool):
        raise ValidationError("tail must be a positive integer or 'all'")
    try:
        value = int(tail)
    except (TypeError, ValueError) as e:
        raise ValidationError("tail must be a positive integer or 'all'") from e
    if value <= 0:
        raise ValidationError("tail must be a positive integer or 'all'")
    return value


def demultiplex(raw: bytes) -> bytes:
    """Strip the 8-byte stream headers of a multiplexed stdout/stderr payload.

    Header layout is ``[stream, 0, 0, 0, size(4, big-endian)]``. Payloads that
    do not start with a valid header are returned unchanged.
    """
    if len(raw) < 8 or raw[0] not in (0, 1, 2) or raw[1:4] != b"\x00\x00\x00":
        return raw

    chunks = []
    offset = 0
    while offset + 8 <= len(raw):
        stream_type = raw[offset]
        if stream_type not in (0, 1, 2) or raw[offset + 1 : offset + 4] != b"\x00\x00\x00":
            # Not a frame boundary; keep the remainder verbatim
            chunks.append(raw[offset:])
            return b"".join(chunks)
        (size,) = struct.unpack(">I", raw[offset + 4 : offset + 8])
        chunks.append(raw[offset + 8 : offset + 8 + size])
        offset += 8 + size
    if offset < len(raw):
        chunks.append(raw[offset:])
    return b"".join(chunks)


class ShellSession:
    """Interactive TTY exec attached to a running container."""

    def __init__(self, client: Any, exec_id: str, sock: Any):
        self._client = client
        self.exec_id = exec_id
        self._sock = getattr(sock, "_sock", sock)
        self.closed = False

    async def read(self, size: int = 4096) -> bytes:
        """Read the next chunk of shell output; ``b""`` means end of stream."""
        if self.closed:
            return b""
        try:
            return await asyncio.to_thread(self._sock.recv, size)
        except OSError:
            if self.closed:
                return b""
            raise

    async def write(self, data: bytes) -> None:
        if self.closed:
            return
        await asyncio.to_thread(self._sock.sendall, data)

    async def resize(self, cols: int, rows: int) -> None:
        await asyncio.to_thread(self._client.api.exec_resize, self.exec_id, height=rows, width=cols)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


class ContainerRuntimeClient:
    """Create, control and inspect per-instance containers."""

    def __init__(
        self,
        client: Any = None,
        image: str = "openclaw:local",
        container_port: int = 18789,
        nano_cpus: int = 500_000_000,
        memory_bytes: int = 256 * 1024 * 1024,
        restart_policy: str = "always",
        min_port: int = 10000,
        max_port: int = 20000,
        port_retry_attempts: int = 10,
        rng: random.Random | None = None,
    ):
        """Initialize the runtime client.

        Args:
            client: docker-py ``DockerClient``; created from the environment on first use if omitted
            image: Image every instance container runs
            container_port: Gateway port inside the container
            nano_cpus: CPU quota in units of 1e-9 CPUs
            memory_bytes: Memory cap
            restart_policy: Docker restart policy name
            min_port: Lowest host port to allocate (inclusive)
            max_port: Highest host port to allocate (exclusive)
            port_retry_attempts: Attempts before giving up on port conflicts
            rng: Random source for port selection
        """
        self._client = client
        self.image = image
        self.container_port = container_port
        self.nano_cpus = nano_cpus
        self.memory_bytes = memory_bytes
        self.restart_policy = restart_policy
        self.min_port = min_port
        self.max_port = max_port
        self.port_retry_attempts = port_retry_attempts
        self._rng = rng or random.Random()

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def _pick_port(self, tried: set[int]) -> int:
        span = self.max_port - self.min_port
        if len(tried) >= span:
            raise NoAvailablePortError(
                f"no available port in range {self.min_port}-{self.max_port}"
            )
        while True:
            port = self._rng.randrange(self.min_port, self.max_port)
            if port not in tried:
                return port

    async def _get(self, container_id: str) -> Any:
        try:
            return await asyncio.to_thread(self.client.containers.get, container_id)
        except DockerException as e:
            if is_not_found(e):
                raise ContainerNotFoundError(container_id) from e
            raise ContainerRuntimeError(f"Failed to inspect container {container_id}: {e}") from e

    async def _discard(self, container: Any) -> None:
        try:
            await asyncio.to_thread(container.remove, force=True)
        except DockerException as e:
            logger.warning(
                f"Failed to remove half-created container: {e}",
                extra={"container_id": getattr(container, "id", None)},
            )

    async def create(
        self,
        instance_id: str,
        env: dict[str, str],
        volumes: dict[str, dict[str, str]] | None = None,
    ) -> dict[str, Any]:
        """Create and start the container for an instance.

        A host port is drawn at random for each attempt. When the runtime
        reports the port as already allocated the half-created container is
        discarded and a fresh port is tried, up to ``port_retry_attempts``.

        Returns:
            Dict with ``container_id`` and ``port``

        Raises:
            NoAvailablePortError: Every attempt hit a port conflict
            ContainerRuntimeError: Any other creation or start failure
        """
        name = container_name(instance_id)
        tried: set[int] = set()

        for attempt in range(1, self.port_retry_attempts + 1):
            port = self._pick_port(tried)
            tried.add(port)
            container = None
            try:
                container = await asyncio.to_thread(
                    self.client.containers.create,
                    self.image,
                    name=name,
                    environment=env,
                    labels={"clawdeploy": "true", "instanceId": instance_id},
                    ports={f"{self.container_port}/tcp": port},
                    volumes=volumes or {},
                    nano_cpus=self.nano_cpus,
                    mem_limit=self.memory_bytes,
                    restart_policy={"Name": self.restart_policy},
                    detach=True,
                )
                await asyncio.to_thread(container.start)
            except DockerException as e:
                if container is not None:
                    await self._discard(container)
                if PORT_CONFLICT_MARKER in str(e).lower():
                    logger.warning(
                        f"Port {port} already allocated, retrying",
                        extra={"instance_id": instance_id, "attempt": attempt},
                    )
                    continue
                raise ContainerRuntimeError(f'Failed to create container "{name}": {e}') from e

            logger.info(
                f"Container {name} started on port {port}",
                extra={"instance_id": instance_id, "container_id": container.id, "port": port},
            )
            return {"container_id": container.id, "port": port}

        raise NoAvailablePortError(
            f'Failed to create container "{name}": '
            f"no available port in range {self.min_port}-{self.max_port}"
        )

    async def start(self, container_id: str) -> None:
        container = await self._get(container_id)
        try:
            await asyncio.to_thread(container.start)
        except DockerException as e:
            if is_not_found(e):
                raise ContainerNotFoundError(container_id) from e
            raise ContainerRuntimeError(f"Failed to start container {container_id}: {e}") from e

    async def stop(self, container_id: str) -> None:
        container = await self._get(container_id)
        try:
            await asyncio.to_thread(container.stop)
        except DockerException as e:
            if is_not_found(e):
                raise ContainerNotFoundError(container_id) from e
            raise ContainerRuntimeError(f"Failed to stop container {container_id}: {e}") from e

    async def remove(self, container_id: str) -> None:
        """Stop the container if it is running, then remove it."""
        container = await self._get(container_id)
        try:
            state = (container.attrs or {}).get("State", {})
            if state.get("Running"):
                await asyncio.to_thread(container.stop)
            await asyncio.to_thread(container.remove)
        except DockerException as e:
            if is_not_found(e):
                raise ContainerNotFoundError(container_id) from e
            raise ContainerRuntimeError(f"Failed to remove container {container_id}: {e}") from e

    async def logs(self, container_id: str, tail: int | str = 100) -> str:
        """Return combined stdout/stderr, keeping the last ``MAX_LOG_CHARS`` characters."""
        tail = normalize_tail(tail)
        container = await self._get(container_id)
        try:
            raw = await asyncio.to_thread(
                container.logs, stdout=True, stderr=True, tail=tail, timestamps=False
            )
        except DockerException as e:
            if is_not_found(e):
                raise ContainerNotFoundError(container_id) from e
            raise ContainerRuntimeError(f"Failed to read logs for {container_id}: {e}") from e

        text = demultiplex(raw).decode("utf-8", errors="replace")
        if len(text) > MAX_LOG_CHARS:
            text = text[-MAX_LOG_CHARS:]
        return text

    async def status(self, container_id: str) -> str:
        """Return ``State.Status`` or ``"not_found"`` when the container is gone."""
        try:
            container = await self._get(container_id)
        except ContainerNotFoundError:
            return "not_found"
        return (container.attrs or {}).get("State", {}).get("Status", "unknown")

    async def ping(self) -> bool:
        try:
            return bool(await asyncio.to_thread(self.client.ping))
        except DockerException as e:
            logger.warning(f"Container runtime unreachable: {e}")
            return False

    async def build_image(self, source_dir: str, tag: str | None = None) -> None:
        """Build the shared instance image from a source checkout."""
        tag = tag or self.image
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.client.images.build, path=source_dir, tag=tag, rm=True),
                timeout=IMAGE_BUILD_TIMEOUT,
            )
        except TimeoutError as e:
            raise ContainerRuntimeError(f"Image build for {tag} timed out") from e
        except DockerException as e:
            raise ContainerRuntimeError(f"Image build for {tag} failed: {e}") from e
        logger.info(f"Built image {tag} from {source_dir}")

    async def open_shell(self, container_id: str, cols: int, rows: int) -> ShellSession:
        """Attach an interactive bash session with a pseudo-terminal."""
        api = self.client.api
        try:
            exec_info = await asyncio.to_thread(
                api.exec_create,
                container_id,
                ["/bin/bash", "-lc", SHELL_BOOTSTRAP],
                stdin=True,
                tty=True,
                environment={"TERM": "xterm-256color"},
            )
            exec_id = exec_info["Id"]
            sock = await asyncio.to_thread(api.exec_start, exec_id, tty=True, socket=True)
        except DockerException as e:
            if is_not_found(e):
                raise ContainerNotFoundError(container_id) from e
            raise ContainerRuntimeError(f"Failed to open shell in {container_id}: {e}") from e

        session = ShellSession(self.client, exec_id, sock)
        try:
            await session.resize(cols, rows)
        except DockerException as e:
            # The PTY may not be ready yet; the client resizes again on attach
            logger.debug(f"Initial terminal resize failed: {e}")
        return session
