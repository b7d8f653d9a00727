"""Reverse-proxy port map synchronization."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any

from .errors import ProxySyncError
from .simple_models import InstanceStatus
from .store import RecordStore

logger = logging.getLogger(__name__)

VERIFY_TIMEOUT = 5.0
RELOAD_TIMEOUT = 30.0


def render_port_map(entries: dict[str, int]) -> str:
    """Render an nginx ``map`` block from instance id to host port."""
    lines = [
        "# Managed by clawdeploy; regenerated on every lifecycle change.",
        "map $instance_id $instance_port {",
        "    default 0;",
    ]
    for instance_id in sorted(entries):
        lines.append(f"    {instance_id} {entries[instance_id]};")
    lines.append("}")
    return "\n".join(lines) + "\n"


async def run_command(command: tuple[str, ...], timeout: float) -> tuple[int, str]:
    """Run a command, returning exit code and combined output.

    The process is killed if it outlives ``timeout``.
    """
    process = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        raise
    return process.returncode, stdout.decode("utf-8", errors="replace").strip()


class ProxySynchronizer:
    """Regenerates the port map for running instances and reloads the proxy.

    Safe to call concurrently; overlapping calls are serialized internally and
    each one renders the current store state.
    """

    def __init__(
        self,
        store: RecordStore,
        map_path: str | Path,
        reload_command: tuple[str, ...] = ("sudo", "nginx", "-s", "reload"),
        verify_command: tuple[str, ...] = ("sudo", "nginx", "-t"),
    ):
        self.store = store
        self.map_path = Path(map_path)
        self.reload_command = tuple(reload_command)
        self.verify_command = tuple(verify_command)
        self._lock = asyncio.Lock()

    def _write_map(self, content: str) -> None:
        self.map_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.map_path.with_suffix(self.map_path.suffix + ".tmp")
        tmp_path.write_text(content)
        os.replace(tmp_path, self.map_path)

    async def sync(self) -> dict[str, Any]:
        """Rewrite the port map and reload the proxy.

        Raises:
            ProxySyncError: If the map cannot be written or the reload fails
        """
        async with self._lock:
            running = await self.store.find_many(
                "instances", {"status": InstanceStatus.RUNNING.value}
            )
            entries = {r["id"]: r["port"] for r in running if r.get("port") is not None}

            try:
                await asyncio.to_thread(self._write_map, render_port_map(entries))
            except OSError as e:
                raise ProxySyncError(f"Failed to write port map {self.map_path}: {e}") from e

            reloaded = False
            if self.reload_command:
                try:
                    code, output = await run_command(self.reload_command, RELOAD_TIMEOUT)
                except (OSError, TimeoutError) as e:
                    raise ProxySyncError(f"Proxy reload failed: {e}") from e
                if code != 0:
                    raise ProxySyncError(f"Proxy reload exited with {code}: {output}")
                reloaded = True

        logger.info(
            f"Port map synced ({len(entries)} running instances)",
            extra={"map_path": str(self.map_path), "instances": len(entries)},
        )
        return {"instances": len(entries), "map_path": str(self.map_path), "reloaded": reloaded}

    async def verify(self) -> bool:
        """Run the proxy config self-test. Never raises."""
        try:
            code, output = await run_command(self.verify_command, VERIFY_TIMEOUT)
        except (OSError, TimeoutError) as e:
            logger.warning(f"Proxy config verification could not run: {e!r}")
            return False
        if code != 0:
            logger.warning(f"Proxy config verification failed: {output}")
            return False
        return True
