"""Per-instance secrets, config bundle and storage directories."""

import asyncio
import json
import logging
import os
import secrets
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import channel_settings, env_var_for_provider

logger = logging.getLogger(__name__)

AGENT_WORKSPACE = "/home/node/.openclaw/workspace"
CONTAINER_CONFIG_DIR = "/home/node/.openclaw"
GATEWAY_PORT = 18789
DIR_MODE = 0o777
FILE_MODE = 0o666


@dataclass(frozen=True)
class InstancePaths:
    base: Path
    config_dir: Path
    workspace_dir: Path
    config_file: Path
    env_file: Path


@dataclass(frozen=True)
class ConfigParams:
    """Inputs for one instance's config bundle."""

    instance_id: str
    gateway_token: str
    channel: str = ""
    bot_token: str | None = None
    ai_provider: str | None = None
    api_key: str | None = None


def generate_gateway_token() -> str:
    """64-character hex secret for the instance gateway."""
    return secrets.token_hex(32)


class InstanceConfigProvisioner:
    """Writes and removes the on-disk bundle each instance container mounts.

    Directories are world-writable because the container user differs from
    the orchestrator user.
    """

    def __init__(self, data_root: str | Path = "/data/clawdeploy"):
        self.data_root = Path(data_root)

    def paths(self, instance_id: str) -> InstancePaths:
        base = self.data_root / instance_id
        config_dir = base / "config"
        return InstancePaths(
            base=base,
            config_dir=config_dir,
            workspace_dir=base / "workspace",
            config_file=config_dir / "openclaw.json",
            env_file=config_dir / ".env",
        )

    def generate_config(self, params: ConfigParams) -> dict[str, Any]:
        config: dict[str, Any] = {
            "agents": {"defaults": {"workspace": AGENT_WORKSPACE}},
            "gateway": {
                "mode": "local",
                "port": GATEWAY_PORT,
                "bind": "lan",
                "auth": {"mode": "token", "token": params.gateway_token},
                "tailscale": {"mode": "off"},
                "controlUi": {"allowInsecureAuth": True},
            },
        }

        if params.channel and params.bot_token:
            settings = channel_settings(params.channel)
            config["channels"] = {
                params.channel: {"enabled": True, settings["token_field"]: params.bot_token}
            }

        return config

    def generate_env_file(self, params: ConfigParams) -> str:
        lines = []
        env_var = env_var_for_provider(params.ai_provider)
        if env_var and params.api_key:
            lines.append(f"{env_var}={params.api_key}")
        if params.channel and params.bot_token:
            lines.append(f"{channel_settings(params.channel)['env_var']}={params.bot_token}")
        return "\n".join(lines) + "\n" if lines else ""

    def container_env(self, params: ConfigParams) -> dict[str, str]:
        """Environment passed directly to the instance container."""
        env = {"OPENCLAW_GATEWAY_TOKEN": params.gateway_token}
        env_var = env_var_for_provider(params.ai_provider)
        if env_var and params.api_key:
            env[env_var] = params.api_key
        return env

    def volumes(self, instance_id: str) -> dict[str, dict[str, str]]:
        paths = self.paths(instance_id)
        return {
            str(paths.config_dir): {"bind": CONTAINER_CONFIG_DIR, "mode": "rw"},
            str(paths.workspace_dir): {"bind": AGENT_WORKSPACE, "mode": "rw"},
        }

    def _create_storage(self, instance_id: str) -> InstancePaths:
        paths = self.paths(instance_id)
        paths.config_dir.mkdir(parents=True, exist_ok=True)
        paths.workspace_dir.mkdir(parents=True, exist_ok=True)
        # mkdir honours the umask, so set modes explicitly
        for directory in (paths.base, paths.config_dir, paths.workspace_dir):
            os.chmod(directory, DIR_MODE)
        return paths

    async def create_storage(self, instance_id: str) -> InstancePaths:
        paths = await asyncio.to_thread(self._create_storage, instance_id)
        logger.info(f"Created storage for instance {instance_id}", extra={"path": str(paths.base)})
        return paths

    def _write_config(self, params: ConfigParams) -> None:
        paths = self.paths(params.instance_id)
        paths.config_file.write_text(json.dumps(self.generate_config(params), indent=2))
        os.chmod(paths.config_file, FILE_MODE)

        env_text = self.generate_env_file(params)
        if env_text:
            paths.env_file.write_text(env_text)
            os.chmod(paths.env_file, FILE_MODE)

    async def write_config(self, params: ConfigParams) -> None:
        await asyncio.to_thread(self._write_config, params)

    def _remove_storage(self, instance_id: str) -> None:
        shutil.rmtree(self.paths(instance_id).base, ignore_errors=True)

    async def remove_storage(self, instance_id: str) -> None:
        """Delete the instance tree. Never raises."""
        try:
            await asyncio.to_thread(self._remove_storage, instance_id)
        except Exception as e:
            logger.warning(f"Failed to remove storage for {instance_id}: {e}")
