"""Deployer configuration and provider/channel lookup tables."""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

from observability.paths import DEFAULT_LOG_ROOT

logger = logging.getLogger(__name__)

SUPPORTED_CHANNELS = ("telegram", "discord")


class DeployerConfig:
    """Configuration for the instance orchestrator."""

    def __init__(
        self,
        server_host: str = "0.0.0.0",
        server_port: int = 8080,
        data_root: str = "/data/clawdeploy",
        log_dir: str = str(DEFAULT_LOG_ROOT),
        log_level: str = "INFO",
        store_path: str | None = "/data/clawdeploy/state.json",
        trace_dir: str | None = None,
        report_dir: str | None = None,
        alert_file: str | None = None,
        image_tag: str = "openclaw:local",
        image_source_dir: str = "/opt/openclaw-src",
        container_port: int = 18789,
        nano_cpus: int = 500_000_000,
        memory_bytes: int = 256 * 1024 * 1024,
        restart_policy: str = "always",
        min_port: int = 10000,
        max_port: int = 20000,
        port_retry_attempts: int = 10,
        task_poll_interval: float = 2.0,
        task_error_backoff: float = 5.0,
        diagnostic_timeout: float = 30.0,
        diagnostic_max_output: int = 10_000,
        diagnostic_cwd: str | None = None,
        proxy_map_path: str = "/etc/nginx/clawdeploy/port_map.conf",
        proxy_reload_command: tuple[str, ...] = ("sudo", "nginx", "-s", "reload"),
        proxy_verify_command: tuple[str, ...] = ("sudo", "nginx", "-t"),
        trace_export_url: str | None = None,
    ):
        self.server_host = server_host
        self.server_port = server_port
        self.data_root = data_root
        self.log_dir = log_dir
        self.log_level = log_level
        self.store_path = store_path
        # Trace, report and alert output default to locations under log_dir
        self.trace_dir = trace_dir or str(Path(log_dir) / "traces")
        self.report_dir = report_dir or str(Path(log_dir) / "reports")
        self.alert_file = alert_file or str(Path(log_dir) / "alerts.jsonl")
        self.image_tag = image_tag
        self.image_source_dir = image_source_dir
        self.container_port = container_port
        self.nano_cpus = nano_cpus
        self.memory_bytes = memory_bytes
        self.restart_policy = restart_policy
        self.min_port = min_port
        self.max_port = max_port
        self.port_retry_attempts = port_retry_attempts
        self.task_poll_interval = task_poll_interval
        self.task_error_backoff = task_error_backoff
        self.diagnostic_timeout = diagnostic_timeout
        self.diagnostic_max_output = diagnostic_max_output
        self.diagnostic_cwd = diagnostic_cwd
        self.proxy_map_path = proxy_map_path
        self.proxy_reload_command = tuple(proxy_reload_command)
        self.proxy_verify_command = tuple(proxy_verify_command)
        self.trace_export_url = trace_export_url

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "DeployerConfig":
        """Build a config from ``DEPLOYER_*`` environment variables.

        Unset variables fall back to the constructor defaults.
        """
        env = os.environ if environ is None else environ
        defaults = cls()
        kwargs: dict[str, Any] = {}

        for key, current in defaults.to_dict().items():
            raw = env.get(f"DEPLOYER_{key.upper()}")
            if raw is None:
                continue
            if isinstance(current, bool):
                kwargs[key] = raw.lower() in ("1", "true", "yes")
            elif isinstance(current, int):
                kwargs[key] = int(raw)
            elif isinstance(current, float):
                kwargs[key] = float(raw)
            elif isinstance(current, tuple):
                kwargs[key] = tuple(raw.split())
            else:
                kwargs[key] = raw or None

        # Generic fallbacks
        if "log_dir" not in kwargs and env.get("LOG_DIR"):
            kwargs["log_dir"] = env["LOG_DIR"]
        if "log_level" not in kwargs and env.get("LOG_LEVEL"):
            kwargs["log_level"] = env["LOG_LEVEL"]

        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Return a plain dict representation."""
        return {
            "server_host": self.server_host,
            "server_port": self.server_port,
            "data_root": self.data_root,
            "log_dir": self.log_dir,
            "log_level": self.log_level,
            "store_path": self.store_path,
            "trace_dir": self.trace_dir,
            "report_dir": self.report_dir,
            "alert_file": self.alert_file,
            "image_tag": self.image_tag,
            "image_source_dir": self.image_source_dir,
            "container_port": self.container_port,
            "nano_cpus": self.nano_cpus,
            "memory_bytes": self.memory_bytes,
            "restart_policy": self.restart_policy,
            "min_port": self.min_port,
            "max_port": self.max_port,
            "port_retry_attempts": self.port_retry_attempts,
            "task_poll_interval": self.task_poll_interval,
            "task_error_backoff": self.task_error_backoff,
            "diagnostic_timeout": self.diagnostic_timeout,
            "diagnostic_max_output": self.diagnostic_max_output,
            "diagnostic_cwd": self.diagnostic_cwd,
            "proxy_map_path": self.proxy_map_path,
            "proxy_reload_command": self.proxy_reload_command,
            "proxy_verify_command": self.proxy_verify_command,
            "trace_export_url": self.trace_export_url,
        }


@lru_cache(maxsize=1)
def _load_provider_config() -> dict:
    """Load provider and channel tables from ``providers.yaml``.

    Returns:
        Dict with ``providers`` and ``channels`` sections

    Raises:
        FileNotFoundError: If the YAML file is missing
        ValueError: If the YAML cannot be parsed
    """
    config_path = Path(__file__).parent / "providers.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"Provider configuration file not found: {config_path}")

    try:
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}

        logger.debug(f"Loaded provider configuration from {config_path}")
        return config

    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse provider configuration YAML: {e}") from e


def env_var_for_provider(provider: str | None) -> str | None:
    """Return the API-key environment variable for an AI provider name.

    Lookup is case-insensitive. Unknown or empty providers return ``None``.
    """
    if not provider:
        return None
    providers = _load_provider_config().get("providers", {})
    return providers.get(provider.lower())


def channel_settings(channel: str) -> dict[str, str]:
    """Return the config/env settings for a messaging channel.

    Raises:
        ValueError: If the channel kind is unknown
    """
    channels = _load_provider_config().get("channels", {})
    if channel not in channels:
        allowed = ", ".join(sorted(channels))
        raise ValueError(f"Unknown channel '{channel}'. Allowed channels: {allowed}")
    return channels[channel]


def validate_channel(channel: str | None) -> str:
    """Normalize a channel kind; an empty value means no channel."""
    if not channel:
        return ""
    channel_settings(channel)
    return channel
