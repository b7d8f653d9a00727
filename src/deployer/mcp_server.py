"""MCP tool surface over the lifecycle operations.

Lets an autonomous agent drive the same create/start/stop/delete/update,
proxy sync, diagnostics and reporting operations the task queue uses.
"""

import logging
from typing import Any

from fastmcp import FastMCP

from .config import DeployerConfig
from .services import DeployerServices

logger = logging.getLogger(__name__)


class DeployerMCPServer:
    """FastMCP server with one tool per lifecycle operation."""

    def __init__(self, config: DeployerConfig, services: DeployerServices | None = None):
        self.config = config
        self.services = services or DeployerServices(config)
        self.mcp = FastMCP("clawdeploy-orchestrator")
        self._register_tools()

    def _register_tools(self):
        tools = self.services.tools

        async def instance_create(
            user_id: str,
            name: str,
            channel: str = "",
            bot_token: str | None = None,
            ai_provider: str | None = None,
            api_key: str | None = None,
            region: str | None = None,
            instance_type: str | None = None,
            instance_id: str | None = None,
        ) -> dict[str, Any]:
            return await tools.create(
                user_id=user_id,
                name=name,
                channel=channel,
                bot_token=bot_token,
                ai_provider=ai_provider,
                api_key=api_key,
                region=region,
                instance_type=instance_type,
                instance_id=instance_id,
            )

        async def instance_start(user_id: str, instance_id: str) -> dict[str, Any]:
            return await tools.start(user_id, instance_id)

        async def instance_stop(user_id: str, instance_id: str) -> dict[str, Any]:
            return await tools.stop(user_id, instance_id)

        async def instance_delete(user_id: str, instance_id: str) -> dict[str, Any]:
            return await tools.delete(user_id, instance_id)

        async def instance_update(user_id: str, instance_id: str) -> dict[str, Any]:
            return await tools.update(user_id, instance_id)

        async def nginx_sync() -> dict[str, Any]:
            return await tools.sync_proxy()

        async def bash(command: str, timeout: float | None = None) -> dict[str, Any]:
            return await tools.diagnose(command, timeout=timeout)

        async def report_result(
            success: bool,
            action: str,
            data: dict[str, Any] | None = None,
            errors: list[str] | None = None,
        ) -> dict[str, Any]:
            return await tools.report(success, action, data, errors)

        registrations = [
            (instance_create, "Provision storage, config and a container for a new instance."),
            (instance_start, "Start an instance's stopped container."),
            (instance_stop, "Stop an instance's running container."),
            (instance_delete, "Remove an instance's container, storage and record."),
            (instance_update, "Rebuild the shared image and recreate the instance container."),
            (nginx_sync, "Regenerate the reverse-proxy port map and verify the proxy config."),
            (bash, "Run a diagnostic shell command (destructive commands are rejected)."),
            (report_result, "Report the final outcome of this run. Call exactly once at the end."),
        ]
        for fn, description in registrations:
            self.mcp.tool(name=fn.__name__, description=description)(fn)

        logger.info(f"Registered {len(registrations)} lifecycle tools")

    async def run(self):
        """Get the FastMCP server instance for running."""
        return self.mcp
