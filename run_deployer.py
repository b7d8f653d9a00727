#!/usr/bin/env python3
"""Launcher script for the ClawDeploy orchestrator.

Supports two transport modes:
1. HTTP: FastAPI server with the instance API, task processor and web terminal
2. STDIO: MCP server exposing the lifecycle tools to an agent over stdin/stdout

Transport auto-detection:
- DEPLOYER_TRANSPORT takes precedence
- If stdin is a terminal (isatty), start HTTP server
- If stdin is piped, start STDIO server
"""

import asyncio
import os
import sys
from pathlib import Path

# Add src to Python path
sys.path.insert(0, str(Path(__file__).parent / "src"))


def detect_transport_mode() -> str:
    """Detect which transport mode to use.

    Returns:
        "http" for terminal input, "stdio" for piped input
    """
    env_transport = os.getenv("DEPLOYER_TRANSPORT")
    if env_transport:
        return env_transport.lower()

    if sys.stdin.isatty():
        return "http"
    else:
        return "stdio"


async def start_http_server(config):
    """Start the HTTP server."""
    from deployer.server import DeployerServer

    print(f"Starting ClawDeploy orchestrator (HTTP) on {config.server_host}:{config.server_port}")
    print(f"Data root: {config.data_root}")
    print(f"Image: {config.image_tag}")

    server = DeployerServer(config)
    await server.start_server()


async def start_stdio_server(config):
    """Start the STDIO MCP server."""
    from deployer.logging_manager import LoggingManager
    from deployer.mcp_server import DeployerMCPServer

    print("Starting ClawDeploy orchestrator (STDIO)", file=sys.stderr)
    print(f"Data root: {config.data_root}", file=sys.stderr)

    LoggingManager(config.log_dir, config.log_level)
    mcp_server = DeployerMCPServer(config)
    mcp_instance = await mcp_server.run()
    await mcp_instance.run_stdio_async()


def main():
    """Main entry point with transport auto-detection."""
    try:
        from deployer.config import DeployerConfig

        config = DeployerConfig.from_env()
        transport = detect_transport_mode()

        if transport == "stdio":
            asyncio.run(start_stdio_server(config))
        else:
            asyncio.run(start_http_server(config))

    except ImportError as e:
        print(f"Import error: {e}", file=sys.stderr)
        print("Please ensure dependencies are installed:", file=sys.stderr)
        print("pip install -e .", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error starting server: {e}", file=sys.stderr)
        import traceback

        traceback.print_exc(file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
