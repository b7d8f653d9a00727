"""Diagnostic shell execution guarded by a destructive-command deny-list."""

import asyncio
import logging
import re
from typing import Any

from .errors import BlockedCommandError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_OUTPUT = 10_000

BLOCKED_PATTERNS = [
    re.compile(r"rm\s+-rf\s+/"),  # recursive root deletion
    re.compile(r"docker\s+rm\s+-f"),
    re.compile(r"docker\s+system\s+prune"),
    re.compile(r"mkfs"),
    re.compile(r"dd\s+if="),
    re.compile(r"chmod\s+777\s+/"),
    re.compile(r"wget.*\|\s*(ba)?sh"),
    re.compile(r"curl.*\|\s*(ba)?sh"),
    re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"),  # fork bomb
]


def check_command(command: str) -> None:
    """Raise ``BlockedCommandError`` if the command matches the deny-list."""
    for pattern in BLOCKED_PATTERNS:
        if pattern.search(command):
            logger.warning(
                "Blocked diagnostic command",
                extra={"command": command[:80], "pattern": pattern.pattern},
            )
            raise BlockedCommandError(command)


async def run_diagnostic(
    command: str,
    timeout: float = DEFAULT_TIMEOUT,
    max_output: int = DEFAULT_MAX_OUTPUT,
    cwd: str | None = None,
) -> dict[str, Any]:
    """Run a shell command with a timeout and an output cap.

    Args:
        command: Shell command line
        timeout: Seconds before the process is killed
        max_output: Maximum characters of combined output returned
        cwd: Working directory

    Returns:
        Dict with ``exit_code``, ``output`` and ``timed_out``

    Raises:
        BlockedCommandError: If the command is on the deny-list (nothing is spawned)
    """
    check_command(command)

    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )

    timed_out = False
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        timed_out = True
        process.kill()
        await process.wait()
        stdout, stderr = b"", b""

    parts = [
        chunk.decode("utf-8", errors="replace").rstrip("\n")
        for chunk in (stdout, stderr)
        if chunk
    ]
    output = "\n".join(part for part in parts if part)
    if timed_out:
        output = f"{output}\nCommand timed out after {timeout:g}s".lstrip("\n")
    if len(output) > max_output:
        output = output[:max_output] + "\n... (output truncated)"

    logger.info(
        "Diagnostic command finished",
        extra={"command": command[:80], "exit_code": process.returncode, "timed_out": timed_out},
    )
    return {
        "exit_code": process.returncode,
        "output": output or "(no output)",
        "timed_out": timed_out,
    }
