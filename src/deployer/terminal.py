"""WebSocket terminal proxy into running instance containers.

Binary frames carry raw shell I/O in both directions. Client text frames are
either a JSON resize control message or raw input.
"""

import asyncio
import json
import logging
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from .errors import ContainerRuntimeError
from .identity import is_valid_instance_id, resolve_identity
from .runtime import ContainerRuntimeClient, ShellSession
from .simple_models import InstanceStatus
from .store import RecordStore

logger = logging.getLogger(__name__)

DEFAULT_COLS = 120
DEFAULT_ROWS = 32
MIN_COLS = 40
MIN_ROWS = 10
MAX_COLS = 400
MAX_ROWS = 200

CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_INTERNAL_ERROR = 1011


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None
    return int(value)


def normalize_terminal_size(cols: Any, rows: Any) -> tuple[int, int]:
    """Clamp a requested size to the supported range.

    Sizes below the minimum (or non-numeric) fall back to the default size
    rather than being rejected; sizes above the maximum are capped.
    """
    next_cols = _as_int(cols)
    next_rows = _as_int(rows)
    if next_cols is None:
        next_cols = DEFAULT_COLS
    if next_rows is None:
        next_rows = DEFAULT_ROWS

    if next_cols < MIN_COLS or next_rows < MIN_ROWS:
        return DEFAULT_COLS, DEFAULT_ROWS
    return min(next_cols, MAX_COLS), min(next_rows, MAX_ROWS)


def parse_control_frame(data: str | bytes) -> tuple[int, int] | None:
    """Return a normalized ``(cols, rows)`` for a resize message, else None."""
    if isinstance(data, bytes):
        if not data.startswith(b"{"):
            return None
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        message = json.loads(data)
    except ValueError:
        return None

    if not isinstance(message, dict) or message.get("type") != "resize":
        return None
    if _as_int(message.get("cols")) is None or _as_int(message.get("rows")) is None:
        return None
    return normalize_terminal_size(message["cols"], message["rows"])


class TerminalProxy:
    """Authenticates a terminal connection and bridges it to a container shell."""

    def __init__(self, store: RecordStore, runtime: ContainerRuntimeClient):
        self.store = store
        self.runtime = runtime

    async def _reject(self, websocket: WebSocket, code: int, reason: str, message: str | None = None):
        try:
            await websocket.send_json({"type": "error", "message": message or reason})
            await websocket.close(code=code, reason=reason)
        except (WebSocketDisconnect, RuntimeError):
            pass

    async def handle(self, websocket: WebSocket, instance_id: str, token: str | None) -> None:
        await websocket.accept()

        if not is_valid_instance_id(instance_id):
            await self._reject(websocket, CLOSE_POLICY_VIOLATION, "Invalid path")
            return
        if not token:
            await self._reject(websocket, CLOSE_POLICY_VIOLATION, "Authentication required")
            return
        user_id = resolve_identity(token)
        if user_id is None:
            await self._reject(websocket, CLOSE_POLICY_VIOLATION, "Invalid token")
            return

        record = await self.store.find_first(
            "instances",
            {"id": instance_id, "user_id": user_id, "status": InstanceStatus.RUNNING.value},
        )
        container_id = record.get("container_id") if record else None
        if not container_id:
            await self._reject(
                websocket,
                CLOSE_POLICY_VIOLATION,
                "Instance not found",
                message="Instance not found or not running",
            )
            return

        try:
            session = await self.runtime.open_shell(container_id, DEFAULT_COLS, DEFAULT_ROWS)
        except ContainerRuntimeError as e:
            logger.error(f"Failed to start terminal for {instance_id}: {e}")
            await self._reject(
                websocket,
                CLOSE_INTERNAL_ERROR,
                "Internal error",
                message="Failed to start terminal session",
            )
            return

        logger.info(
            f"Terminal connected: instance={instance_id} container={container_id[:12]}",
            extra={"instance_id": instance_id, "user_id": user_id},
        )
        await self.bridge(websocket, session)
        logger.info(f"Terminal disconnected: instance={instance_id}")

    async def bridge(self, websocket: WebSocket, session: ShellSession) -> None:
        """Pump bytes both ways until either side closes."""
        output_task = asyncio.create_task(self._pump_output(websocket, session))
        input_task = asyncio.create_task(self._pump_input(websocket, session))

        done, pending = await asyncio.wait(
            {output_task, input_task}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await session.close()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            if task.exception() is not None:
                logger.warning(f"Terminal bridge error: {task.exception()!r}")

        if output_task in done:
            try:
                await websocket.close(code=CLOSE_NORMAL, reason="Stream ended")
            except RuntimeError:
                pass

    async def _pump_output(self, websocket: WebSocket, session: ShellSession) -> None:
        while True:
            chunk = await session.read()
            if not chunk:
                return
            await websocket.send_bytes(chunk)

    async def _pump_input(self, websocket: WebSocket, session: ShellSession) -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

            text = message.get("text")
            data = message.get("bytes")
            payload = data if data is not None else text
            if payload is None:
                continue

            size = parse_control_frame(payload)
            if size is not None:
                try:
                    await session.resize(*size)
                except Exception as e:
                    logger.debug(f"Terminal resize failed: {e}")
                continue

            await session.write(payload if isinstance(payload, bytes) else payload.encode("utf-8"))
