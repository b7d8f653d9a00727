"""Optional external span export.

The tracer always talks to a ``SpanExporter``; when nothing is configured it
gets a ``NullSpanExporter`` that drops everything.
"""

import logging
from typing import TYPE_CHECKING, Any, Protocol

import httpx

if TYPE_CHECKING:
    from observability.tracing.models import AgentSpan

logger = logging.getLogger(__name__)


class SpanExporter(Protocol):
    """Interface for shipping spans to an external tracing backend.

    Implementations must not raise; export is best effort.
    """

    def record_span(self, trace_id: str, span: "AgentSpan") -> None: ...

    async def flush(self) -> None: ...


class NullSpanExporter:
    def record_span(self, trace_id: str, span: "AgentSpan") -> None:
        return None

    async def flush(self) -> None:
        return None


class HttpSpanExporter:
    """Buffers spans and POSTs them as JSON on ``flush``."""

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._client = client
        self._buffer: list[dict[str, Any]] = []

    def record_span(self, trace_id: str, span: "AgentSpan") -> None:
        self._buffer.append({"traceId": trace_id, **span.to_dict()})

    async def flush(self) -> None:
        if not self._buffer:
            return
        batch, self._buffer = self._buffer, []
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json={"spans": batch}, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json={"spans": batch}, headers=self.headers)
            response.raise_for_status()
            logger.debug(f"Exported {len(batch)} spans to {self.url}")
        except httpx.HTTPError as e:
            logger.warning(f"Span export failed (non-fatal): {e}", extra={"spans": len(batch)})


def exporter_from_config(url: str | None, headers: dict[str, str] | None = None) -> SpanExporter:
    if not url:
        return NullSpanExporter()
    return HttpSpanExporter(url, headers=headers)
