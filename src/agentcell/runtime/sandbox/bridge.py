"""Stream bridge from exec output to an external durable stream.

:meth:`StreamBridge.forward` wraps an ``exec_stream`` iterator: every event
is handed back to the caller unchanged and, on the side, published to a
:class:`StreamSink` as a normalized terminal event.  Publishing is
push-only and fire-and-forget.  A slow or failing sink never delays the
command; failures are logged and dropped.  Retrying is the sink's job.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any, Literal, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field

from agentcell.runtime.sandbox.models import (
    ExecStreamEvent,
    ExitEvent,
    LifecycleEvent,
    StdoutChunk,
    utcnow,
)

logger = logging.getLogger(__name__)

TERMINAL_OUTPUT = "sandbox:terminal:output"
TERMINAL_EXIT = "sandbox:terminal:exit"


class TerminalOutputEvent(BaseModel):
    """Normalized terminal event as stored in the durable stream."""

    sandbox_id: str
    channel: Literal["stdout", "stderr", "exit"]
    data: str = ""
    exit_code: int | None = None
    duration_ms: int | None = None
    timed_out: bool = False
    sequence: int = Field(description="Position of the event within one command's output.")
    timestamp: datetime = Field(default_factory=utcnow)


@runtime_checkable
class StreamSink(Protocol):
    """Destination for bridged events."""

    async def publish(self, stream_id: str, event_type: str, data: dict[str, Any]) -> None:
        """Append one event to *stream_id*."""
        ...


class StreamBridge:
    """Tee ``exec_stream`` events into a :class:`StreamSink`.

    Usage::

        bridge = StreamBridge(sink)
        async for event in bridge.forward(session_id, sandbox_id, manager.exec_stream(...)):
            ...
        await bridge.drain()

    At most *max_pending* publishes are in flight; events arriving past
    that are dropped and counted in :attr:`dropped`.
    """

    def __init__(self, sink: StreamSink, *, max_pending: int = 1024) -> None:
        if max_pending < 1:
            msg = "max_pending must be at least 1"
            raise ValueError(msg)
        self._sink = sink
        self._max_pending = max_pending
        self._pending: set[asyncio.Task[None]] = set()
        self.dropped = 0

    @property
    def pending(self) -> int:
        """Number of publishes still in flight."""
        return len(self._pending)

    async def forward(
        self,
        stream_id: str,
        sandbox_id: str,
        events: AsyncIterator[ExecStreamEvent],
    ) -> AsyncIterator[ExecStreamEvent]:
        """Yield *events* unchanged while publishing each one to the sink."""
        sequence = 0
        async for event in events:
            terminal = to_terminal_event(sandbox_id, event, sequence)
            event_type = TERMINAL_EXIT if isinstance(event, ExitEvent) else TERMINAL_OUTPUT
            self._schedule(stream_id, event_type, terminal.model_dump(mode="json"))
            sequence += 1
            yield event

    def publish_lifecycle(self, stream_id: str, event: LifecycleEvent) -> None:
        """Forward a provider lifecycle event; usable as a provider listener."""
        self._schedule(stream_id, event.type, event.model_dump(mode="json"))

    async def drain(self) -> None:
        """Wait for every publish scheduled so far to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, stream_id: str, event_type: str, data: dict[str, Any]) -> None:
        if len(self._pending) >= self._max_pending:
            self.dropped += 1
            logger.warning(
                "Stream sink backlog full (%d in flight); dropped %s event for stream %s",
                len(self._pending), event_type, stream_id,
            )
            return
        task = asyncio.create_task(self._publish(stream_id, event_type, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, stream_id: str, event_type: str, data: dict[str, Any]) -> None:
        try:
            await self._sink.publish(stream_id, event_type, data)
        except Exception as exc:
            logger.warning("Dropped %s event for stream %s: %s", event_type, stream_id, exc)


def to_terminal_event(sandbox_id: str, event: ExecStreamEvent, sequence: int) -> TerminalOutputEvent:
    if isinstance(event, ExitEvent):
        return TerminalOutputEvent(
            sandbox_id=sandbox_id,
            channel="exit",
            exit_code=event.exit_code,
            duration_ms=event.duration_ms,
            timed_out=event.timed_out,
            sequence=sequence,
        )
    return TerminalOutputEvent(
        sandbox_id=sandbox_id,
        channel="stdout" if isinstance(event, StdoutChunk) else "stderr",
        data=event.data,
        sequence=sequence,
    )


class HttpStreamSink:
    """Publish events to a durable-stream HTTP service.

    Each event becomes ``POST <base_url>/streams/<stream_id>`` with body
    ``{"type": ..., "data": ...}``.  The response body is not read.

    Usage::

        async with HttpStreamSink("http://streams.internal:4437") as sink:
            bridge = StreamBridge(sink)
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._headers = headers or {}
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> HttpStreamSink:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers=self._headers,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *_: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            msg = "HttpStreamSink must be used as an async context manager"
            raise RuntimeError(msg)
        return self._client

    async def publish(self, stream_id: str, event_type: str, data: dict[str, Any]) -> None:
        response = await self._http().post(f"/streams/{stream_id}", json={"type": event_type, "data": data})
        response.raise_for_status()


class MemoryStreamSink:
    """In-process sink that keeps every event, per stream, in order of publication."""

    def __init__(self) -> None:
        self.streams: dict[str, list[tuple[str, dict[str, Any]]]] = {}

    async def publish(self, stream_id: str, event_type: str, data: dict[str, Any]) -> None:
        self.streams.setdefault(stream_id, []).append((event_type, data))

    def events(self, stream_id: str) -> list[tuple[str, dict[str, Any]]]:
        return list(self.streams.get(stream_id, []))
