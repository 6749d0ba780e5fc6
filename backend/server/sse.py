"""
Server-Sent Events (SSE) infrastructure.

Provides SSEEvent formatting, SSEChannel (async queue wrapper) and SSEHub,
the per-session fan-out used to push live dataset updates to every open
event stream.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator, List, Optional

from pydantic import BaseModel

logger = logging.getLogger("uvicorn.error")


class SSEEvent(BaseModel):
    """A single SSE message."""
    event: str
    data: Any = None
    id: Optional[str] = None

    def format(self) -> str:
        """Serialize to SSE wire format."""
        lines: list[str] = []
        if self.id:
            lines.append(f"id: {self.id}")
        lines.append(f"event: {self.event}")

        if self.data is not None:
            if isinstance(self.data, str):
                payload = self.data
            else:
                payload = json.dumps(self.data, default=str)
            for line in payload.split("\n"):
                lines.append(f"data: {line}")
        else:
            lines.append("data: {}")

        return "\n".join(lines) + "\n\n"


class SSEChannel:
    """
    Async queue wrapper for streaming SSE events to one consumer.

    Usage:
        channel = SSEChannel()
        await channel.emit("dataset_replaced", {"sourceId": "ds-1", ...})

        # Consumer (in SSE endpoint):
        async for event_str in channel:
            yield event_str
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Optional[SSEEvent]] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, event: str, data: Any = None, event_id: Optional[str] = None) -> None:
        """Put an event onto the channel."""
        if self._closed:
            return
        sse = SSEEvent(
            event=event,
            data=data,
            id=event_id or str(uuid.uuid4())[:8],
        )
        await self._queue.put(sse)

    async def close(self) -> None:
        """Signal the consumer that no more events will arrive."""
        if self._closed:
            return
        self._closed = True
        await self._queue.put(None)  # sentinel

    async def __aiter__(self) -> AsyncIterator[str]:
        """Yield formatted SSE strings until the channel is closed."""
        while True:
            event = await self._queue.get()
            if event is None:
                break
            yield event.format()


class SSEHub:
    """Fan-out of events to every open channel of one session."""

    def __init__(self) -> None:
        self._channels: List[SSEChannel] = []

    def __len__(self) -> int:
        return len(self._channels)

    def subscribe(self) -> SSEChannel:
        channel = SSEChannel()
        self._channels.append(channel)
        return channel

    def unsubscribe(self, channel: SSEChannel) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    async def publish(self, event: str, data: Any = None) -> int:
        """Emit to every open channel; returns how many received it."""
        self._channels = [c for c in self._channels if not c.closed]
        event_id = str(uuid.uuid4())[:8]
        for channel in self._channels:
            await channel.emit(event, data, event_id=event_id)
        logger.info("SSE %s -> %d subscriber(s)", event, len(self._channels))
        return len(self._channels)

    async def close_all(self) -> None:
        for channel in self._channels:
            await channel.close()
        self._channels = []


# ---------------------------------------------------------------------------
# Standard event types (constants for consistency)
# ---------------------------------------------------------------------------

EVT_CONNECTED = "connected"
EVT_DATASET_REPLACED = "dataset_replaced"
