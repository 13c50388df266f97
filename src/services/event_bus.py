from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from config import settings
from .clock import isoformat, utc_now

logger = logging.getLogger("jollykite.hub.stream")


def _json_default(value: Any) -> Any:
    if hasattr(value, "to_payload"):
        return value.to_payload()
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


@dataclass(frozen=True, slots=True)
class EventMessage:
    """One stream message; the event kind travels inside the JSON body under ``type``."""

    type: str
    data: Any
    id: str | None = None
    retry: int | None = None
    created_at: float = field(default_factory=lambda: time.time())

    def to_sse(self) -> bytes:
        # No "event:" line so browsers deliver every message to EventSource.onmessage
        payload = json.dumps(self.data, separators=(",", ":"), default=_json_default)
        lines: list[str] = []
        if self.retry is not None:
            lines.append(f"retry: {self.retry}")
        if self.id is not None:
            lines.append(f"id: {self.id}")
        for chunk in payload.splitlines() or ["{}"]:
            lines.append(f"data: {chunk}")
        return ("\n".join(lines) + "\n\n").encode("utf-8")


class StreamSubscription:
    def __init__(self, hub: LiveBroadcastHub, queue: asyncio.Queue[EventMessage]) -> None:
        self._hub = hub
        self._queue = queue
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or not self._hub.is_subscribed(self._queue)

    async def get(self) -> EventMessage:
        return await self._queue.get()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._hub._unsubscribe(self._queue)


class LiveBroadcastHub:
    """Fan-out of wind updates to SSE subscribers.

    Broadcasting never waits on a subscriber: a client whose queue is full is
    dropped and has to reconnect.
    """

    def __init__(self, *, subscriber_queue_size: int = 64) -> None:
        self._subscriber_queue_size = max(1, subscriber_queue_size)
        self._subscribers: set[asyncio.Queue[EventMessage]] = set()
        self._lock = asyncio.Lock()
        self._counter = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def is_subscribed(self, queue: asyncio.Queue[EventMessage]) -> bool:
        return queue in self._subscribers

    async def publish(self, event_type: str, data: Any, *, retry: int | None = None) -> int:
        """Enqueue ``data`` for every subscriber; returns how many received it."""
        message = EventMessage(type=event_type, data=data, id=self._next_id(), retry=retry)
        delivered = 0
        async with self._lock:
            stale: list[asyncio.Queue[EventMessage]] = []
            for queue in self._subscribers:
                try:
                    queue.put_nowait(message)
                    delivered += 1
                except asyncio.QueueFull:
                    stale.append(queue)
            for queue in stale:
                self._subscribers.discard(queue)
        if stale:
            logger.info("Dropped %d slow stream subscriber(s)", len(stale))
        return delivered

    async def broadcast_wind_update(self, data: dict[str, Any], trend: dict[str, Any] | None = None) -> int:
        return await self.publish("wind_update", wind_update_payload(data, trend))

    async def subscribe(self) -> StreamSubscription:
        queue: asyncio.Queue[EventMessage] = asyncio.Queue(self._subscriber_queue_size)
        async with self._lock:
            self._subscribers.add(queue)
        logger.debug("Stream subscriber added (%d active)", len(self._subscribers))
        return StreamSubscription(self, queue)

    async def _unsubscribe(self, queue: asyncio.Queue[EventMessage]) -> None:
        async with self._lock:
            self._subscribers.discard(queue)

    def _next_id(self) -> str:
        self._counter += 1
        return str(self._counter)


def wind_update_payload(data: dict[str, Any] | None, trend: dict[str, Any] | None) -> dict[str, Any]:
    return {
        "type": "wind_update",
        "data": data,
        "trend": trend,
        "timestamp": isoformat(utc_now()),
    }


live_hub = LiveBroadcastHub(subscriber_queue_size=settings.stream_queue_size)

__all__ = ["EventMessage", "LiveBroadcastHub", "StreamSubscription", "live_hub", "wind_update_payload"]
