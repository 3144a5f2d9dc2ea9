"""
Reference-counted registry of live event subscriptions.

Channels are keyed by filter (``all``, ``actor:<id>``, ``type:<code>``),
created on first subscribe and dropped when the last subscriber leaves.
Publishing never blocks: a full subscriber queue loses the event.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import structlog

from auditchain.schemas.audit import AuditEventOut

_log = structlog.get_logger(__name__)

ALL = "all"


def filter_key(actor_id: str | None = None, event_type: str | None = None) -> str:
    if actor_id:
        return f"actor:{actor_id}"
    if event_type:
        return f"type:{event_type}"
    return ALL


def keys_for(event: AuditEventOut) -> tuple[str, str, str]:
    return ALL, f"actor:{event.actor_id}", f"type:{event.event_type.value}"


@dataclass
class Channel:
    key: str
    subscribers: set[asyncio.Queue[AuditEventOut]] = field(default_factory=set)


class SubscriptionRegistry:
    def __init__(self, queue_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._channels: dict[str, Channel] = {}
        self._dropped = 0

    @asynccontextmanager
    async def subscribe(self, key: str) -> AsyncIterator[asyncio.Queue[AuditEventOut]]:
        queue: asyncio.Queue[AuditEventOut] = asyncio.Queue(maxsize=self._queue_size)
        channel = self._channels.get(key)
        if channel is None:
            channel = self._channels[key] = Channel(key)
            _log.debug("subscription_channel_created", key=key)
        channel.subscribers.add(queue)
        try:
            yield queue
        finally:
            channel.subscribers.discard(queue)
            if not channel.subscribers and self._channels.get(key) is channel:
                del self._channels[key]
                _log.debug("subscription_channel_reaped", key=key)

    def publish(self, event: AuditEventOut) -> int:
        """Hand the event to every matching subscriber; returns deliveries."""
        delivered = 0
        for key in keys_for(event):
            channel = self._channels.get(key)
            if channel is None:
                continue
            for queue in channel.subscribers:
                try:
                    queue.put_nowait(event)
                    delivered += 1
                except asyncio.QueueFull:
                    self._dropped += 1
                    _log.warning("subscriber_queue_full", key=key, event_id=event.id)
        return delivered

    def subscriber_count(self, key: str) -> int:
        channel = self._channels.get(key)
        return len(channel.subscribers) if channel else 0

    @property
    def channel_keys(self) -> list[str]:
        return sorted(self._channels)

    @property
    def dropped(self) -> int:
        return self._dropped
