"""
Booking change feed
===================

Row-level change notifications for bookings and their status history,
modelled as a channel: ``publish`` a ``BookingChange``; ``await listen(id)``
returns a ``ChangeStream`` that is already subscribed and yields every change
for one booking published from then on, until ``close()``.

Two transports:

* ``RedisChangeFeed`` -- Redis pub/sub on ``booking:{id}``; fans out across
  API processes (dashboards connected to different workers converge).
* ``InMemoryChangeFeed`` -- ``asyncio.Queue`` per listener; single process
  and tests.

Delivery is at-least-once from the consumer's point of view: a payload is
always the newest known state, never a diff to apply in order.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

import redis.asyncio as aioredis
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

BOOKINGS_TABLE = "bookings"
HISTORY_TABLE = "booking_status_history"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingChange(BaseModel):
    booking_id: str
    table: str = BOOKINGS_TABLE
    event: str = "UPDATE"  # INSERT | UPDATE
    record: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)


def channel_for(booking_id: str) -> str:
    return f"booking:{booking_id}"


class ChangeStream(Protocol):
    def __aiter__(self) -> "ChangeStream": ...

    async def __anext__(self) -> BookingChange: ...

    async def close(self) -> None: ...


class ChangeFeed(Protocol):
    async def publish(self, change: BookingChange) -> None: ...

    async def listen(self, booking_id: str) -> ChangeStream: ...


# ── In-process transport ──────────────────────────────────────────────


class _QueueStream:
    def __init__(self, feed: "InMemoryChangeFeed", booking_id: str):
        self._feed = feed
        self._booking_id = booking_id
        self._queue: asyncio.Queue[BookingChange] = asyncio.Queue()
        self._closed = False

    def __aiter__(self) -> "_QueueStream":
        return self

    async def __anext__(self) -> BookingChange:
        if self._closed:
            raise StopAsyncIteration
        return await self._queue.get()

    def deliver(self, change: BookingChange) -> None:
        if not self._closed:
            self._queue.put_nowait(change)

    async def close(self) -> None:
        self._closed = True
        self._feed._detach(self._booking_id, self)


class InMemoryChangeFeed:
    """Fan-out to every open stream of a booking.  Streams register on ``listen``."""

    def __init__(self) -> None:
        self._streams: dict[str, set[_QueueStream]] = defaultdict(set)

    async def publish(self, change: BookingChange) -> None:
        for stream in list(self._streams.get(change.booking_id, ())):
            stream.deliver(change)

    async def listen(self, booking_id: str) -> _QueueStream:
        stream = _QueueStream(self, booking_id)
        self._streams[booking_id].add(stream)
        return stream

    def listener_count(self, booking_id: str) -> int:
        return len(self._streams.get(booking_id, ()))

    def _detach(self, booking_id: str, stream: _QueueStream) -> None:
        streams = self._streams.get(booking_id)
        if streams is None:
            return
        streams.discard(stream)
        if not streams:
            del self._streams[booking_id]


# ── Redis transport ───────────────────────────────────────────────────


class _RedisStream:
    def __init__(self, client: aioredis.Redis, booking_id: str):
        self._pubsub = client.pubsub()
        self._channel = channel_for(booking_id)
        self._messages: Optional[Any] = None
        self._closed = False

    async def subscribe(self) -> None:
        await self._pubsub.subscribe(self._channel)
        self._messages = self._pubsub.listen()

    def __aiter__(self) -> "_RedisStream":
        return self

    async def __anext__(self) -> BookingChange:
        if self._closed:
            raise StopAsyncIteration
        while True:
            message = await self._messages.__anext__()
            if message.get("type") != "message":
                continue
            try:
                return BookingChange.model_validate_json(message["data"])
            except ValueError:
                logger.warning("Dropping malformed change on %s", self._channel)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._pubsub.unsubscribe(self._channel)
        finally:
            await self._pubsub.aclose()


class RedisChangeFeed:
    def __init__(self, client: aioredis.Redis):
        self.redis = client

    async def publish(self, change: BookingChange) -> None:
        await self.redis.publish(
            channel_for(change.booking_id), change.model_dump_json()
        )

    async def listen(self, booking_id: str) -> _RedisStream:
        stream = _RedisStream(self.redis, booking_id)
        await stream.subscribe()
        return stream
