"""
Notification sink
=================

Fire-and-forget hand-off of booking notifications (email / push) to the
delivery workers.  Messages are pushed onto a Redis list; delivery itself
happens elsewhere.

``notify`` never raises: a failed notification is logged and the caller's
primary mutation stands.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Protocol

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def notify(
        self,
        event_type: str,
        booking_id: str,
        recipient_role: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> None: ...


class RedisNotificationSink:
    def __init__(self, client: aioredis.Redis, queue: str = "notifications:outbox"):
        self.redis = client
        self.queue = queue

    async def notify(
        self,
        event_type: str,
        booking_id: str,
        recipient_role: str,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> None:
        message = {
            "event_type": event_type,
            "booking_id": booking_id,
            "recipient_role": getattr(recipient_role, "value", recipient_role),
            "payload": dict(payload or {}),
            "queued_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self.redis.lpush(self.queue, json.dumps(message, default=str))
        except Exception:
            logger.exception(
                "Notification %s for booking %s (%s) not queued",
                event_type,
                booking_id,
                message["recipient_role"],
            )
            return
        logger.debug("Queued %s notification for booking %s", event_type, booking_id)
