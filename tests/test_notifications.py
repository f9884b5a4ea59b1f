"""Notification outbox (mocked Redis)."""

import json
from unittest.mock import AsyncMock

import pytest

from src.domain.enums import ActorRole
from src.services.notifications import RedisNotificationSink


class TestRedisNotificationSink:
    @pytest.mark.asyncio
    async def test_pushes_json_message(self):
        mock_redis = AsyncMock()
        sink = RedisNotificationSink(mock_redis, queue="test:outbox")

        await sink.notify("payment_confirmed", "b-1", ActorRole.PASSENGER, {"amount": 4500})

        queue, raw = mock_redis.lpush.await_args.args
        message = json.loads(raw)
        assert queue == "test:outbox"
        assert message["event_type"] == "payment_confirmed"
        assert message["booking_id"] == "b-1"
        assert message["recipient_role"] == "passenger"
        assert message["payload"] == {"amount": 4500}
        assert "queued_at" in message

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self):
        mock_redis = AsyncMock()
        mock_redis.lpush = AsyncMock(side_effect=ConnectionError("redis down"))
        sink = RedisNotificationSink(mock_redis)

        await sink.notify("offer_expired", "b-2", "passenger")

        mock_redis.lpush.assert_awaited_once()
