"""
Concurrency safety tests.

Demonstrates:
1. Distributed lock prevents simultaneous acquire and only releases its own key.
2. The offer-expiry sweep runs only under the lock and expires only stale
   bookings still waiting on a driver, re-checked at write time so a payment
   landing mid-sweep wins.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from src.infrastructure.locks import DistributedLock, LockNotAcquired
from src.infrastructure.repositories import BookingRepository
from src.services.payments import sign_payload
from src.workers.expiry import run_expiry_cycle


class TestDistributedLock:
    """Tests the Redis distributed lock logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        assert await lock.acquire() is True
        mock_redis.set.assert_awaited_once_with(
            "ridesync:lock:test-key", lock.token, nx=True, ex=10
        )

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=None)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        assert await lock.acquire() is False

    @pytest.mark.asyncio
    async def test_release_calls_eval(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=1)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        await lock.acquire()
        await lock.release()

        mock_redis.eval.assert_called_once()
        assert lock.held is False

    @pytest.mark.asyncio
    async def test_release_without_acquire_is_noop(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)
        mock_redis.eval = AsyncMock(return_value=0)

        lock = DistributedLock(mock_redis, "test-key")
        await lock.acquire()
        await lock.release()

        mock_redis.eval.assert_not_called()

    @pytest.mark.asyncio
    async def test_context_manager_acquire_fail_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "test-key", ttl_seconds=10)
        with pytest.raises(LockNotAcquired, match="Could not acquire lock"):
            async with lock:
                pass

    def test_tokens_are_unique(self):
        mock_redis = AsyncMock()
        assert DistributedLock(mock_redis, "k").token != DistributedLock(mock_redis, "k").token


# ── Offer expiry sweep ────────────────────────────────────────────────


def _lock_redis(acquired: bool = True) -> AsyncMock:
    mock_redis = AsyncMock()
    mock_redis.set = AsyncMock(return_value=acquired)
    mock_redis.eval = AsyncMock(return_value=1)
    return mock_redis


@pytest.mark.asyncio
async def test_expiry_sweep_expires_only_stale_waiting_bookings(
    synchronizer, recorder, notifier, session_factory, make_booking, fixed_now
):
    stale = fixed_now - timedelta(minutes=15)
    fresh = fixed_now - timedelta(minutes=2)
    waiting = await make_booking(ride_status="pending_driver", updated_at=stale)
    offered = await make_booking(ride_status="offer_sent", updated_at=stale)
    recent = await make_booking(ride_status="pending_driver", updated_at=fresh)
    settled = await make_booking(ride_status="all_set", updated_at=stale)

    expired = await run_expiry_cycle(
        synchronizer,
        notifier,
        session_factory=session_factory,
        redis=_lock_redis(),
        now=fixed_now,
    )

    assert expired == 2
    async with session_factory() as session:
        repo = BookingRepository(session)
        statuses = {
            b.id: (await repo.get_by_id(b.id)).ride_status
            for b in (waiting, offered, recent, settled)
        }
    assert statuses == {
        waiting.id: "expired",
        offered.id: "expired",
        recent.id: "pending_driver",
        settled.id: "all_set",
    }

    (entry,) = await recorder.get_timeline(offered.id)
    assert entry.actor_role == "system"
    assert entry.metadata["previous_status"] == "offer_sent"
    notified = {call.args[1] for call in notifier.notify.await_args_list}
    assert notified == {waiting.id, offered.id}


@pytest.mark.asyncio
async def test_expiry_sweep_leaves_paid_bookings_alone(
    synchronizer, recorder, notifier, session_factory, make_booking, fixed_now
):
    stale = fixed_now - timedelta(minutes=15)
    paid = await make_booking(
        ride_status="offer_sent",
        payment_status="paid",
        paid_at=stale,
        payment_confirmation_status="all_set",
        updated_at=stale,
    )

    expired = await run_expiry_cycle(
        synchronizer,
        notifier,
        session_factory=session_factory,
        redis=_lock_redis(),
        now=fixed_now,
    )

    assert expired == 0
    async with session_factory() as session:
        stored = await BookingRepository(session).get_by_id(paid.id)
    assert stored.ride_status == "offer_sent"
    assert await recorder.get_timeline(paid.id) == []
    notifier.notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_offer_paid_through_webhook_is_not_expired(
    synchronizer, reconciler, webhook_secret, notifier, session_factory, make_booking
):
    booking = await make_booking()
    await synchronizer.send_offer(booking.id, "driver-7", price_minor=4500)
    body = json.dumps(
        {
            "id": "evt_sweep",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_sweep",
                    "amount_total": 4500,
                    "currency": "usd",
                    "payment_intent": "pi_sweep",
                    "metadata": {"booking_code": booking.booking_code},
                }
            },
        }
    ).encode()
    await reconciler.handle(body, sign_payload(body, webhook_secret))
    notifier.notify.reset_mock()

    expired = await run_expiry_cycle(
        synchronizer,
        notifier,
        session_factory=session_factory,
        redis=_lock_redis(),
        now=datetime.now(timezone.utc) + timedelta(minutes=30),
    )

    assert expired == 0
    async with session_factory() as session:
        stored = await BookingRepository(session).get_by_id(booking.id)
    assert (stored.ride_status, stored.payment_status) == ("offer_sent", "paid")
    assert stored.payment_confirmation_status == "all_set"
    notifier.notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_expiry_write_rechecks_payment(
    synchronizer, recorder, session_factory, make_booking, fixed_now
):
    stale = fixed_now - timedelta(minutes=15)
    booking = await make_booking(ride_status="offer_sent", updated_at=stale)
    # Payment lands after the sweep listed the booking but before it writes
    async with session_factory() as session, session.begin():
        await BookingRepository(session).update_fields(
            booking.id,
            {"payment_status": "paid", "paid_at": stale, "updated_at": stale},
        )

    snapshot = await synchronizer.expire_offer(booking.id, fixed_now - timedelta(minutes=10))

    assert snapshot is None
    async with session_factory() as session:
        stored = await BookingRepository(session).get_by_id(booking.id)
    assert stored.ride_status == "offer_sent"
    assert await recorder.get_timeline(booking.id) == []


@pytest.mark.asyncio
async def test_expiry_write_skips_booking_touched_since_cutoff(
    synchronizer, session_factory, make_booking, fixed_now
):
    booking = await make_booking(ride_status="offer_sent", updated_at=fixed_now)

    snapshot = await synchronizer.expire_offer(booking.id, fixed_now - timedelta(minutes=10))

    assert snapshot is None


@pytest.mark.asyncio
async def test_expiry_sweep_skips_when_lock_is_held(
    synchronizer, notifier, session_factory, make_booking, fixed_now
):
    booking = await make_booking(updated_at=fixed_now - timedelta(hours=1))
    redis = _lock_redis(acquired=False)

    expired = await run_expiry_cycle(
        synchronizer, notifier, session_factory=session_factory, redis=redis, now=fixed_now
    )

    assert expired == 0
    redis.eval.assert_not_called()
    async with session_factory() as session:
        stored = await BookingRepository(session).get_by_id(booking.id)
    assert stored.ride_status == "pending_driver"
    notifier.notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_expiry_sweep_releases_lock(synchronizer, notifier, session_factory, fixed_now):
    redis = _lock_redis()

    await run_expiry_cycle(
        synchronizer, notifier, session_factory=session_factory, redis=redis, now=fixed_now
    )

    redis.eval.assert_awaited_once()
