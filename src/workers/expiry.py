"""
Background Offer-Expiry Worker
==============================

Runs every ``EXPIRY_INTERVAL_SECONDS`` (default 60 s).

A booking still waiting on a driver (``pending_driver`` / ``offer_sent``, not
paid, payment not all set) whose last update is older than
``OFFER_TIMEOUT_MINUTES`` is moved to ``expired`` through the Status
Synchronizer, so the change is published and recorded in history like any
other transition.  The passenger is then notified.

Concurrency safety
------------------
* **Redis distributed lock** ensures only one API process runs a sweep at a
  time, so a passenger is notified once per expiry.
* Each expiry is a conditional write that re-checks the same criteria, so a
  payment or driver update landing mid-sweep is never overwritten.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.domain.enums import AWAITING_DRIVER_STATUSES, ActorRole
from src.infrastructure.database import async_session_factory
from src.infrastructure.locks import DistributedLock
from src.infrastructure.redis_client import get_redis
from src.infrastructure.repositories import BookingRepository
from src.services.notifications import NotificationSink
from src.services.status_sync import StatusSynchronizer

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_expiry_loop(
    synchronizer: StatusSynchronizer, notifier: NotificationSink
) -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop(synchronizer, notifier))
    logger.info(
        "Expiry worker started (interval=%ds, timeout=%dm)",
        settings.expiry_interval_seconds,
        settings.offer_timeout_minutes,
    )


async def stop_expiry_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Expiry worker stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop(synchronizer: StatusSynchronizer, notifier: NotificationSink) -> None:
    """Periodic loop: run an expiry sweep then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_expiry_cycle(synchronizer, notifier)
        except Exception:
            logger.exception("Unhandled error in expiry cycle")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.expiry_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle


async def run_expiry_cycle(
    synchronizer: StatusSynchronizer,
    notifier: NotificationSink,
    *,
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    redis: Optional[aioredis.Redis] = None,
    now: Optional[datetime] = None,
) -> int:
    """Execute one sweep.  Returns the number of bookings expired."""
    redis = redis or await get_redis()
    lock = DistributedLock(redis, "offer_expiry", ttl_seconds=60)

    if not await lock.acquire():
        logger.debug("Lock held by another worker – skipping sweep")
        return 0

    expired = 0
    try:
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=settings.offer_timeout_minutes)
        async with session_factory() as session:
            stale = await BookingRepository(session).list_awaiting_driver(
                AWAITING_DRIVER_STATUSES, cutoff
            )
            candidates = [(b.id, b.ride_status) for b in stale]

        for booking_id, previous in candidates:
            try:
                snapshot = await synchronizer.expire_offer(
                    booking_id,
                    cutoff,
                    metadata={"previous_status": previous, "reason": "driver_timeout"},
                )
            except Exception:
                logger.exception("Could not expire booking %s", booking_id)
                continue
            if snapshot is None:
                continue
            expired += 1
            await notifier.notify(
                "offer_expired",
                booking_id,
                ActorRole.PASSENGER.value,
                {"previous_status": previous},
            )

        if expired:
            logger.info("Expiry sweep: %d bookings expired", expired)
    finally:
        await lock.release()

    return expired
