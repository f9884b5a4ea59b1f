"""
Status Synchronizer
===================

The only code path that changes a booking's status, and the subscription
manager that keeps passenger and driver dashboards on the same view.

Write path (``update_status`` / ``advance_ride_stage``)
-------------------------------------------------------
1. Status Mapper computes the field delta (``send_offer`` adds the driver and
   the offered price; ``expire_offer`` only matches bookings still waiting).
2. One UPDATE, committed in its own transaction.  Failure propagates.
3. Change event published to the feed (best effort).
4. History entry appended (best effort: a missing entry is an audit gap,
   a missing booking update is not).

Concurrent writers are last-write-wins per field; the history log keeps
every event in store order.

Read path (``subscribe_to_booking`` / ``stream``)
-------------------------------------------------
Each synchronizer owns ``booking_id -> subscription``.  Subscribing again to
the same booking cancels the earlier subscription instead of stacking a
second callback.  All registry access happens on the event loop thread.
Both forms are listening by the time they return, so no change published
afterwards is missed.  ``aclose()`` waits for every stream to close.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.domain.entities import BookingNotFound, InvalidStateTransition
from src.domain.enums import (
    AWAITING_DRIVER_STATUSES,
    ActorRole,
    RideStage,
    StatusCode,
)
from src.domain.labels import status_label
from src.domain.money import authoritative_minor
from src.domain.status_mapper import map_status_to_fields
from src.infrastructure.change_feed import (
    BOOKINGS_TABLE,
    BookingChange,
    ChangeFeed,
    ChangeStream,
)
from src.infrastructure.repositories import (
    BookingRepository,
    booking_snapshot,
    open_for_driver,
    stale_awaiting_driver,
    to_entity,
)
from src.services.history import StatusHistoryRecorder

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[BookingChange], Union[None, Awaitable[None]]]

# Fields copied from the write into the history entry's metadata snapshot
_SNAPSHOT_FIELDS = (
    "ride_status",
    "status_driver",
    "status_passenger",
    "payment_confirmation_status",
    "ride_stage",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Subscription:
    stream: ChangeStream
    task: asyncio.Task


class StatusSynchronizer:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        recorder: StatusHistoryRecorder,
        feed: ChangeFeed,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._sessions = session_factory
        self._recorder = recorder
        self._feed = feed
        self._clock = clock
        self._subscriptions: dict[str, _Subscription] = {}
        self._closing: set[asyncio.Task] = set()

    # ── Writes ────────────────────────────────────────────────────────

    async def update_status(
        self,
        booking_id: str,
        new_status: Union[StatusCode, str],
        actor_role: Union[ActorRole, str],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, Any]:
        """Move *booking_id* to *new_status*.  Returns the stored booking snapshot."""
        role = ActorRole(actor_role)
        fields = map_status_to_fields(new_status, role, now=self._clock())
        logger.info(
            "Synchronizing status %s for booking %s (actor=%s)",
            fields["ride_status"],
            booking_id,
            role.value,
        )
        snapshot = await self._persist(booking_id, fields)
        await self._after_write(
            booking_id, fields["ride_status"], role, fields, metadata, snapshot
        )
        return snapshot

    async def send_offer(
        self,
        booking_id: str,
        driver_id: str,
        *,
        price_minor: Optional[int] = None,
        price: Any = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, Any]:
        """Driver offers a price: assigns the driver and moves to ``offer_sent`` in one write.

        The price is taken in minor units, or as a decimal in the booking's
        currency.  Raises ``InvalidStateTransition`` when the booking is no
        longer waiting on a driver or belongs to another driver.
        """
        fields = map_status_to_fields(
            StatusCode.OFFER_SENT, ActorRole.DRIVER, now=self._clock()
        )
        async with self._sessions() as session, session.begin():
            repo = BookingRepository(session)
            current = await repo.get_by_id(booking_id)
            if current is None:
                raise BookingNotFound(booking_id)
            offer_minor = authoritative_minor(price_minor, price, current.currency)
            if offer_minor is None or offer_minor < 0:
                raise ValueError("An offer needs a non-negative price")
            fields.update(driver_id=driver_id, offer_price_minor=offer_minor)

            updated = await repo.update_fields(
                booking_id, fields, only_if=open_for_driver(driver_id)
            )
            if updated is None:
                raise InvalidStateTransition(
                    f"Booking {booking_id} is not open for an offer from driver {driver_id}"
                )
            snapshot = booking_snapshot(updated)

        logger.info(
            "Driver %s offered %d %s on booking %s",
            driver_id,
            offer_minor,
            snapshot["currency"],
            booking_id,
        )
        details = {"driver_id": driver_id, "offer_price_minor": offer_minor}
        details.update(metadata or {})
        await self._after_write(
            booking_id, StatusCode.OFFER_SENT.value, ActorRole.DRIVER, fields, details, snapshot
        )
        return snapshot

    async def expire_offer(
        self,
        booking_id: str,
        updated_before: datetime,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        """Move a booking still waiting on a driver to ``expired``.

        The write only matches while the booking is unpaid, in an awaiting
        status and untouched since *updated_before*.  Returns None when it no
        longer matches.
        """
        fields = map_status_to_fields(
            StatusCode.EXPIRED, ActorRole.SYSTEM, now=self._clock()
        )
        async with self._sessions() as session, session.begin():
            updated = await BookingRepository(session).update_fields(
                booking_id,
                fields,
                only_if=stale_awaiting_driver(AWAITING_DRIVER_STATUSES, updated_before),
            )
            snapshot = booking_snapshot(updated) if updated is not None else None

        if snapshot is None:
            logger.info("Booking %s no longer awaiting a driver; not expired", booking_id)
            return None
        await self._after_write(
            booking_id, StatusCode.EXPIRED.value, ActorRole.SYSTEM, fields, metadata, snapshot
        )
        return snapshot

    async def advance_ride_stage(
        self,
        booking_id: str,
        stage: Union[RideStage, str],
        actor_role: Union[ActorRole, str],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> dict[str, Any]:
        """Move the post-payment ride stage forward one step."""
        role = ActorRole(actor_role)
        new_stage = RideStage(stage)

        async with self._sessions() as session, session.begin():
            repo = BookingRepository(session)
            current = await repo.get_by_id(booking_id)
            if current is None:
                raise BookingNotFound(booking_id)
            booking = to_entity(current)
            booking.advance_stage(new_stage)  # raises InvalidStateTransition

            fields: dict[str, Any] = {
                "ride_stage": booking.ride_stage,
                "ride_status": booking.ride_status,
                "updated_at": self._clock(),
            }
            updated = await repo.update_fields(booking_id, fields)
            if updated is None:
                raise BookingNotFound(booking_id)
            snapshot = booking_snapshot(updated)

        logger.info("Booking %s ride stage -> %s", booking_id, new_stage.value)
        await self._after_write(
            booking_id, new_stage.value, role, fields, metadata, snapshot
        )
        return snapshot

    async def _persist(self, booking_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        async with self._sessions() as session, session.begin():
            updated = await BookingRepository(session).update_fields(booking_id, fields)
            if updated is None:
                raise BookingNotFound(booking_id)
            return booking_snapshot(updated)

    async def _after_write(
        self,
        booking_id: str,
        status_code: str,
        role: ActorRole,
        fields: Mapping[str, Any],
        metadata: Optional[Mapping[str, Any]],
        snapshot: dict[str, Any],
    ) -> None:
        try:
            await self._feed.publish(
                BookingChange(booking_id=booking_id, table=BOOKINGS_TABLE, record=snapshot)
            )
        except Exception:
            logger.exception("Could not publish booking change for %s", booking_id)

        details = {key: fields[key] for key in _SNAPSHOT_FIELDS if key in fields}
        details.update(metadata or {})
        try:
            await self._recorder.record(
                booking_id, role, status_code, status_label(status_code), details
            )
        except Exception:
            logger.exception(
                "History append failed for booking %s (%s); booking update kept",
                booking_id,
                status_code,
            )

    # ── Subscriptions ─────────────────────────────────────────────────

    async def stream(self, booking_id: str) -> ChangeStream:
        """Raw change channel for *booking_id*; the caller owns ``close()``."""
        return await self._feed.listen(booking_id)

    async def subscribe_to_booking(
        self, booking_id: str, callback: ChangeCallback
    ) -> Callable[[], None]:
        """Deliver every change of *booking_id* to *callback*.  Returns an unsubscribe function."""
        self.unsubscribe_from_booking(booking_id)

        stream = await self._feed.listen(booking_id)
        task = asyncio.create_task(
            self._pump(booking_id, stream, callback),
            name=f"booking-sync-{booking_id}",
        )
        # Close the stream however the task ends, even if cancelled before its first step
        task.add_done_callback(lambda _task: self._close_later(stream))
        subscription = _Subscription(stream=stream, task=task)
        self._subscriptions[booking_id] = subscription
        logger.debug("Subscribed to booking %s", booking_id)

        def unsubscribe() -> None:
            # Only tear down if this subscription was not already replaced
            if self._subscriptions.get(booking_id) is subscription:
                self.unsubscribe_from_booking(booking_id)

        return unsubscribe

    def unsubscribe_from_booking(self, booking_id: str) -> None:
        subscription = self._subscriptions.pop(booking_id, None)
        if subscription is None:
            return
        subscription.task.cancel()
        logger.debug("Unsubscribed from booking %s", booking_id)

    def cleanup_all(self) -> None:
        for booking_id in list(self._subscriptions):
            self.unsubscribe_from_booking(booking_id)

    async def aclose(self) -> None:
        """Cancel every subscription and wait until all their streams are closed."""
        pumps = [subscription.task for subscription in self._subscriptions.values()]
        self.cleanup_all()
        if pumps:
            await asyncio.gather(*pumps, return_exceptions=True)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    def _close_later(self, stream: ChangeStream) -> None:
        closing = asyncio.get_running_loop().create_task(stream.close())
        self._closing.add(closing)
        closing.add_done_callback(self._stream_closed)

    def _stream_closed(self, closing: asyncio.Task) -> None:
        self._closing.discard(closing)
        if not closing.cancelled() and closing.exception() is not None:
            logger.warning("Closing a change stream failed: %r", closing.exception())

    def is_subscribed(self, booking_id: str) -> bool:
        return booking_id in self._subscriptions

    async def _pump(
        self, booking_id: str, stream: ChangeStream, callback: ChangeCallback
    ) -> None:
        async for change in stream:
            try:
                result = callback(change)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Subscriber callback failed for booking %s", booking_id)
