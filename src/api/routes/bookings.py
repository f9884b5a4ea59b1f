"""
Booking endpoints
=================

POST  /api/v1/bookings                     -- passenger creates a ride request
GET   /api/v1/bookings/{id}                -- booking record
GET   /api/v1/bookings/by-code/{code}      -- booking record by booking code
PATCH /api/v1/bookings/{id}/status         -- driver / passenger status change
POST  /api/v1/bookings/{id}/offer          -- driver offers a price and takes the booking
PATCH /api/v1/bookings/{id}/stage          -- ride progress after payment
GET   /api/v1/bookings/{id}/timeline       -- full status history, oldest first
GET   /api/v1/bookings/{id}/latest-status  -- newest entry per actor
GET   /api/v1/bookings/{id}/status-summary -- current fields + latest per actor
GET   /api/v1/bookings/{id}/events         -- server-sent change events
"""

from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import (
    get_db,
    get_recorder,
    get_synchronizer,
)
from src.api.middleware import limiter
from src.api.schemas import (
    BookingCreateRequest,
    BookingResponse,
    HistoryEntryResponse,
    LatestStatusResponse,
    OfferRequest,
    StageUpdateRequest,
    StatusSummaryResponse,
    StatusUpdateRequest,
)
from src.config import settings
from src.domain.enums import ActorRole, PassengerStatus, StatusCode
from src.domain.labels import status_label
from src.domain.money import authoritative_minor
from src.infrastructure.change_feed import ChangeStream
from src.infrastructure.models import BookingModel
from src.infrastructure.repositories import BookingRepository
from src.services.history import StatusHistoryRecorder
from src.services.status_sync import StatusSynchronizer

router = APIRouter(prefix="/bookings", tags=["bookings"])


async def _require_booking(db: AsyncSession, booking_id: str) -> BookingModel:
    booking = await BookingRepository(db).get_by_id(booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


@router.post(
    "",
    status_code=201,
    response_model=BookingResponse,
    summary="Create a booking (passenger ride request)",
)
@limiter.limit(settings.rate_limit)
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    db: AsyncSession = Depends(get_db),
    recorder: StatusHistoryRecorder = Depends(get_recorder),
):
    currency = body.currency.lower()
    booking = await BookingRepository(db).create(
        passenger_id=body.passenger_id,
        pickup_location=body.pickup_location,
        dropoff_location=body.dropoff_location,
        pickup_time=body.pickup_time,
        estimated_price_minor=authoritative_minor(
            body.estimated_price_minor, body.estimated_price, currency
        ),
        currency=currency,
        ride_status=StatusCode.PENDING_DRIVER.value,
        status_passenger=PassengerStatus.PASSENGER_REQUESTED.value,
    )
    # History lives in its own transaction and references the booking row
    await db.commit()

    await recorder.record(
        booking.id,
        ActorRole.PASSENGER,
        StatusCode.PENDING,
        metadata={"booking_code": booking.booking_code},
    )
    return booking


@router.get(
    "/by-code/{booking_code}",
    response_model=BookingResponse,
    summary="Look up a booking by its booking code",
)
@limiter.limit(settings.rate_limit)
async def get_booking_by_code(
    request: Request,
    booking_code: str,
    db: AsyncSession = Depends(get_db),
):
    booking = await BookingRepository(db).get_by_code(booking_code)
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


@router.get(
    "/{booking_id}",
    response_model=BookingResponse,
    summary="Get a booking",
)
@limiter.limit(settings.rate_limit)
async def get_booking(
    request: Request,
    booking_id: str,
    db: AsyncSession = Depends(get_db),
):
    return await _require_booking(db, booking_id)


@router.patch(
    "/{booking_id}/status",
    response_model=BookingResponse,
    summary="Change a booking's status",
    description=(
        "Maps the status to the booking's ride / actor / payment-confirmation "
        "fields, writes them atomically and records the change in the "
        "booking's history.  Unknown status codes are stored as-is."
    ),
)
@limiter.limit(settings.rate_limit)
async def update_status(
    request: Request,
    booking_id: str,
    body: StatusUpdateRequest,
    synchronizer: StatusSynchronizer = Depends(get_synchronizer),
):
    # BookingNotFound is mapped to 404 by the app-level handler
    return await synchronizer.update_status(
        booking_id, body.status, body.actor_role, body.metadata
    )


@router.post(
    "/{booking_id}/offer",
    response_model=BookingResponse,
    summary="Driver sends a price offer",
    description=(
        "Assigns the driver, stores the offered price and moves the booking "
        "to offer_sent in one write.  The price is taken in minor units or "
        "as a decimal in the booking's currency."
    ),
    responses={409: {"description": "Booking not open for this driver"}},
)
@limiter.limit(settings.rate_limit)
async def send_offer(
    request: Request,
    booking_id: str,
    body: OfferRequest,
    synchronizer: StatusSynchronizer = Depends(get_synchronizer),
):
    return await synchronizer.send_offer(
        booking_id,
        body.driver_id,
        price_minor=body.offer_price_minor,
        price=body.offer_price,
        metadata=body.metadata,
    )


@router.patch(
    "/{booking_id}/stage",
    response_model=BookingResponse,
    summary="Advance the ride stage",
    description="Allowed only once payment is all set, one step forward at a time.",
    responses={409: {"description": "Stage change not allowed"}},
)
@limiter.limit(settings.rate_limit)
async def advance_stage(
    request: Request,
    booking_id: str,
    body: StageUpdateRequest,
    synchronizer: StatusSynchronizer = Depends(get_synchronizer),
):
    return await synchronizer.advance_ride_stage(
        booking_id, body.stage, body.actor_role, body.metadata
    )


@router.get(
    "/{booking_id}/timeline",
    response_model=list[HistoryEntryResponse],
    summary="Status history, oldest first",
)
@limiter.limit(settings.rate_limit)
async def get_timeline(
    request: Request,
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    recorder: StatusHistoryRecorder = Depends(get_recorder),
):
    await _require_booking(db, booking_id)
    entries = await recorder.get_timeline(booking_id)
    return [HistoryEntryResponse.model_validate(entry) for entry in entries]


@router.get(
    "/{booking_id}/latest-status",
    response_model=LatestStatusResponse,
    summary="Most recent status entry per actor",
)
@limiter.limit(settings.rate_limit)
async def get_latest_status(
    request: Request,
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    recorder: StatusHistoryRecorder = Depends(get_recorder),
):
    await _require_booking(db, booking_id)
    latest = await recorder.get_latest_per_actor(booking_id)
    return LatestStatusResponse(
        booking_id=booking_id,
        latest={
            role: HistoryEntryResponse.model_validate(entry)
            for role, entry in latest.items()
        },
    )


@router.get(
    "/{booking_id}/status-summary",
    response_model=StatusSummaryResponse,
    summary="Current status fields with the latest entry per actor",
)
@limiter.limit(settings.rate_limit)
async def get_status_summary(
    request: Request,
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    recorder: StatusHistoryRecorder = Depends(get_recorder),
):
    booking = await _require_booking(db, booking_id)
    latest = await recorder.get_latest_per_actor(booking_id)
    return StatusSummaryResponse(
        booking_id=booking.id,
        booking_code=booking.booking_code,
        ride_status=booking.ride_status,
        ride_status_label=status_label(booking.ride_status),
        status_driver=booking.status_driver,
        status_passenger=booking.status_passenger,
        payment_confirmation_status=booking.payment_confirmation_status,
        payment_status=booking.payment_status,
        ride_stage=booking.ride_stage,
        latest={
            role: HistoryEntryResponse.model_validate(entry)
            for role, entry in latest.items()
        },
    )


async def _event_source(stream: ChangeStream) -> AsyncIterator[str]:
    try:
        async for change in stream:
            yield f"event: {change.table}\ndata: {change.model_dump_json()}\n\n"
    finally:
        await stream.close()


@router.get(
    "/{booking_id}/events",
    summary="Server-sent stream of booking and history changes",
    response_class=StreamingResponse,
)
async def stream_events(
    request: Request,
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    synchronizer: StatusSynchronizer = Depends(get_synchronizer),
):
    await _require_booking(db, booking_id)
    # Subscribed before the response starts, so no change after this point is missed
    stream = await synchronizer.stream(booking_id)
    return StreamingResponse(
        _event_source(stream),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
