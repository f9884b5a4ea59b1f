"""
Seed script -- populates the database with sample bookings for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 6 sample bookings, one per stage of the booking lifecycle
    (waiting for a driver, offer sent, offer accepted, all set and in
    transit, completed, expired)
  - the status history each booking would have accumulated
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import text

from src.domain.enums import (
    ActorRole,
    DriverStatus,
    PassengerStatus,
    PaymentConfirmationStatus,
    PaymentStatus,
    RideStage,
    StatusCode,
)
from src.domain.labels import status_label
from src.infrastructure.database import async_session_factory, engine
from src.infrastructure.models import BookingModel, BookingStatusHistoryModel

NOW = datetime.now(timezone.utc)

P, D, S = ActorRole.PASSENGER, ActorRole.DRIVER, ActorRole.SYSTEM

# (booking fields, [(actor, status code, minutes before now)])
BOOKINGS = [
    (
        {
            "passenger_id": "passenger-001",
            "pickup_location": "Terminal 1, Arrivals",
            "dropoff_location": "Central Station",
            "ride_status": StatusCode.PENDING_DRIVER,
            "status_passenger": PassengerStatus.PASSENGER_REQUESTED,
            "estimated_price_minor": 3250,
        },
        [(P, StatusCode.PENDING, 4)],
    ),
    (
        {
            "passenger_id": "passenger-002",
            "driver_id": "driver-101",
            "pickup_location": "Harbour Hotel",
            "dropoff_location": "Terminal 2, Departures",
            "ride_status": StatusCode.OFFER_SENT,
            "status_driver": DriverStatus.OFFER_SENT,
            "status_passenger": PassengerStatus.PASSENGER_REQUESTED,
            "estimated_price_minor": 4100,
            "offer_price_minor": 4500,
        },
        [(P, StatusCode.PENDING, 20), (D, StatusCode.OFFER_SENT, 12)],
    ),
    (
        {
            "passenger_id": "passenger-003",
            "driver_id": "driver-102",
            "pickup_location": "Old Town Square",
            "dropoff_location": "Convention Centre",
            "ride_status": StatusCode.OFFER_ACCEPTED,
            "status_driver": DriverStatus.OFFER_SENT,
            "status_passenger": PassengerStatus.OFFER_ACCEPTED,
            "payment_confirmation_status": PaymentConfirmationStatus.WAITING_FOR_PAYMENT,
            "estimated_price_minor": 1800,
            "offer_price_minor": 1950,
        },
        [
            (P, StatusCode.PENDING, 30),
            (D, StatusCode.OFFER_SENT, 25),
            (P, StatusCode.OFFER_ACCEPTED, 22),
        ],
    ),
    (
        {
            "passenger_id": "passenger-004",
            "driver_id": "driver-103",
            "pickup_location": "University Campus",
            "dropoff_location": "Terminal 1, Departures",
            "ride_status": StatusCode.ALL_SET,
            "status_driver": DriverStatus.ALL_SET,
            "status_passenger": PassengerStatus.ALL_SET,
            "payment_confirmation_status": PaymentConfirmationStatus.ALL_SET,
            "ride_stage": RideStage.IN_TRANSIT,
            "estimated_price_minor": 5600,
            "offer_price_minor": 5600,
            "paid_amount_minor": 5600,
            "payment_status": PaymentStatus.PAID,
            "paid_at": NOW - timedelta(minutes=50),
            "payment_provider": "stripe",
            "payment_reference": "pi_seed_0004",
        },
        [
            (P, StatusCode.PENDING, 90),
            (D, StatusCode.OFFER_SENT, 80),
            (P, StatusCode.OFFER_ACCEPTED, 70),
            (S, StatusCode.ALL_SET, 50),
            (D, RideStage.HEADING_TO_PICKUP, 30),
            (D, RideStage.ARRIVED_AT_PICKUP, 15),
            (D, RideStage.PASSENGER_ONBOARD, 12),
            (D, RideStage.IN_TRANSIT, 11),
        ],
    ),
    (
        {
            "passenger_id": "passenger-005",
            "driver_id": "driver-101",
            "pickup_location": "Riverside Apartments",
            "dropoff_location": "City Hospital",
            "ride_status": StatusCode.COMPLETED,
            "status_driver": DriverStatus.ALL_SET,
            "status_passenger": PassengerStatus.ALL_SET,
            "payment_confirmation_status": PaymentConfirmationStatus.ALL_SET,
            "ride_stage": RideStage.COMPLETED,
            "estimated_price_minor": 2200,
            "offer_price_minor": 2400,
            "paid_amount_minor": 2400,
            "payment_status": PaymentStatus.PAID,
            "paid_at": NOW - timedelta(hours=3),
            "payment_provider": "stripe",
            "payment_reference": "pi_seed_0005",
        },
        [
            (P, StatusCode.PENDING, 240),
            (D, StatusCode.OFFER_SENT, 230),
            (P, StatusCode.OFFER_ACCEPTED, 200),
            (S, StatusCode.ALL_SET, 180),
            (D, RideStage.COMPLETED, 120),
        ],
    ),
    (
        {
            "passenger_id": "passenger-006",
            "pickup_location": "Terminal 2, Arrivals",
            "dropoff_location": "Lakeside Resort",
            "ride_status": StatusCode.EXPIRED,
            "status_passenger": PassengerStatus.PASSENGER_REQUESTED,
            "estimated_price_minor": 7300,
        },
        [(P, StatusCode.PENDING, 45), (S, StatusCode.EXPIRED, 30)],
    ),
]


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM bookings"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        entries = 0
        for fields, history in BOOKINGS:
            booking = BookingModel(
                **{k: getattr(v, "value", v) for k, v in fields.items()}
            )
            session.add(booking)
            await session.flush()

            for actor, code, minutes_ago in history:
                session.add(
                    BookingStatusHistoryModel(
                        booking_id=booking.id,
                        actor_role=actor.value,
                        status_code=code.value,
                        label=status_label(code),
                        details={},
                        created_at=NOW - timedelta(minutes=minutes_ago),
                    )
                )
                entries += 1
            print(f"  Created booking {booking.booking_code} ({booking.ride_status})")

        await session.commit()
        print(f"\nSeed complete! {len(BOOKINGS)} bookings, {entries} history entries")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
