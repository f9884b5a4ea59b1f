"""
SQLAlchemy ORM models.

Tables
------
* ``bookings``               -- mutable booking record (the projection)
* ``booking_status_history`` -- append-only status log (the audit source)
* ``webhook_events``         -- payment webhook idempotency ledger

Status columns are plain strings rather than database enums: an unknown
status code must still persist as ``ride_status``.  Money columns hold
integer minor units only.

Indexes
-------
* Unique on ``bookings.booking_code`` and ``webhook_events.provider_event_id``
  (the latter is the idempotency boundary for webhook delivery).
* B-Tree on ``ride_status``/``updated_at`` for the expiry sweep,
  ``payment_reference`` for backup payment events, and
  ``booking_status_history.booking_id`` for timeline reads.
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)

from .database import Base
from src.domain.enums import PaymentConfirmationStatus, PaymentStatus, StatusCode


def _new_id() -> str:
    return str(uuid.uuid4())


def new_booking_code() -> str:
    return f"BK-{uuid.uuid4().hex[:8].upper()}"


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=_new_id)
    booking_code = Column(String(20), unique=True, nullable=False, default=new_booking_code)
    passenger_id = Column(String(64), nullable=False)
    driver_id = Column(String(64), nullable=True)

    pickup_location = Column(String(255), nullable=True)
    dropoff_location = Column(String(255), nullable=True)
    pickup_time = Column(DateTime(timezone=True), nullable=True)

    ride_status = Column(String(40), nullable=False, default=StatusCode.PENDING_DRIVER.value)
    status_driver = Column(String(40), nullable=True)
    status_passenger = Column(String(40), nullable=True)
    payment_confirmation_status = Column(
        String(40),
        nullable=False,
        default=PaymentConfirmationStatus.WAITING_FOR_OFFER.value,
    )
    ride_stage = Column(String(40), nullable=True)

    # Money, integer minor units
    estimated_price_minor = Column(Integer, nullable=True)
    offer_price_minor = Column(Integer, nullable=True)
    paid_amount_minor = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=False, default="usd")

    payment_status = Column(String(20), nullable=False, default=PaymentStatus.UNPAID.value)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    payment_provider = Column(String(40), nullable=True)
    payment_reference = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_bookings_ride_status", "ride_status", "updated_at"),
        Index("idx_bookings_passenger", "passenger_id"),
        Index("idx_bookings_driver", "driver_id"),
        Index("idx_bookings_payment_reference", "payment_reference"),
    )


class BookingStatusHistoryModel(Base):
    __tablename__ = "booking_status_history"

    # Autoincrement id doubles as insertion order for timestamp ties
    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False)
    actor_role = Column(String(20), nullable=False)
    status_code = Column(String(40), nullable=False)
    label = Column(String(120), nullable=False)
    details = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_status_history_booking", "booking_id", "created_at"),
    )


class WebhookEventModel(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(40), nullable=False)
    provider_event_id = Column(String(255), unique=True, nullable=False)
    event_type = Column(String(120), nullable=False)
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, nullable=False, default=False)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_webhook_events_processed", "processed"),
    )
