"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``Booking``: enforces the ride-stage chain
  (heading to pickup -> arrived -> onboard -> in transit -> dropoff ->
  completed), which only opens once payment is all-set.
- ``StatusHistoryEntry`` is immutable; the timeline projections below are
  pure functions over a list of entries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from .enums import (
    RIDE_STAGE_TRANSITIONS,
    PaymentConfirmationStatus,
    PaymentStatus,
    RideStage,
    StatusCode,
)


class InvalidStateTransition(Exception):
    """Raised when a booking change violates the ride-stage state machine."""


class BookingNotFound(Exception):
    """Raised when a booking id or code does not resolve to a stored booking."""

    def __init__(self, reference: str):
        super().__init__(f"Booking not found: {reference}")
        self.reference = reference


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Booking:
    id: Optional[str] = None
    booking_code: str = ""
    passenger_id: str = ""
    driver_id: Optional[str] = None
    ride_status: str = StatusCode.PENDING_DRIVER.value
    status_driver: Optional[str] = None
    status_passenger: Optional[str] = None
    payment_confirmation_status: str = PaymentConfirmationStatus.WAITING_FOR_OFFER.value
    ride_stage: Optional[str] = None
    payment_status: str = PaymentStatus.UNPAID.value
    paid_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID.value or self.paid_at is not None

    @property
    def is_all_set(self) -> bool:
        return self.payment_confirmation_status == PaymentConfirmationStatus.ALL_SET.value

    def advance_stage(self, new_stage: RideStage) -> None:
        """Move to *new_stage* if payment is all-set and the step is legal, else raise."""
        if not self.is_all_set:
            raise InvalidStateTransition(
                f"Ride stage cannot change before payment is all set "
                f"(payment_confirmation_status={self.payment_confirmation_status})"
            )
        current = RideStage(self.ride_stage) if self.ride_stage else None
        allowed = RIDE_STAGE_TRANSITIONS.get(current, set())
        if new_stage not in allowed:
            raise InvalidStateTransition(
                f"Cannot move ride stage from {self.ride_stage} to {new_stage.value}"
            )
        self.ride_stage = new_stage.value
        if new_stage is RideStage.COMPLETED:
            self.ride_status = StatusCode.COMPLETED.value


@dataclass(frozen=True)
class StatusHistoryEntry:
    """One append-only status event.  ``sequence`` is the store's insertion order."""

    sequence: int
    booking_id: str
    actor_role: str
    status_code: str
    label: str
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.sequence)


def ordered_timeline(entries: Iterable[StatusHistoryEntry]) -> list[StatusHistoryEntry]:
    """Oldest first; identical timestamps keep insertion order."""
    return sorted(entries, key=lambda e: e.sort_key)


def latest_per_actor(
    entries: Iterable[StatusHistoryEntry],
) -> dict[str, StatusHistoryEntry]:
    """Most recent entry for every actor role present in *entries*."""
    latest: dict[str, StatusHistoryEntry] = {}
    for entry in entries:
        current = latest.get(entry.actor_role)
        if current is None or entry.sort_key > current.sort_key:
            latest[entry.actor_role] = entry
    return latest
