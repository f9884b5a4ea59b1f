"""Domain enumerations and state-transition rules."""

import enum


class ActorRole(str, enum.Enum):
    DRIVER = "driver"
    PASSENGER = "passenger"
    SYSTEM = "system"


class StatusCode(str, enum.Enum):
    """Shared ride status codes accepted by the status synchronizer."""

    PENDING = "pending"
    PENDING_DRIVER = "pending_driver"
    OFFER_SENT = "offer_sent"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_DECLINED = "offer_declined"
    PAYMENT_CONFIRMED = "payment_confirmed"
    ALL_SET = "all_set"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class DriverStatus(str, enum.Enum):
    OFFER_SENT = "offer_sent"
    ALL_SET = "all_set"


class PassengerStatus(str, enum.Enum):
    PASSENGER_REQUESTED = "passenger_requested"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_DECLINED = "offer_declined"
    PAYMENT_CONFIRMED = "payment_confirmed"
    ALL_SET = "all_set"


class PaymentConfirmationStatus(str, enum.Enum):
    WAITING_FOR_OFFER = "waiting_for_offer"
    WAITING_FOR_PAYMENT = "waiting_for_payment"
    PASSENGER_PAID = "passenger_paid"
    ALL_SET = "all_set"


class PaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"


class RideStage(str, enum.Enum):
    HEADING_TO_PICKUP = "driver_heading_to_pickup"
    ARRIVED_AT_PICKUP = "driver_arrived_at_pickup"
    PASSENGER_ONBOARD = "passenger_onboard"
    IN_TRANSIT = "in_transit"
    ARRIVED_AT_DROPOFF = "arrived_at_dropoff"
    COMPLETED = "completed"


# Ride stage machine: maps current stage (None = not started) -> valid next stage
RIDE_STAGE_TRANSITIONS: dict[RideStage | None, set[RideStage]] = {
    None: {RideStage.HEADING_TO_PICKUP},
    RideStage.HEADING_TO_PICKUP: {RideStage.ARRIVED_AT_PICKUP},
    RideStage.ARRIVED_AT_PICKUP: {RideStage.PASSENGER_ONBOARD},
    RideStage.PASSENGER_ONBOARD: {RideStage.IN_TRANSIT},
    RideStage.IN_TRANSIT: {RideStage.ARRIVED_AT_DROPOFF},
    RideStage.ARRIVED_AT_DROPOFF: {RideStage.COMPLETED},
    RideStage.COMPLETED: set(),
}

# Bookings still waiting on a driver response; swept by the expiry worker
AWAITING_DRIVER_STATUSES = frozenset(
    {StatusCode.PENDING_DRIVER.value, StatusCode.OFFER_SENT.value}
)
