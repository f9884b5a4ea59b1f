"""
Status Mapper
=============

Pure translation of ``(status, actor_role)`` into the booking fields a status
change writes.  No I/O.

Every result carries ``ride_status`` and ``updated_at``.  Codes outside
``StatusCode`` pass through as ``ride_status`` only, so an unknown status
never blocks persistence.  Payment fields are never produced here; only the
webhook reconciler writes them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from .enums import (
    ActorRole,
    DriverStatus,
    PassengerStatus,
    PaymentConfirmationStatus,
    StatusCode,
)

FieldRule = Callable[[ActorRole], dict[str, str]]


def _no_extra_fields(actor_role: ActorRole) -> dict[str, str]:
    return {}


def _pending(actor_role: ActorRole) -> dict[str, str]:
    if actor_role is ActorRole.PASSENGER:
        return {"status_passenger": PassengerStatus.PASSENGER_REQUESTED.value}
    return {}


def _offer_sent(actor_role: ActorRole) -> dict[str, str]:
    return {
        "status_driver": DriverStatus.OFFER_SENT.value,
        "ride_status": StatusCode.OFFER_SENT.value,
    }


def _offer_accepted(actor_role: ActorRole) -> dict[str, str]:
    return {
        "status_passenger": PassengerStatus.OFFER_ACCEPTED.value,
        "payment_confirmation_status": PaymentConfirmationStatus.WAITING_FOR_PAYMENT.value,
    }


def _offer_declined(actor_role: ActorRole) -> dict[str, str]:
    return {"status_passenger": PassengerStatus.OFFER_DECLINED.value}


def _payment_confirmed(actor_role: ActorRole) -> dict[str, str]:
    return {
        "status_passenger": PassengerStatus.PAYMENT_CONFIRMED.value,
        "payment_confirmation_status": PaymentConfirmationStatus.PASSENGER_PAID.value,
    }


def _all_set(actor_role: ActorRole) -> dict[str, str]:
    return {
        "status_passenger": PassengerStatus.ALL_SET.value,
        "status_driver": DriverStatus.ALL_SET.value,
        "payment_confirmation_status": PaymentConfirmationStatus.ALL_SET.value,
    }


FIELD_RULES: dict[StatusCode, FieldRule] = {
    StatusCode.PENDING: _pending,
    StatusCode.PENDING_DRIVER: _no_extra_fields,
    StatusCode.OFFER_SENT: _offer_sent,
    StatusCode.OFFER_ACCEPTED: _offer_accepted,
    StatusCode.OFFER_DECLINED: _offer_declined,
    StatusCode.PAYMENT_CONFIRMED: _payment_confirmed,
    StatusCode.ALL_SET: _all_set,
    StatusCode.COMPLETED: _no_extra_fields,
    StatusCode.CANCELLED: _no_extra_fields,
    StatusCode.EXPIRED: _no_extra_fields,
}

_unmapped = set(StatusCode) - set(FIELD_RULES)
if _unmapped:
    raise RuntimeError(f"Status codes without a field rule: {sorted(s.value for s in _unmapped)}")


def parse_status(status: Union[StatusCode, str]) -> Union[StatusCode, str]:
    """Return the ``StatusCode`` for *status*, or the raw string if unknown."""
    if isinstance(status, StatusCode):
        return status
    try:
        return StatusCode(status)
    except ValueError:
        return status


def map_status_to_fields(
    status: Union[StatusCode, str],
    actor_role: Union[ActorRole, str],
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """Field-level update for moving a booking to *status* on behalf of *actor_role*."""
    now = now or datetime.now(timezone.utc)
    code = parse_status(status)
    raw = code.value if isinstance(code, StatusCode) else code

    updates: dict[str, Any] = {"ride_status": raw, "updated_at": now}
    if isinstance(code, StatusCode):
        updates.update(FIELD_RULES[code](ActorRole(actor_role)))
    return updates
