"""Unit tests for the booking ride-stage state machine and timeline projections."""

from datetime import datetime, timedelta, timezone

import pytest

from src.domain.entities import (
    Booking,
    InvalidStateTransition,
    StatusHistoryEntry,
    latest_per_actor,
    ordered_timeline,
)
from src.domain.enums import RideStage

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _all_set(**kwargs) -> Booking:
    return Booking(payment_confirmation_status="all_set", **kwargs)


class TestRideStageMachine:
    def test_first_stage_is_heading_to_pickup(self):
        booking = _all_set()
        booking.advance_stage(RideStage.HEADING_TO_PICKUP)
        assert booking.ride_stage == "driver_heading_to_pickup"

    def test_full_progression(self):
        booking = _all_set()
        for stage in RideStage:
            booking.advance_stage(stage)
        assert booking.ride_stage == "completed"
        assert booking.ride_status == "completed"

    def test_rejected_before_all_set(self):
        booking = Booking(payment_confirmation_status="passenger_paid")
        with pytest.raises(InvalidStateTransition):
            booking.advance_stage(RideStage.HEADING_TO_PICKUP)
        assert booking.ride_stage is None

    def test_cannot_skip_stages(self):
        booking = _all_set(ride_stage="driver_heading_to_pickup")
        with pytest.raises(InvalidStateTransition):
            booking.advance_stage(RideStage.IN_TRANSIT)

    def test_cannot_go_backwards(self):
        booking = _all_set(ride_stage="in_transit")
        with pytest.raises(InvalidStateTransition):
            booking.advance_stage(RideStage.PASSENGER_ONBOARD)

    def test_completed_is_final(self):
        booking = _all_set(ride_stage="completed")
        with pytest.raises(InvalidStateTransition):
            booking.advance_stage(RideStage.COMPLETED)

    def test_is_paid(self):
        assert Booking(payment_status="paid").is_paid
        assert Booking(paid_at=T0).is_paid
        assert not Booking().is_paid


def _entry(seq, actor, code, at):
    return StatusHistoryEntry(
        sequence=seq,
        booking_id="b-1",
        actor_role=actor,
        status_code=code,
        label=code,
        created_at=at,
    )


class TestTimelineProjections:
    def test_ordered_oldest_first_with_sequence_tiebreak(self):
        entries = [
            _entry(3, "driver", "offer_sent", T0),
            _entry(1, "passenger", "pending", T0 - timedelta(minutes=1)),
            _entry(2, "system", "expired", T0),
        ]
        assert [e.sequence for e in ordered_timeline(entries)] == [1, 2, 3]

    def test_latest_per_actor(self):
        entries = [
            _entry(1, "passenger", "pending", T0),
            _entry(2, "driver", "offer_sent", T0 + timedelta(minutes=1)),
            _entry(3, "passenger", "offer_accepted", T0 + timedelta(minutes=2)),
        ]
        latest = latest_per_actor(entries)
        assert latest["passenger"].status_code == "offer_accepted"
        assert latest["driver"].status_code == "offer_sent"
        assert "system" not in latest

    def test_latest_per_actor_same_timestamp_prefers_later_insert(self):
        entries = [
            _entry(8, "passenger", "payment_confirmed", T0),
            _entry(7, "passenger", "offer_accepted", T0),
        ]
        assert latest_per_actor(entries)["passenger"].sequence == 8

    def test_empty(self):
        assert latest_per_actor([]) == {}
