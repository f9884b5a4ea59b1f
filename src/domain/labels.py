"""Human-readable labels for status codes shown on dashboards and timelines."""

from __future__ import annotations

STATUS_LABELS: dict[str, str] = {
    "pending": "Ride Requested",
    "pending_driver": "Waiting for Driver",
    "driver_accepted": "Driver Accepted",
    "offer_sent": "Offer Sent",
    "offer_accepted": "Offer Accepted",
    "offer_declined": "Offer Declined",
    "payment_confirmed": "Payment Confirmed",
    "passenger_paid": "Payment Received",
    "payment_failed": "Payment Failed",
    "all_set": "All Set - Ready to Go",
    "driver_heading_to_pickup": "Driver En Route",
    "driver_arrived_at_pickup": "Driver Arrived",
    "passenger_onboard": "Ride Started",
    "in_transit": "In Transit",
    "arrived_at_dropoff": "Arrived at Destination",
    "completed": "Ride Completed",
    "cancelled": "Ride Cancelled",
    "expired": "Offer Expired",
}


def status_label(code: str) -> str:
    """Label for *code*; unknown codes are title-cased (``foo_bar`` -> ``Foo Bar``)."""
    code = getattr(code, "value", code)
    if code in STATUS_LABELS:
        return STATUS_LABELS[code]
    return " ".join(word.capitalize() for word in code.split("_"))
