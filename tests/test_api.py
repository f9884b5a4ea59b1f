"""
Integration tests for the REST API endpoints.

Uses an in-memory SQLite database and the in-process change feed.  The
lifespan (Redis wiring, expiry worker) does not run under ``ASGITransport``,
so the service dependencies are overridden with test instances.
"""

from __future__ import annotations

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.api.app import create_app
from src.api.dependencies import (
    get_db,
    get_recorder,
    get_reconciler,
    get_synchronizer,
)
from src.api.middleware import limiter
from src.services.payments import WebhookProcessingError, sign_payload


@pytest_asyncio.fixture
async def app(session_factory, synchronizer, recorder, reconciler):
    application = create_app()

    async def _override_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db] = _override_db
    application.dependency_overrides[get_synchronizer] = lambda: synchronizer
    application.dependency_overrides[get_recorder] = lambda: recorder
    application.dependency_overrides[get_reconciler] = lambda: reconciler
    limiter.reset()
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _create(client, **overrides) -> dict:
    body = {"passenger_id": "passenger-1", "pickup_location": "Terminal 1"}
    body.update(overrides)
    resp = await client.post("/api/v1/bookings", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _checkout_body(event_id: str, booking_code: str) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_api_1",
                    "amount_total": 2750,
                    "currency": "usd",
                    "payment_intent": "pi_api_1",
                    "metadata": {"booking_code": booking_code},
                }
            },
        }
    ).encode()


# ── Bookings ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_booking(client):
    data = await _create(client, estimated_price="32.50")

    assert data["booking_code"].startswith("BK-")
    assert data["ride_status"] == "pending_driver"
    assert data["status_passenger"] == "passenger_requested"
    assert data["payment_confirmation_status"] == "waiting_for_offer"
    assert data["payment_status"] == "unpaid"
    assert data["estimated_price_minor"] == 3250
    assert Decimal(str(data["estimated_price"])) == Decimal("32.50")


@pytest.mark.asyncio
async def test_create_booking_minor_units_win(client):
    data = await _create(client, estimated_price_minor=2500, estimated_price="30.00")
    assert data["estimated_price_minor"] == 2500


@pytest.mark.asyncio
async def test_create_booking_validates_input(client):
    resp = await client.post("/api/v1/bookings", json={"passenger_id": ""})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_create_booking_records_request_in_timeline(client):
    booking = await _create(client)

    resp = await client.get(f"/api/v1/bookings/{booking['id']}/timeline")

    assert resp.status_code == 200
    (entry,) = resp.json()
    assert entry["actor_role"] == "passenger"
    assert entry["status_code"] == "pending"
    assert entry["label"] == "Ride Requested"
    assert entry["metadata"]["booking_code"] == booking["booking_code"]


@pytest.mark.asyncio
async def test_get_booking_by_id_and_code(client):
    booking = await _create(client)

    by_id = await client.get(f"/api/v1/bookings/{booking['id']}")
    by_code = await client.get(f"/api/v1/bookings/by-code/{booking['booking_code']}")

    assert by_id.status_code == 200
    assert by_code.json()["id"] == booking["id"]


@pytest.mark.asyncio
async def test_get_missing_booking(client):
    assert (await client.get("/api/v1/bookings/nope")).status_code == 404
    assert (await client.get("/api/v1/bookings/by-code/BK-NOPE")).status_code == 404
    assert (await client.get("/api/v1/bookings/nope/timeline")).status_code == 404
    assert (await client.get("/api/v1/bookings/nope/events")).status_code == 404


# ── Status & stage ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_update_status(client):
    booking = await _create(client)

    resp = await client.patch(
        f"/api/v1/bookings/{booking['id']}/status",
        json={"status": "offer_sent", "actor_role": "driver"},
    )

    assert resp.status_code == 200
    data = resp.json()
    assert data["ride_status"] == "offer_sent"
    assert data["status_driver"] == "offer_sent"


@pytest.mark.asyncio
async def test_update_status_missing_booking(client):
    resp = await client.patch(
        "/api/v1/bookings/nope/status",
        json={"status": "offer_sent", "actor_role": "driver"},
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_update_status_rejects_unknown_actor(client):
    booking = await _create(client)
    resp = await client.patch(
        f"/api/v1/bookings/{booking['id']}/status",
        json={"status": "offer_sent", "actor_role": "dispatcher"},
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_send_offer(client):
    booking = await _create(client)

    resp = await client.post(
        f"/api/v1/bookings/{booking['id']}/offer",
        json={"driver_id": "driver-7", "offer_price": "45.00"},
    )

    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["driver_id"] == "driver-7"
    assert data["offer_price_minor"] == 4500
    assert Decimal(str(data["offer_price"])) == Decimal("45.00")
    assert (data["ride_status"], data["status_driver"]) == ("offer_sent", "offer_sent")


@pytest.mark.asyncio
async def test_send_offer_conflicts_with_assigned_driver(client):
    booking = await _create(client)
    url = f"/api/v1/bookings/{booking['id']}/offer"
    await client.post(url, json={"driver_id": "driver-7", "offer_price_minor": 4500})

    resp = await client.post(url, json={"driver_id": "driver-8", "offer_price_minor": 3000})

    assert resp.status_code == 409
    stored = (await client.get(f"/api/v1/bookings/{booking['id']}")).json()
    assert stored["driver_id"] == "driver-7"


@pytest.mark.asyncio
async def test_send_offer_validates_input(client):
    booking = await _create(client)
    url = f"/api/v1/bookings/{booking['id']}/offer"

    assert (await client.post(url, json={"driver_id": "driver-7"})).status_code == 422
    assert (
        await client.post(url, json={"driver_id": "driver-7", "offer_price_minor": -1})
    ).status_code == 422
    missing = await client.post(
        "/api/v1/bookings/nope/offer", json={"driver_id": "d", "offer_price_minor": 1}
    )
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_stage_before_payment_is_conflict(client):
    booking = await _create(client)

    resp = await client.patch(
        f"/api/v1/bookings/{booking['id']}/stage",
        json={"stage": "driver_heading_to_pickup"},
    )

    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_stage_after_all_set(client):
    booking = await _create(client)
    await client.patch(
        f"/api/v1/bookings/{booking['id']}/status",
        json={"status": "all_set", "actor_role": "system"},
    )

    resp = await client.patch(
        f"/api/v1/bookings/{booking['id']}/stage",
        json={"stage": "driver_heading_to_pickup", "actor_role": "driver"},
    )

    assert resp.status_code == 200
    assert resp.json()["ride_stage"] == "driver_heading_to_pickup"


@pytest.mark.asyncio
async def test_latest_status_and_summary(client):
    booking = await _create(client)
    await client.patch(
        f"/api/v1/bookings/{booking['id']}/status",
        json={"status": "offer_sent", "actor_role": "driver"},
    )
    await client.patch(
        f"/api/v1/bookings/{booking['id']}/status",
        json={"status": "offer_accepted", "actor_role": "passenger"},
    )

    latest = (await client.get(f"/api/v1/bookings/{booking['id']}/latest-status")).json()
    summary = (await client.get(f"/api/v1/bookings/{booking['id']}/status-summary")).json()

    assert latest["latest"]["driver"]["status_code"] == "offer_sent"
    assert latest["latest"]["passenger"]["status_code"] == "offer_accepted"
    assert summary["ride_status"] == "offer_accepted"
    assert summary["ride_status_label"] == "Offer Accepted"
    assert summary["payment_confirmation_status"] == "waiting_for_payment"
    assert set(summary["latest"]) == {"driver", "passenger"}


# ── Webhooks ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_webhook_applies_payment_once(client, webhook_secret):
    booking = await _create(client)
    body = _checkout_body("evt_api_1", booking["booking_code"])
    headers = {"Stripe-Signature": sign_payload(body, webhook_secret)}

    first = await client.post("/api/v1/webhooks/stripe", content=body, headers=headers)
    second = await client.post("/api/v1/webhooks/stripe", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json() == {"received": True, "duplicate": False, "outcome": "applied"}
    assert second.status_code == 200
    assert second.json()["duplicate"] is True

    stored = (await client.get(f"/api/v1/bookings/{booking['id']}")).json()
    assert stored["payment_status"] == "paid"
    assert stored["paid_amount_minor"] == 2750
    assert Decimal(str(stored["paid_amount"])) == Decimal("27.50")


@pytest.mark.asyncio
async def test_webhook_bad_signature(client):
    body = _checkout_body("evt_api_bad", "BK-X")
    resp = await client.post(
        "/api/v1/webhooks/stripe",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, "whsec_wrong")},
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_webhook_missing_signature(client):
    resp = await client.post("/api/v1/webhooks/stripe", content=b"{}")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_webhook_unknown_booking_is_acknowledged(client, webhook_secret):
    body = _checkout_body("evt_api_lost", "BK-LOST")
    resp = await client.post(
        "/api/v1/webhooks/stripe",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, webhook_secret)},
    )

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "booking_not_found"

    pending = await client.get("/api/v1/admin/webhook-events", params={"processed": "false"})
    assert [e["provider_event_id"] for e in pending.json()] == ["evt_api_lost"]
    assert pending.json()[0]["error"] == "booking_not_found"


@pytest.mark.asyncio
async def test_webhook_processing_error_is_500(app, client):
    failing = AsyncMock()
    failing.handle = AsyncMock(side_effect=WebhookProcessingError("boom"))
    app.dependency_overrides[get_reconciler] = lambda: failing

    resp = await client.post(
        "/api/v1/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"}
    )

    assert resp.status_code == 500


# ── Admin ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/api/v1/admin/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
