"""Smoke tests for FastAPI app routes."""

import hashlib
import hmac
import json
import time
from datetime import date

import pytest
from fastapi.testclient import TestClient

from staybook.app import (
    app,
    get_booking_service,
    get_listing_service,
    get_payment_service,
    get_review_service,
)
from staybook.modules.payments import PaymentService, StripeGateway


@pytest.fixture
def app_client(bookings, payments, listings, reviews):
    """Test client wired to the per-test services; lifespan (scheduler, mail) not started."""
    app.dependency_overrides[get_booking_service] = lambda: bookings
    app.dependency_overrides[get_payment_service] = lambda: payments
    app.dependency_overrides[get_listing_service] = lambda: listings
    app.dependency_overrides[get_review_service] = lambda: reviews
    yield TestClient(app)
    app.dependency_overrides.clear()


def _as(user) -> dict:
    return {"X-User-Id": str(user.id), "X-User-Role": user.role}


def _create(client, user, listing, check_in="2024-06-01", check_out="2024-06-04", **guests):
    body = {"listingId": listing.id, "checkIn": check_in, "checkOut": check_out}
    if guests:
        body["guests"] = guests
    return client.post("/api/bookings", json=body, headers=_as(user))


def test_health(app_client):
    response = app_client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_requires_identity(app_client):
    response = app_client.get("/api/bookings")
    assert response.status_code == 401


def test_create_booking(app_client, guest, listing):
    response = _create(app_client, guest, listing, adults=2, children=1)

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "confirmed"
    assert data["paymentStatus"] == "pending"
    assert data["totalPrice"] == 410
    assert data["guests"] == {"adults": 2, "children": 1, "infants": 0}


def test_overlap_conflict(app_client, guest, other_guest, listing):
    _create(app_client, guest, listing)
    response = _create(app_client, other_guest, listing, check_in="2024-06-03", check_out="2024-06-06")

    assert response.status_code == 409
    assert response.json() == {
        "success": False,
        "reason": "overlapping_dates",
        "message": "Listing is not available for selected dates",
    }


def test_capacity_error(app_client, guest, listing):
    response = _create(app_client, guest, listing, adults=5)
    assert response.status_code == 400
    assert response.json()["reason"] == "capacity_exceeded"


def test_malformed_body(app_client, guest):
    response = app_client.post("/api/bookings", json={"checkIn": "2024-06-01"}, headers=_as(guest))
    assert response.status_code == 422


def test_list_and_get(app_client, guest, other_guest, host, listing):
    booking_id = _create(app_client, guest, listing).json()["data"]["id"]

    listed = app_client.get("/api/bookings", headers=_as(host)).json()
    assert listed["count"] == 1
    assert app_client.get(f"/api/bookings/{booking_id}", headers=_as(guest)).status_code == 200

    response = app_client.get(f"/api/bookings/{booking_id}", headers=_as(other_guest))
    assert response.status_code == 403
    assert response.json()["reason"] == "not_authorized"
    assert app_client.get("/api/bookings/999", headers=_as(guest)).status_code == 404


def test_update_and_cancel(app_client, guest, listing):
    booking_id = _create(app_client, guest, listing).json()["data"]["id"]

    response = app_client.put(
        f"/api/bookings/{booking_id}",
        json={"checkOut": "2024-06-03", "guests": {"adults": 2}},
        headers=_as(guest),
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["priceBreakdown"]["nights"] == 2
    assert data["guests"]["adults"] == 2

    response = app_client.request(
        "DELETE", f"/api/bookings/{booking_id}", json={"reason": "Change of plans"}, headers=_as(guest)
    )
    assert response.status_code == 200
    assert response.json()["data"]["cancellation"]["reason"] == "Change of plans"

    response = app_client.post(f"/api/bookings/{booking_id}/confirm", headers=_as(guest))
    assert response.status_code == 409
    assert response.json()["reason"] == "invalid_state"


def test_payment_flow(app_client, guest, host, listing, gateway):
    booking_id = _create(app_client, guest, listing).json()["data"]["id"]

    response = app_client.post("/api/payments/intent", json={"bookingId": booking_id}, headers=_as(guest))
    assert response.status_code == 200
    assert response.json()["clientSecret"] == "pi_1_secret"

    response = app_client.post(f"/api/payments/{booking_id}/sync", headers=_as(guest))
    assert response.status_code == 502
    assert response.json()["reason"] == "payment_gateway_error"

    gateway.succeed("pi_1")
    payload = json.dumps({
        "id": "evt_1",
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": "pi_1", "metadata": {"bookingId": str(booking_id)}}},
    })
    forged = app_client.post("/api/payments/webhook", content=payload, headers={"Stripe-Signature": "nope"})
    assert forged.status_code == 400

    response = app_client.post("/api/payments/webhook", content=payload, headers={"Stripe-Signature": "valid"})
    assert response.status_code == 200
    assert response.json() == {"received": True}

    response = app_client.post(f"/api/payments/{booking_id}/sync", headers=_as(guest))
    assert response.json()["data"]["paymentStatus"] == "paid"

    response = app_client.post(
        "/api/payments/refund", json={"bookingId": booking_id, "amount": 50}, headers=_as(host)
    )
    assert response.status_code == 200
    assert response.json()["data"]["amount"] == 50


def test_delete_listing(app_client, guest, host, listing):
    booking_id = _create(app_client, guest, listing).json()["data"]["id"]

    response = app_client.delete(f"/api/listings/{listing.id}", headers=_as(host))
    assert response.status_code == 200
    assert response.json()["cancelledBookings"] == [booking_id]

    booking = app_client.get(f"/api/bookings/{booking_id}", headers=_as(guest)).json()["data"]
    assert booking["status"] == "cancelled"


def test_review_lifecycle(app_client, guest, listing, clock):
    booking_id = _create(app_client, guest, listing).json()["data"]["id"]
    clock["today"] = date(2024, 6, 10)
    categories = {
        "cleanliness": 5, "accuracy": 5, "checkIn": 4,
        "communication": 5, "location": 4, "value": 4,
    }

    response = app_client.post(
        "/api/reviews",
        json={"bookingId": booking_id, "title": "Great", "comment": "Lovely loft", "categories": categories},
        headers=_as(guest),
    )
    assert response.status_code == 201
    review = response.json()["data"]
    assert review["rating"] == 4.5
    assert review["categories"]["check_in"] == 4

    response = app_client.put(
        f"/api/reviews/{review['id']}", json={"categories": {"checkIn": 5}}, headers=_as(guest)
    )
    assert response.json()["data"]["rating"] == 4.7

    response = app_client.delete(f"/api/reviews/{review['id']}", headers=_as(guest))
    assert response.status_code == 200


def test_review_score_out_of_range(app_client, guest, listing):
    categories = {
        "cleanliness": 6, "accuracy": 5, "checkIn": 4,
        "communication": 5, "location": 4, "value": 4,
    }
    response = app_client.post(
        "/api/reviews",
        json={"bookingId": 1, "title": "x", "comment": "y", "categories": categories},
        headers=_as(guest),
    )
    assert response.status_code == 422


def test_webhook_with_unexpected_shape_rejected(app_client, session_factory, pending_bookings, event_bus):
    secret = "whsec_staybook"
    app.dependency_overrides[get_payment_service] = lambda: PaymentService(
        gateway=StripeGateway(api_key="sk_test_staybook", webhook_secret=secret),
        session_factory=session_factory,
        bookings=pending_bookings,
        bus=event_bus,
    )
    payload = json.dumps({"id": "evt_1", "object": "event", "type": "payment_intent.succeeded"})
    timestamp = int(time.time())
    digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()

    response = app_client.post(
        "/api/payments/webhook", content=payload, headers={"Stripe-Signature": f"t={timestamp},v1={digest}"}
    )

    assert response.status_code == 400
    assert response.json() == {"received": False, "message": "Unexpected event shape"}
