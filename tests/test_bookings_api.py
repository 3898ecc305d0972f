"""Tests for the booking and payment endpoints."""
from __future__ import annotations

import json
from datetime import timedelta

from itsdangerous import URLSafeTimedSerializer

from app.extensions import db
from app.models import Booking, Payment
from conftest import FUTURE_MONDAY, WEBHOOK_SIGNATURE


def _token(user_id: int) -> str:
    serializer = URLSafeTimedSerializer("test-secret", salt="auth-token")
    return serializer.dumps({"user_id": user_id})


def _seed(factory) -> dict[str, int]:
    salon = factory.salon()
    staff = factory.staff(salon)
    service = factory.service(salon, price_cents=30000, duration_minutes=45)
    client = factory.user()
    admin = factory.user(role="admin")
    return {
        "salon_id": salon.salon_id,
        "staff_id": staff.staff_id,
        "service_id": service.service_id,
        "client_id": client.user_id,
        "admin_id": admin.user_id,
    }


def _create(client, ids, **overrides):
    payload = {
        "salon_id": ids["salon_id"],
        "service_ids": [ids["service_id"]],
        "staff_id": ids["staff_id"],
        "starts_at": FUTURE_MONDAY.isoformat() + "Z",
    }
    payload.update(overrides)
    return client.post(
        "/bookings",
        json=payload,
        headers={"Authorization": f"Bearer {_token(ids['client_id'])}"},
    )


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_db_health(client) -> None:
    response = client.get("/db-health")

    assert response.status_code == 200
    assert response.get_json() == {"database": "ok"}


def test_create_booking_returns_order(app, client, factory, gateway) -> None:
    """An authenticated pay-now booking is pending with an open order."""
    with app.app_context():
        ids = _seed(factory)

    response = _create(client, ids)

    assert response.status_code == 201
    data = response.get_json()
    assert data["booking"]["status"] == "pending"
    assert data["booking"]["customer"]["client_id"] == ids["client_id"]
    assert data["booking"]["final_amount_cents"] == 30000
    assert data["order"]["id"] == "pi_test_1"
    assert data["order"]["client_secret"] == "pi_test_1_secret"
    assert data["payment"]["status"] == "pending"


def test_create_booking_missing_fields(client, gateway) -> None:
    response = client.post("/bookings", json={"salon_id": 1})

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_payload"


def test_create_booking_bad_datetime(app, client, factory, gateway) -> None:
    with app.app_context():
        ids = _seed(factory)

    response = _create(client, ids, starts_at="next tuesday")

    assert response.status_code == 400


def test_create_booking_conflict(app, client, factory, gateway) -> None:
    with app.app_context():
        ids = _seed(factory)

    assert _create(client, ids).status_code == 201
    response = _create(client, ids, starts_at=(FUTURE_MONDAY + timedelta(minutes=15)).isoformat())

    assert response.status_code == 409
    assert response.get_json()["error"] == "conflict"


def test_create_booking_upstream_failure(app, client, factory, gateway) -> None:
    gateway.fail_create = True
    with app.app_context():
        ids = _seed(factory)

    response = _create(client, ids)

    assert response.status_code == 502
    assert response.get_json()["error"] == "upstream_unavailable"
    with app.app_context():
        assert Booking.query.count() == 0


def test_guest_booking_without_token(app, client, factory, gateway) -> None:
    with app.app_context():
        ids = _seed(factory)

    response = client.post(
        "/bookings",
        json={
            "salon_id": ids["salon_id"],
            "service_ids": [ids["service_id"]],
            "staff_id": ids["staff_id"],
            "starts_at": FUTURE_MONDAY.isoformat(),
            "guest_session_id": "sess-42",
            "customer": {"name": "Pat", "email": "pat@example.com"},
            "payment_method": "pay_at_salon",
        },
    )

    assert response.status_code == 201
    data = response.get_json()
    assert data["booking"]["customer"]["client_id"] is None
    assert data["booking"]["customer"]["guest_session_id"] == "sess-42"
    assert data["order"] is None


def test_get_booking_includes_payments_and_audit(app, client, factory, gateway) -> None:
    with app.app_context():
        ids = _seed(factory)
    booking_id = _create(client, ids).get_json()["booking"]["id"]

    client.post("/payments/verify", json={"order_id": "pi_test_1", "client_secret": "wrong"})
    response = client.get(f"/bookings/{booking_id}")

    assert response.status_code == 200
    data = response.get_json()
    assert data["payments"][0]["status"] == "pending"
    assert data["audit_events"][0]["kind"] == "verification_rejected"


def test_get_missing_booking(client) -> None:
    response = client.get("/bookings/424242")

    assert response.status_code == 404
    assert response.get_json()["error"] == "not_found"


def test_verify_payment_with_checkout_details(app, client, factory, gateway) -> None:
    with app.app_context():
        ids = _seed(factory)
    order = _create(client, ids).get_json()["order"]
    body = {"order_id": order["id"], "client_secret": order["client_secret"]}

    response = client.post("/payments/verify", json=body)
    repeat = client.post("/payments/verify", json=body)

    assert response.status_code == 200
    assert response.get_json()["status"] == "confirmed"
    assert response.get_json()["payment"]["status"] == "completed"
    assert repeat.status_code == 200
    assert repeat.get_json()["already_processed"] is True


def test_verify_payment_requires_fields(client, gateway) -> None:
    response = client.post("/payments/verify", json={"order_id": "pi_test_1"})

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_payload"


def test_verify_payment_wrong_client_secret(app, client, factory, gateway) -> None:
    with app.app_context():
        ids = _seed(factory)
    order = _create(client, ids).get_json()["order"]

    response = client.post("/payments/verify", json={"order_id": order["id"], "client_secret": "pi_test_1_secret_guess"})

    assert response.status_code == 400
    assert response.get_json()["error"] == "payment_verification_failed"
    with app.app_context():
        assert Payment.query.one().status == "pending"

    payload = json.dumps(
        {
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": order["id"], "amount": 30000, "currency": "usd", "latest_charge": "ch_1"}},
        }
    )
    webhook = client.post(
        "/payments/webhook",
        data=payload,
        headers={"Stripe-Signature": WEBHOOK_SIGNATURE, "Content-Type": "application/json"},
    )

    assert webhook.get_json()["status"] == "confirmed"
    with app.app_context():
        assert Payment.query.one().status == "completed"


def test_webhook_endpoint_settles_payment(app, client, factory, gateway) -> None:
    with app.app_context():
        ids = _seed(factory)
    _create(client, ids)
    payload = json.dumps(
        {
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_test_1", "amount": 30000, "currency": "usd", "latest_charge": "ch_1"}},
        }
    )

    response = client.post(
        "/payments/webhook",
        data=payload,
        headers={"Stripe-Signature": WEBHOOK_SIGNATURE, "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.get_json() == {"received": True, "status": "confirmed", "already_processed": False}
    with app.app_context():
        assert Payment.query.one().status == "completed"


def test_webhook_endpoint_rejects_bad_signature(app, client, gateway) -> None:
    response = client.post(
        "/payments/webhook",
        data=b"{}",
        headers={"Stripe-Signature": "t=1,v1=nope", "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "payment_verification_failed"


def test_status_endpoint_rejects_illegal_transition(app, client, factory, gateway) -> None:
    with app.app_context():
        ids = _seed(factory)
    booking_id = _create(client, ids).get_json()["booking"]["id"]

    response = client.put(f"/bookings/{booking_id}/status", json={"status": "completed"})

    assert response.status_code == 409
    data = response.get_json()
    assert data["error"] == "invalid_transition"
    assert data["details"] == {"from": "pending", "to": "completed"}


def test_operator_actor_requires_admin_token(app, client, factory, gateway) -> None:
    with app.app_context():
        ids = _seed(factory)
    booking_id = _create(client, ids).get_json()["booking"]["id"]

    anonymous = client.put(f"/bookings/{booking_id}/status", json={"status": "cancelled", "actor": "operator"})
    as_client = client.put(
        f"/bookings/{booking_id}/status",
        json={"status": "cancelled", "actor": "operator"},
        headers={"Authorization": f"Bearer {_token(ids['client_id'])}"},
    )
    as_admin = client.put(
        f"/bookings/{booking_id}/status",
        json={"status": "cancelled", "actor": "operator"},
        headers={"Authorization": f"Bearer {_token(ids['admin_id'])}"},
    )

    assert anonymous.status_code == 403
    assert as_client.status_code == 403
    assert as_admin.status_code == 200
    assert as_admin.get_json()["booking"]["status"] == "cancelled"


def test_reschedule_endpoint(app, client, factory, gateway) -> None:
    with app.app_context():
        ids = _seed(factory)
    booking_id = _create(client, ids).get_json()["booking"]["id"]
    new_start = FUTURE_MONDAY + timedelta(hours=3)

    response = client.put(f"/bookings/{booking_id}/reschedule", json={"starts_at": new_start.isoformat()})

    assert response.status_code == 200
    assert response.get_json()["booking"]["starts_at"] == new_start.isoformat()


def test_reschedule_endpoint_requires_start(client, gateway) -> None:
    response = client.put("/bookings/1/reschedule", json={})

    assert response.status_code == 400


def test_bulk_status_endpoint(app, client, factory, gateway) -> None:
    with app.app_context():
        ids = _seed(factory)
    first = _create(client, ids, payment_method="pay_at_salon").get_json()["booking"]["id"]
    second = _create(
        client, ids, payment_method="pay_at_salon", starts_at=(FUTURE_MONDAY + timedelta(hours=2)).isoformat()
    ).get_json()["booking"]["id"]
    client.put(f"/bookings/{second}/status", json={"status": "cancelled"})

    response = client.put(
        f"/salons/{ids['salon_id']}/bookings/bulk-status",
        json={"booking_ids": [first, second], "status": "confirmed"},
    )

    assert response.status_code == 200
    data = response.get_json()
    assert data["updated"] == 1
    assert data["failed"] == 1
    assert [item["ok"] for item in data["results"]] == [True, False]
    with app.app_context():
        assert db.session.get(Booking, first).status == "confirmed"
