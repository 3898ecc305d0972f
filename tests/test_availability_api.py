"""Tests for the availability, slot, offer and review-queue endpoints."""
from __future__ import annotations

import json
from datetime import timedelta

from app.extensions import db
from app.models import OfferUsage, TimeSlot
from app.reconciliation import BookingRequest, create_booking_with_payment, handle_payment_webhook
from conftest import FUTURE_MONDAY, WEBHOOK_SIGNATURE


def test_create_and_list_patterns(app, client, factory) -> None:
    with app.app_context():
        salon_id = factory.salon().salon_id

    response = client.post(
        f"/salons/{salon_id}/availability-patterns",
        json={"day_of_week": 1, "start_time": "09:00", "end_time": "11:00", "slot_duration_minutes": 30},
    )
    listing = client.get(f"/salons/{salon_id}/availability-patterns")

    assert response.status_code == 201
    assert response.get_json()["pattern"]["start_time"] == "09:00"
    assert listing.status_code == 200
    assert len(listing.get_json()["patterns"]) == 1


def test_create_pattern_rejects_inverted_times(app, client, factory) -> None:
    with app.app_context():
        salon_id = factory.salon().salon_id

    response = client.post(
        f"/salons/{salon_id}/availability-patterns",
        json={"day_of_week": 1, "start_time": "11:00", "end_time": "09:00", "slot_duration_minutes": 30},
    )

    assert response.status_code == 400
    assert response.get_json()["error"] == "invalid_payload"


def test_create_pattern_missing_fields(app, client, factory) -> None:
    with app.app_context():
        salon_id = factory.salon().salon_id

    response = client.post(f"/salons/{salon_id}/availability-patterns", json={"day_of_week": 1})

    assert response.status_code == 400


def test_create_pattern_unknown_salon(client) -> None:
    response = client.post(
        "/salons/999/availability-patterns",
        json={"day_of_week": 1, "start_time": "09:00", "end_time": "11:00", "slot_duration_minutes": 30},
    )

    assert response.status_code == 404


def test_regenerate_and_list_open_slots(app, client, factory) -> None:
    with app.app_context():
        salon = factory.salon()
        pattern_id = factory.pattern(salon).pattern_id
        salon_id = salon.salon_id

    first = client.post(
        f"/availability-patterns/{pattern_id}/regenerate",
        json={"date_from": "2030-01-07", "date_to": "2030-01-07"},
    )
    second = client.post(
        f"/availability-patterns/{pattern_id}/regenerate",
        json={"date_from": "2030-01-07", "date_to": "2030-01-07"},
    )
    slots = client.get(f"/salons/{salon_id}/slots?date=2030-01-07")

    assert first.get_json()["slots_created"] == 4
    assert second.status_code == 200
    assert [slot["starts_at"][11:16] for slot in slots.get_json()["slots"]] == ["09:00", "09:30", "10:00", "10:30"]


def test_slots_require_date(app, client, factory) -> None:
    with app.app_context():
        salon_id = factory.salon().salon_id

    assert client.get(f"/salons/{salon_id}/slots").status_code == 400
    assert client.get(f"/salons/{salon_id}/slots?date=07/01/2030").status_code == 400


def test_block_and_unblock_slot(app, client, factory) -> None:
    with app.app_context():
        salon = factory.salon()
        slot = TimeSlot(salon_id=salon.salon_id, starts_at=FUTURE_MONDAY, ends_at=FUTURE_MONDAY + timedelta(minutes=30))
        db.session.add(slot)
        db.session.commit()
        slot_id = slot.slot_id

    blocked = client.put(f"/slots/{slot_id}/block")
    unblocked = client.delete(f"/slots/{slot_id}/block")

    assert blocked.get_json()["slot"]["is_blocked"] is True
    assert unblocked.get_json()["slot"]["is_blocked"] is False
    assert client.put("/slots/999/block").status_code == 404


def test_update_and_delete_pattern(app, client, factory) -> None:
    with app.app_context():
        pattern_id = factory.pattern(factory.salon()).pattern_id

    updated = client.put(f"/availability-patterns/{pattern_id}", json={"end_time": "12:00"})
    bad = client.put(f"/availability-patterns/{pattern_id}", json={"slot_duration_minutes": -5})
    deleted = client.delete(f"/availability-patterns/{pattern_id}")

    assert updated.status_code == 200
    assert updated.get_json()["pattern"]["end_time"] == "12:00"
    assert bad.status_code == 400
    assert deleted.status_code == 200
    assert client.delete(f"/availability-patterns/{pattern_id}").status_code == 404


def test_evaluate_offer_endpoint(app, client, factory) -> None:
    with app.app_context():
        salon = factory.salon()
        offer_id = factory.offer(salon, max_discount_cents=10000, minimum_purchase_cents=50000).offer_id
        salon_id = salon.salon_id

    capped = client.post(f"/offers/{offer_id}/evaluate", json={"amount_cents": 100000, "salon_id": salon_id})
    too_small = client.post(f"/offers/{offer_id}/evaluate", json={"amount_cents": 40000, "salon_id": salon_id})

    assert capped.status_code == 200
    assert capped.get_json()["discount_cents"] == 10000
    assert capped.get_json()["pricing"]["final_amount_cents"] == 90000
    assert too_small.get_json()["eligible"] is False
    assert too_small.get_json()["reason"] == "minimum_purchase"


def test_evaluate_offer_rejects_bad_amount(client) -> None:
    response = client.post("/offers/1/evaluate", json={"amount_cents": "lots", "salon_id": 1})

    assert response.status_code == 400


def test_best_offer_endpoint(app, client, factory) -> None:
    with app.app_context():
        salon = factory.salon()
        factory.offer(salon, discount_type="fixed", discount_value=2000)
        platform_id = factory.offer(None, discount_type="fixed", discount_value=3000).offer_id
        salon_id = salon.salon_id

    response = client.get(f"/salons/{salon_id}/offers/best?amount_cents=20000")

    assert response.status_code == 200
    data = response.get_json()
    assert data["offer"]["id"] == platform_id
    assert data["pricing"]["final_amount_cents"] == 17000


def test_pending_review_queue(app, client, factory, gateway) -> None:
    with app.app_context():
        salon = factory.salon()
        staff = factory.staff(salon)
        service = factory.service(salon, price_cents=50000)
        customer = factory.user()
        offer = factory.offer(salon, usage_limit_per_user=1, max_discount_cents=10000)
        base = dict(
            salon_id=salon.salon_id,
            service_ids=[service.service_id],
            staff_id=staff.staff_id,
            client_id=customer.user_id,
        )
        creation = create_booking_with_payment(BookingRequest(starts_at=FUTURE_MONDAY, offer_id=offer.offer_id, **base))
        earlier = create_booking_with_payment(
            BookingRequest(starts_at=FUTURE_MONDAY + timedelta(days=1), payment_method="pay_at_salon", **base)
        )
        db.session.add(
            OfferUsage(
                user_id=customer.user_id,
                offer_id=offer.offer_id,
                booking_id=earlier.booking.booking_id,
                discount_applied_cents=10000,
                usage_sequence=1,
            )
        )
        db.session.commit()
        payload = json.dumps(
            {
                "type": "payment_intent.succeeded",
                "data": {"object": {"id": creation.order.order_id, "amount": 40000, "currency": "usd"}},
            }
        ).encode()
        handle_payment_webhook(payload, WEBHOOK_SIGNATURE)
        salon_id = salon.salon_id
        booking_id = creation.booking.booking_id

    response = client.get(f"/salons/{salon_id}/bookings/pending-review")

    assert response.status_code == 200
    bookings = response.get_json()["bookings"]
    assert [item["id"] for item in bookings] == [booking_id]
    assert bookings[0]["payment"]["status"] == "completed"
    assert bookings[0]["audit_events"][0]["kind"] == "eligibility_violation"
