"""Extended routes: availability patterns, slots, offers and the review queue."""
from __future__ import annotations

from datetime import date

from flask import Blueprint, jsonify, request
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import joinedload

from . import booking_status as states
from .availability import (block_slot, create_pattern, delete_pattern,
                           list_open_slots, parse_time, regenerate_slots,
                           unblock_slot, update_pattern)
from .errors import BookingError, NotFoundError, ValidationError
from .extensions import db
from .models import AvailabilityPattern, Booking, Offer, Salon, naive_utc_now
from .offers import (OfferTerms, best_offer, count_usages, evaluate_offer_for,
                     price_breakdown)
from .routes import _database_error, _error_response, get_jwt_identity

bp_ext = Blueprint("api_ext", __name__)


def _parse_date(value: str | None, field: str) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format")


def _int_arg(name: str) -> int | None:
    value = request.args.get(name)
    if value in (None, ""):
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"{name} must be an integer")


def _pattern_changes(data: dict[str, object]) -> dict[str, object]:
    changes: dict[str, object] = {}
    for key in ("day_of_week", "slot_duration_minutes", "staff_id", "is_active"):
        if key in data:
            changes[key] = data[key]
    for key in ("start_time", "end_time"):
        if key in data:
            changes[key] = parse_time(data[key], key)
    return changes


# AVAILABILITY PATTERNS
@bp_ext.get("/salons/<int:salon_id>/availability-patterns")
def list_patterns(salon_id: int) -> tuple[dict[str, object], int]:
    """List a salon's recurring availability patterns.
    ---
    tags:
      - Availability
    parameters:
      - name: salon_id
        in: path
        type: integer
        required: true
    responses:
      200:
        description: Patterns for the salon
      404:
        description: Salon not found
    """
    try:
        if db.session.get(Salon, salon_id) is None:
            raise NotFoundError("Salon not found")
        patterns = (
            AvailabilityPattern.query.filter_by(salon_id=salon_id)
            .order_by(AvailabilityPattern.day_of_week, AvailabilityPattern.start_time)
            .all()
        )
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to list availability patterns", exc)

    return jsonify({"patterns": [pattern.to_dict() for pattern in patterns]}), 200


@bp_ext.post("/salons/<int:salon_id>/availability-patterns")
def add_pattern(salon_id: int) -> tuple[dict[str, object], int]:
    """Create a weekly pattern and generate its slots over the horizon.
    ---
    tags:
      - Availability
    parameters:
      - name: salon_id
        in: path
        type: integer
        required: true
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            day_of_week:
              type: integer
              description: 0=Sunday ... 6=Saturday
            start_time:
              type: string
              example: "09:00"
            end_time:
              type: string
              example: "17:00"
            slot_duration_minutes:
              type: integer
            staff_id:
              type: integer
    responses:
      201:
        description: Pattern created
      400:
        description: Invalid pattern
      404:
        description: Salon not found
    """
    data = request.get_json(silent=True) or {}
    try:
        required = ("day_of_week", "start_time", "end_time", "slot_duration_minutes")
        missing = [key for key in required if data.get(key) is None]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        pattern = create_pattern(
            salon_id,
            data["day_of_week"],
            parse_time(data["start_time"], "start_time"),
            parse_time(data["end_time"], "end_time"),
            data["slot_duration_minutes"],
            staff_id=data.get("staff_id"),
            is_active=bool(data.get("is_active", True)),
        )
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to create availability pattern", exc)

    return jsonify({"message": "Availability pattern created", "pattern": pattern.to_dict()}), 201


@bp_ext.put("/availability-patterns/<int:pattern_id>")
def edit_pattern(pattern_id: int) -> tuple[dict[str, object], int]:
    """Update a pattern and regenerate its open slots.
    ---
    tags:
      - Availability
    parameters:
      - name: pattern_id
        in: path
        type: integer
        required: true
    responses:
      200:
        description: Pattern updated
      400:
        description: Invalid pattern
      404:
        description: Pattern not found
    """
    data = request.get_json(silent=True) or {}
    try:
        pattern = update_pattern(pattern_id, **_pattern_changes(data))
    except BookingError as exc:
        db.session.rollback()
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to update availability pattern", exc)

    return jsonify({"message": "Availability pattern updated", "pattern": pattern.to_dict()}), 200


@bp_ext.delete("/availability-patterns/<int:pattern_id>")
def remove_pattern(pattern_id: int) -> tuple[dict[str, str], int]:
    """Delete a pattern and its open slots.
    ---
    tags:
      - Availability
    responses:
      200:
        description: Pattern deleted
      404:
        description: Pattern not found
    """
    try:
        delete_pattern(pattern_id)
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to delete availability pattern", exc)

    return jsonify({"message": "Availability pattern deleted"}), 200


@bp_ext.post("/availability-patterns/<int:pattern_id>/regenerate")
def regenerate_pattern_slots(pattern_id: int) -> tuple[dict[str, object], int]:
    """Regenerate a pattern's slots; safe to call repeatedly.
    ---
    tags:
      - Availability
    parameters:
      - name: body
        in: body
        schema:
          type: object
          properties:
            date_from:
              type: string
              format: date
            date_to:
              type: string
              format: date
    responses:
      200:
        description: Slots regenerated
      404:
        description: Pattern not found
    """
    data = request.get_json(silent=True) or {}
    try:
        pattern = db.session.get(AvailabilityPattern, pattern_id)
        if pattern is None:
            raise NotFoundError("Availability pattern not found")
        created = regenerate_slots(
            pattern,
            _parse_date(data.get("date_from"), "date_from"),
            _parse_date(data.get("date_to"), "date_to"),
        )
        db.session.commit()
    except BookingError as exc:
        db.session.rollback()
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to regenerate slots", exc)

    return jsonify({"pattern_id": pattern_id, "slots_created": len(created)}), 200


# SLOTS
@bp_ext.get("/salons/<int:salon_id>/slots")
def get_open_slots(salon_id: int) -> tuple[dict[str, object], int]:
    """Open slots for one salon-local date.
    ---
    tags:
      - Availability
    parameters:
      - name: date
        in: query
        type: string
        format: date
        required: true
      - name: staff_id
        in: query
        type: integer
    responses:
      200:
        description: Open slots
      400:
        description: Missing or invalid date
    """
    try:
        on_date = _parse_date(request.args.get("date"), "date")
        if on_date is None:
            raise ValidationError("date is required")
        slots = list_open_slots(salon_id, on_date, staff_id=_int_arg("staff_id"))
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to list slots", exc)

    return jsonify({"date": on_date.isoformat(), "slots": [slot.to_dict() for slot in slots]}), 200


@bp_ext.put("/slots/<int:slot_id>/block")
def hold_slot(slot_id: int) -> tuple[dict[str, object], int]:
    """Place a manual hold on a slot.
    ---
    tags:
      - Availability
    responses:
      200:
        description: Slot blocked
      404:
        description: Slot not found
      409:
        description: Slot already booked
    """
    try:
        slot = block_slot(slot_id)
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to block slot", exc)

    return jsonify({"slot": slot.to_dict()}), 200


@bp_ext.delete("/slots/<int:slot_id>/block")
def release_slot(slot_id: int) -> tuple[dict[str, object], int]:
    """Remove a manual hold.
    ---
    tags:
      - Availability
    responses:
      200:
        description: Slot unblocked
      404:
        description: Slot not found
    """
    try:
        slot = unblock_slot(slot_id)
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to unblock slot", exc)

    return jsonify({"slot": slot.to_dict()}), 200


# OFFERS
@bp_ext.post("/offers/<int:offer_id>/evaluate")
def evaluate_offer_route(offer_id: int) -> tuple[dict[str, object], int]:
    """Quote an offer against an amount for the calling customer.
    ---
    tags:
      - Offers
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            amount_cents:
              type: integer
            salon_id:
              type: integer
    responses:
      200:
        description: Eligibility, reason and price breakdown
      400:
        description: Invalid payload
    """
    data = request.get_json(silent=True) or {}
    amount = data.get("amount_cents")
    salon_id = data.get("salon_id")
    try:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise ValidationError("amount_cents must be a non-negative integer")
        if not isinstance(salon_id, int) or isinstance(salon_id, bool):
            raise ValidationError("salon_id is required")
        evaluation = evaluate_offer_for(offer_id, get_jwt_identity(), amount, salon_id)
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to evaluate offer", exc)

    return jsonify({**evaluation.to_dict(), "pricing": price_breakdown(amount, evaluation)}), 200


@bp_ext.get("/salons/<int:salon_id>/offers/best")
def get_best_offer(salon_id: int) -> tuple[dict[str, object], int]:
    """Best applicable offer for an amount at a salon.
    ---
    tags:
      - Offers
    parameters:
      - name: amount_cents
        in: query
        type: integer
        required: true
    responses:
      200:
        description: Best offer (or null) and price breakdown
    """
    try:
        amount = _int_arg("amount_cents")
        if amount is None or amount < 0:
            raise ValidationError("amount_cents must be a non-negative integer")
        now = naive_utc_now()
        offers = Offer.query.filter(
            or_(Offer.is_platform_wide.is_(True), Offer.salon_id == salon_id),
            Offer.is_active.is_(True),
            Offer.approval_status == "approved",
            Offer.valid_from <= now,
            Offer.valid_until >= now,
        ).all()
        user_id = get_jwt_identity()
        terms = [OfferTerms.from_offer(offer) for offer in offers]
        usage_counts = {item.offer_id: count_usages(user_id, item.offer_id) for item in terms}
        best = best_offer(terms, amount, salon_id, now, usage_counts)
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to find best offer", exc)

    if best is None:
        return jsonify({"offer": None, "pricing": price_breakdown(amount, None)}), 200
    chosen, evaluation = best
    offer = next(item for item in offers if item.offer_id == chosen.offer_id)
    return jsonify({"offer": offer.to_dict(), "pricing": price_breakdown(amount, evaluation)}), 200


# REVIEW QUEUE
@bp_ext.get("/salons/<int:salon_id>/bookings/pending-review")
def list_pending_review(salon_id: int) -> tuple[dict[str, object], int]:
    """Bookings awaiting an operator decision, with their audit trail.
    ---
    tags:
      - Bookings
    responses:
      200:
        description: Bookings in pending_review
    """
    try:
        bookings = (
            Booking.query.options(joinedload(Booking.audit_events))
            .filter(Booking.salon_id == salon_id, Booking.status == states.PENDING_REVIEW)
            .order_by(Booking.starts_at)
            .all()
        )
    except SQLAlchemyError as exc:
        return _database_error("Failed to list bookings under review", exc)

    return (
        jsonify(
            {
                "bookings": [
                    {
                        **booking.to_dict(),
                        "payment": booking.latest_payment.to_dict() if booking.latest_payment else None,
                        "audit_events": [event.to_dict() for event in booking.audit_events],
                    }
                    for booking in bookings
                ]
            }
        ),
        200,
    )
