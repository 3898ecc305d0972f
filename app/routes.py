"""HTTP routes for bookings and payment settlement."""
from __future__ import annotations

from flask import Blueprint, Flask, current_app, jsonify, request
from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .errors import BookingError, ForbiddenError, ValidationError
from .extensions import db
from .models import BookingAuditEvent, Payment, User
from .reconciliation import (BookingRequest, bulk_update_booking_status,
                             create_booking_with_payment, get_booking,
                             handle_payment_webhook, parse_datetime,
                             reschedule_booking, update_booking_status,
                             verify_settlement)

bp = Blueprint("api", __name__)


def register_routes(app: Flask) -> None:
    from .routes_extended import bp_ext

    app.register_blueprint(bp)
    app.register_blueprint(bp_ext)


def _error_response(exc: BookingError) -> tuple[dict[str, object], int]:
    return jsonify(exc.to_dict()), exc.status_code


def _database_error(message: str, exc: SQLAlchemyError) -> tuple[dict[str, str], int]:
    db.session.rollback()
    current_app.logger.exception(message, exc_info=exc)
    return jsonify({"error": "database_error"}), 500


def get_jwt_identity() -> int | None:
    """Extract and validate user_id from the Authorization header token.

    Returns the user_id if the token is valid, None if missing or invalid.
    """
    auth_header = request.headers.get("Authorization", "")

    if not auth_header.startswith("Bearer "):
        return None

    token = auth_header[7:]

    try:
        serializer = URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="auth-token")
        payload = serializer.loads(token, max_age=86400)  # 24-hour expiration
    except BadSignature:
        return None
    if not isinstance(payload, dict):
        return None
    return payload.get("user_id")


HTTP_ACTORS = ("staff", "customer", "operator")


def resolve_actor(requested: str | None) -> str:
    """Operators must be authenticated admins."""
    actor = requested or "staff"
    if actor not in HTTP_ACTORS:
        raise ValidationError(f"actor must be one of: {', '.join(HTTP_ACTORS)}")
    if actor != "operator":
        return actor
    user_id = get_jwt_identity()
    user = db.session.get(User, user_id) if user_id is not None else None
    if user is None or user.role != "admin":
        raise ForbiddenError("Only an authenticated admin can act as operator")
    return actor


@bp.get("/health")
def health_check() -> tuple[dict[str, str], int]:
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is healthy and running.
    """
    return jsonify({"status": "ok"}), 200


@bp.get("/db-health")
def database_health() -> tuple[dict[str, str], int]:
    """Check connectivity to the configured database.
    ---
    tags:
      - Health
    responses:
      200:
        description: Database connection is ok.
      500:
        description: Database connection failed.
    """
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"database": "unavailable"}), 500

    return jsonify({"database": "ok"}), 200


@bp.post("/bookings")
def create_booking() -> tuple[dict[str, object], int]:
    """Create a pending booking and, for pay_now, open a provider order.
    ---
    tags:
      - Bookings
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            salon_id:
              type: integer
            service_ids:
              type: array
              items:
                type: integer
            staff_id:
              type: integer
            starts_at:
              type: string
              format: date-time
            offer_id:
              type: integer
            payment_method:
              type: string
              enum: [pay_now, pay_at_salon]
            guest_session_id:
              type: string
            customer:
              type: object
            notes:
              type: string
          required:
            - salon_id
            - service_ids
            - starts_at
    responses:
      201:
        description: Booking created; order details returned for pay_now
      400:
        description: Invalid payload or offer not applicable
      404:
        description: Salon, service or customer not found
      409:
        description: Scheduling conflict
      502:
        description: Payment provider unavailable
    """
    payload = request.get_json(silent=True) or {}
    try:
        booking_request = BookingRequest.from_payload(payload, client_id=get_jwt_identity())
        creation = create_booking_with_payment(booking_request)
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to create booking", exc)

    return jsonify({"message": "Booking created successfully", **creation.to_dict()}), 201


@bp.get("/bookings/<int:booking_id>")
def get_booking_details(booking_id: int) -> tuple[dict[str, object], int]:
    """Return a booking with its payments and audit trail.
    ---
    tags:
      - Bookings
    parameters:
      - in: path
        name: booking_id
        required: true
        type: integer
    responses:
      200:
        description: Booking details
      404:
        description: Booking not found
    """
    try:
        booking = get_booking(booking_id)
        payments = Payment.query.filter_by(booking_id=booking_id).order_by(Payment.payment_id).all()
        events = (
            BookingAuditEvent.query.filter_by(booking_id=booking_id)
            .order_by(BookingAuditEvent.event_id)
            .all()
        )
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to load booking", exc)

    return (
        jsonify(
            {
                "booking": booking.to_dict(),
                "payments": [payment.to_dict() for payment in payments],
                "audit_events": [event.to_dict() for event in events],
            }
        ),
        200,
    )


@bp.put("/bookings/<int:booking_id>/reschedule")
def reschedule(booking_id: int) -> tuple[dict[str, object], int]:
    """Move a pending or confirmed booking to a new start time.
    ---
    tags:
      - Bookings
    parameters:
      - in: path
        name: booking_id
        required: true
        type: integer
      - in: body
        name: body
        required: true
        schema:
          properties:
            starts_at:
              type: string
              format: date-time
            staff_id:
              type: integer
    responses:
      200:
        description: Booking rescheduled
      400:
        description: Invalid input
      404:
        description: Booking not found
      409:
        description: Time conflict or booking not reschedulable
    """
    data = request.get_json(silent=True) or {}
    try:
        if "starts_at" not in data:
            raise ValidationError("starts_at is required")
        new_start = parse_datetime(data["starts_at"], "starts_at")
        if "staff_id" in data:
            booking = reschedule_booking(booking_id, new_start, staff_id=data.get("staff_id"))
        else:
            booking = reschedule_booking(booking_id, new_start)
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to reschedule booking", exc)

    return jsonify({"message": "Booking rescheduled successfully", "booking": booking.to_dict()}), 200


@bp.put("/bookings/<int:booking_id>/status")
def update_status(booking_id: int) -> tuple[dict[str, object], int]:
    """Change a booking's status through the booking state machine.
    ---
    tags:
      - Bookings
    parameters:
      - in: path
        name: booking_id
        required: true
        type: integer
      - in: body
        name: body
        required: true
        schema:
          properties:
            status:
              type: string
              enum: [confirmed, completed, cancelled, failed]
            actor:
              type: string
              enum: [staff, operator]
            note:
              type: string
    responses:
      200:
        description: Booking status updated
      400:
        description: Invalid input
      404:
        description: Booking not found
      409:
        description: Illegal status transition
    """
    data = request.get_json(silent=True) or {}
    try:
        if not data.get("status"):
            raise ValidationError("status is required")
        actor = resolve_actor(data.get("actor"))
        booking = update_booking_status(booking_id, data["status"], actor=actor, note=data.get("note"))
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to update booking status", exc)

    return jsonify({"message": "Booking status updated", "booking": booking.to_dict()}), 200


@bp.put("/salons/<int:salon_id>/bookings/bulk-status")
def bulk_update_status(salon_id: int) -> tuple[dict[str, object], int]:
    """Apply one status to many bookings; each is validated and saved independently.
    ---
    tags:
      - Bookings
    parameters:
      - in: path
        name: salon_id
        required: true
        type: integer
      - in: body
        name: body
        required: true
        schema:
          properties:
            booking_ids:
              type: array
              items:
                type: integer
            status:
              type: string
    responses:
      200:
        description: Per-booking results
      400:
        description: Invalid input
    """
    data = request.get_json(silent=True) or {}
    booking_ids = data.get("booking_ids")
    try:
        if not isinstance(booking_ids, list) or not data.get("status"):
            raise ValidationError("booking_ids (list) and status are required")
        actor = resolve_actor(data.get("actor"))
        results = bulk_update_booking_status(salon_id, booking_ids, data["status"], actor=actor)
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to bulk update booking status", exc)

    updated = sum(1 for item in results if item["ok"])
    return jsonify({"updated": updated, "failed": len(results) - updated, "results": results}), 200


# --- Payment settlement (Stripe) ---


@bp.post("/payments/verify")
def verify_payment() -> tuple[dict[str, object], int]:
    """Settle a payment synchronously after checkout.
    ---
    tags:
      - Payments
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            order_id:
              type: string
            client_secret:
              type: string
              description: Client secret returned when the booking was created
          required:
            - order_id
            - client_secret
    responses:
      200:
        description: Settlement outcome (idempotent)
      400:
        description: Client secret does not match the provider order
      404:
        description: Payment record not found
      502:
        description: Payment provider unavailable
    """
    data = request.get_json(silent=True) or {}
    try:
        result = verify_settlement(data.get("order_id"), data.get("client_secret"))
    except BookingError as exc:
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to verify payment", exc)

    return jsonify(result.to_dict()), 200


@bp.post("/payments/webhook")
def payment_webhook():
    """Stripe webhook endpoint to receive asynchronous payment events.
    ---
    tags:
      - Payments
    parameters:
      - name: Stripe-Signature
        in: header
        required: true
        type: string
        description: Stripe signature for webhook verification
      - name: body
        in: body
        required: true
        description: Stripe webhook event payload
    responses:
      200:
        description: Webhook event received and processed
      400:
        description: Invalid payload or signature
      502:
        description: Webhook not configured or settlement should be retried
    """
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")

    try:
        result = handle_payment_webhook(payload, sig_header)
    except BookingError as exc:
        current_app.logger.warning("Webhook rejected: %s", exc.message)
        return _error_response(exc)
    except SQLAlchemyError as exc:
        return _database_error("Failed to process payment webhook", exc)

    # Acknowledge receipt so the provider stops retrying.
    body: dict[str, object] = {"received": True}
    if result is not None:
        body["status"] = result.outcome
        body["already_processed"] = result.already_processed
    return jsonify(body), 200
