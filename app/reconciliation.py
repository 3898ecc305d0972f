"""Booking creation, payment settlement and booking status changes.

Two settlement entry points feed one core:

* ``verify_settlement`` - the synchronous call the client makes after checkout
* ``handle_payment_webhook`` - the provider's asynchronous callback

Both end in ``settle_payment``, which moves a Payment out of ``pending``
exactly once. The move is a conditional ``UPDATE ... WHERE status =
'pending'`` inside the same transaction as the booking transition, so when
the two callers race the first writer wins and the loser reports the
already-settled state without repeating any side effect.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from . import booking_status as states
from .conflicts import claim_interval, ensure_bookable, find_overlaps, release_claims
from .errors import (AuthenticityError, BookingError, ConflictError,
                     EligibilityViolation, IllegalTransitionError,
                     NotFoundError, OfferNotApplicableError, UpstreamError,
                     ValidationError)
from .extensions import db
from .gateway import FAILED, PENDING, SUCCEEDED, ProviderOrder, ProviderPayment, get_gateway, payment_from_intent
from .models import (Booking, BookingAuditEvent, BookingService, Offer,
                     Payment, Salon, Service, Staff, User, naive_utc_now,
                     to_naive_utc)
from .notifications import get_notifier, schedule_reminders_safely
from .offers import OfferTerms, count_usages, evaluate_offer, record_usage

PAYMENT_METHODS = ("pay_now", "pay_at_salon")
ACTORS = ("customer", "staff", "operator", "system")

_UNSET = object()


def parse_datetime(value: object, field_name: str) -> datetime:
    if isinstance(value, datetime):
        return to_naive_utc(value)
    try:
        return to_naive_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a valid ISO format datetime")


def _optional_int(value: object, field_name: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field_name} must be an integer")


@dataclass
class BookingRequest:
    salon_id: int
    service_ids: list[int]
    starts_at: datetime
    staff_id: int | None = None
    client_id: int | None = None
    guest_session_id: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    offer_id: int | None = None
    payment_method: str = "pay_now"
    notes: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, object], client_id: int | None = None) -> "BookingRequest":
        salon_id = _optional_int(payload.get("salon_id"), "salon_id")
        service_ids = payload.get("service_ids")
        if service_ids is None and payload.get("service_id") is not None:
            service_ids = [payload.get("service_id")]
        if salon_id is None or not service_ids or payload.get("starts_at") is None:
            raise ValidationError("salon_id, service_ids and starts_at are required")
        if not isinstance(service_ids, list):
            raise ValidationError("service_ids must be a list")

        customer = payload.get("customer") or {}
        if not isinstance(customer, dict):
            raise ValidationError("customer must be an object")

        return cls(
            salon_id=salon_id,
            service_ids=[_optional_int(item, "service_ids") for item in service_ids],
            starts_at=parse_datetime(payload.get("starts_at"), "starts_at"),
            staff_id=_optional_int(payload.get("staff_id"), "staff_id"),
            client_id=client_id,
            guest_session_id=(payload.get("guest_session_id") or None) if client_id is None else None,
            customer_name=(customer.get("name") or "").strip() or None,
            customer_email=(customer.get("email") or "").strip() or None,
            customer_phone=(customer.get("phone") or "").strip() or None,
            offer_id=_optional_int(payload.get("offer_id"), "offer_id"),
            payment_method=payload.get("payment_method") or "pay_now",
            notes=(payload.get("notes") or "").strip() or None,
        )


@dataclass
class BookingCreation:
    booking: Booking
    payment: Payment | None
    order: ProviderOrder | None

    def to_dict(self) -> dict[str, object]:
        return {
            "booking": self.booking.to_dict(),
            "payment": self.payment.to_dict() if self.payment else None,
            "order": {
                "id": self.order.order_id,
                "client_secret": self.order.client_secret,
                "amount_cents": self.payment.amount_cents,
                "currency": self.payment.currency,
            } if self.order and self.payment else None,
        }


@dataclass
class SettlementResult:
    payment: Payment
    booking: Booking
    outcome: str
    already_processed: bool = False
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.outcome,
            "already_processed": self.already_processed,
            "booking": self.booking.to_dict(),
            "payment": self.payment.to_dict(),
        }


# --- audit trail -----------------------------------------------------------


def record_audit(
    booking: Booking,
    kind: str,
    detail: dict[str, object] | None = None,
    payment: Payment | None = None,
    actor: str | None = None,
) -> BookingAuditEvent:
    event = BookingAuditEvent(
        booking_id=booking.booking_id,
        payment_id=payment.payment_id if payment else None,
        kind=kind,
        detail=detail or {},
        actor=actor,
    )
    db.session.add(event)
    return event


# --- booking creation ------------------------------------------------------


def _validate_request(request: BookingRequest) -> None:
    if request.payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}")
    if any(service_id is None for service_id in request.service_ids):
        raise ValidationError("service_ids must contain service identifiers")
    if len(set(request.service_ids)) != len(request.service_ids):
        raise ValidationError("service_ids must not contain duplicates")
    if request.client_id is None:
        if not request.guest_session_id:
            raise ValidationError("Guest bookings require a guest_session_id")
        if not request.customer_email and not request.customer_phone:
            raise ValidationError("Guest bookings require an email or phone number")


def _load_services(salon_id: int, service_ids: list[int]) -> list[Service]:
    services = Service.query.filter(Service.service_id.in_(service_ids)).all()
    by_id = {service.service_id: service for service in services}
    missing = [service_id for service_id in service_ids if service_id not in by_id]
    if missing:
        raise NotFoundError("Service not found", details={"service_ids": missing})
    ordered = [by_id[service_id] for service_id in service_ids]
    for service in ordered:
        if service.salon_id != salon_id:
            raise ValidationError("Service does not belong to the specified salon")
        if not service.is_active:
            raise ValidationError(f"Service '{service.name}' is not currently offered")
    if len({service.currency for service in ordered}) > 1:
        raise ValidationError("All services on a booking must share one currency")
    return ordered


def _check_staff(salon_id: int, staff_id: int | None) -> None:
    if staff_id is None:
        return
    staff = db.session.get(Staff, staff_id)
    if staff is None or staff.salon_id != salon_id:
        raise ValidationError("Staff member does not belong to the specified salon")
    if not staff.is_active:
        raise ValidationError("Staff member is not available for bookings")


def create_booking_with_payment(request: BookingRequest, now: datetime | None = None) -> BookingCreation:
    """Create a pending Booking and its pending Payment, and open a provider order.

    Booking, service lines, slot claims and Payment are committed together
    or not at all. A provider failure rolls everything back.
    """
    now = to_naive_utc(now) if now else naive_utc_now()
    _validate_request(request)

    salon = db.session.get(Salon, request.salon_id)
    if salon is None:
        raise NotFoundError("Salon not found")
    if request.client_id is not None and db.session.get(User, request.client_id) is None:
        raise NotFoundError("Customer not found")
    services = _load_services(salon.salon_id, request.service_ids)
    _check_staff(salon.salon_id, request.staff_id)

    duration = sum(service.duration_minutes for service in services)
    total = sum(service.price_cents for service in services)
    currency = services[0].currency
    starts_at = to_naive_utc(request.starts_at)
    ends_at = starts_at + timedelta(minutes=duration)

    ensure_bookable(salon.salon_id, request.staff_id, starts_at, ends_at, now)

    discount = 0
    snapshot = None
    if request.offer_id is not None:
        offer = db.session.get(Offer, request.offer_id)
        terms = OfferTerms.from_offer(offer) if offer else None
        usage_count = count_usages(request.client_id, request.offer_id) if terms else None
        evaluation = evaluate_offer(terms, total, salon.salon_id, now, usage_count)
        if not evaluation.eligible:
            raise OfferNotApplicableError(evaluation.reason, f"Offer no longer valid: {evaluation.message}")
        discount = evaluation.discount
        snapshot = terms.to_snapshot()

    final = total - discount
    if request.payment_method == "pay_now" and final <= 0:
        raise ValidationError("Nothing to charge online; choose pay_at_salon for this booking")

    try:
        booking = Booking(
            salon_id=salon.salon_id,
            staff_id=request.staff_id,
            client_id=request.client_id,
            guest_session_id=request.guest_session_id,
            customer_name=request.customer_name,
            customer_email=request.customer_email,
            customer_phone=request.customer_phone,
            starts_at=starts_at,
            ends_at=ends_at,
            duration_minutes=duration,
            status=states.PENDING,
            total_amount_cents=total,
            discount_amount_cents=discount,
            final_amount_cents=final,
            currency=currency,
            offer_id=request.offer_id,
            offer_snapshot=snapshot,
            quoted_at=now,
            payment_method=request.payment_method,
            notes=request.notes,
        )
        for service in services:
            booking.services.append(
                BookingService(
                    service_id=service.service_id,
                    price_cents=service.price_cents,
                    duration_minutes=service.duration_minutes,
                )
            )
        db.session.add(booking)
        db.session.flush()

        claim_interval(booking)

        payment = None
        order = None
        if request.payment_method == "pay_now":
            payment = Payment(
                booking_id=booking.booking_id,
                amount_cents=final,
                currency=currency,
                status="pending",
            )
            db.session.add(payment)
            db.session.flush()

            order = get_gateway().create_order(
                final,
                currency,
                metadata={
                    "booking_id": str(booking.booking_id),
                    "payment_id": str(payment.payment_id),
                    "salon_id": str(salon.salon_id),
                },
            )
            payment.provider_order_id = order.order_id

        db.session.commit()
    except BookingError:
        db.session.rollback()
        raise
    except IntegrityError as exc:
        db.session.rollback()
        current_app.logger.warning("Booking insert rejected by a uniqueness constraint", exc_info=exc)
        raise ConflictError("Scheduling conflict: the selected time is no longer available") from exc

    current_app.logger.info(
        "Created booking %s (%s, final %s %s)", booking.booking_id, booking.payment_method, final, currency
    )
    return BookingCreation(booking=booking, payment=payment, order=order)


# --- state transitions -----------------------------------------------------


def _move(booking: Booking, target: str) -> None:
    """Apply a validated status change and keep slot claims in step with it."""
    current = booking.status
    states.validate_transition(current, target)

    if states.enters_active_set(current, target):
        if find_overlaps(booking.salon_id, booking.staff_id, booking.starts_at, booking.ends_at, booking.booking_id):
            raise ConflictError("Scheduling conflict: the booking's time has since been taken")
        booking.status = target
        db.session.flush()
        claim_interval(booking)
        return

    booking.status = target
    if states.leaves_active_set(current, target):
        release_claims(booking)
    db.session.flush()


def _apply_offer_and_confirm(booking: Booking, payment: Payment | None, actor: str) -> str:
    """Re-validate the booking's offer against the usage ledger, then confirm or route to review.

    The evaluation runs on the frozen snapshot at the quote time, so only
    ledger changes since the quote can alter the answer.
    """
    if booking.offer_id is not None:
        terms = OfferTerms.from_snapshot(booking.offer_snapshot) if booking.offer_snapshot else None
        usage_count = count_usages(booking.client_id, booking.offer_id)
        evaluation = evaluate_offer(
            terms, booking.total_amount_cents, booking.salon_id, booking.quoted_at, usage_count
        )
        if not evaluation.eligible or evaluation.discount != booking.discount_amount_cents:
            violation = EligibilityViolation(evaluation.reason or "discount_mismatch")
            _move(booking, states.PENDING_REVIEW)
            record_audit(
                booking,
                "eligibility_violation",
                {
                    "reason": violation.reason,
                    "offer_id": booking.offer_id,
                    "usage_count": usage_count,
                    "usage_limit": terms.usage_limit_per_user if terms else None,
                    "discount_amount_cents": booking.discount_amount_cents,
                },
                payment=payment,
                actor=actor,
            )
            current_app.logger.warning(
                "Offer %s re-validation failed for booking %s (%s); routed to pending_review",
                booking.offer_id,
                booking.booking_id,
                violation.reason,
            )
            return states.PENDING_REVIEW

        if booking.client_id is not None:
            record_usage(booking.client_id, booking.offer_id, booking.booking_id, evaluation.discount)

    _move(booking, states.CONFIRMED)
    return states.CONFIRMED


def _with_ledger_retry(operation, description: str):
    """Run ``operation`` and retry once if the usage-ledger append lost a race."""
    last_exc = None
    for _ in range(2):
        try:
            return operation()
        except IntegrityError as exc:
            db.session.rollback()
            last_exc = exc
            current_app.logger.warning("Offer usage append collided while %s; retrying", description)
    raise UpstreamError("The booking could not be settled right now. Please retry.") from last_exc


def _after_commit(booking: Booking, outcome: str, reason: str | None = None) -> None:
    notifier = get_notifier()
    try:
        if outcome == states.CONFIRMED:
            notifier.send_booking_confirmation(booking)
        elif outcome == states.CANCELLED:
            notifier.send_cancellation(booking, reason)
        elif outcome == states.PENDING_REVIEW:
            notifier.send_review_notice(booking)
    except Exception as exc:  # notifications never undo a committed transition
        db.session.rollback()
        current_app.logger.exception("Failed to notify customer for booking %s", booking.booking_id, exc_info=exc)

    if outcome == states.CONFIRMED:
        schedule_reminders_safely(booking.booking_id)


# --- settlement ------------------------------------------------------------


def _mismatch(payment: Payment, report: ProviderPayment) -> str | None:
    if report.order_id != payment.provider_order_id:
        return "order_mismatch"
    if report.amount != payment.amount_cents:
        return "amount_mismatch"
    if (report.currency or "").lower() != payment.currency.lower():
        return "currency_mismatch"
    return None


def _claim_terminal_status(
    payment: Payment,
    status: str,
    source: str,
    provider_payment_id: str | None = None,
    signature: str | None = None,
    failure_reason: str | None = None,
) -> bool:
    """Move the payment out of ``pending``. Returns False if another writer got there first."""
    values: dict[str, object] = {
        "status": status,
        "settled_via": source,
        "settled_at": naive_utc_now(),
    }
    if provider_payment_id:
        values["provider_payment_id"] = provider_payment_id
    if signature:
        values["provider_signature"] = signature[:255]
    if failure_reason:
        values["failure_reason"] = failure_reason[:255]

    result = db.session.execute(
        update(Payment)
        .where(Payment.payment_id == payment.payment_id, Payment.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False
    db.session.refresh(payment)
    return True


def _already_processed(payment_id: int) -> SettlementResult:
    payment = db.session.get(Payment, payment_id, populate_existing=True)
    booking = db.session.get(Booking, payment.booking_id, populate_existing=True)
    return SettlementResult(payment=payment, booking=booking, outcome=booking.status, already_processed=True)


def _audited_for_charge(payment: Payment, kind: str, provider_payment_id: str | None) -> bool:
    events = BookingAuditEvent.query.filter_by(payment_id=payment.payment_id, kind=kind)
    return any(event.detail.get("provider_payment_id") == provider_payment_id for event in events)


def _reject_payment(
    payment: Payment, reason: str, source: str, detail: dict[str, object] | None = None
) -> SettlementResult:
    """Mark the payment failed, persist the audit event, and raise AuthenticityError.

    The booking is left as it is. If another writer settled the payment
    first, its result is returned instead.
    """
    booking = payment.booking
    if not _claim_terminal_status(payment, "failed", source, failure_reason=reason):
        db.session.rollback()
        return _already_processed(payment.payment_id)
    record_audit(booking, "authenticity_failure", {"reason": reason, "source": source, **(detail or {})}, payment=payment, actor="system")
    db.session.commit()
    current_app.logger.warning(
        "Payment %s for booking %s failed verification via %s: %s",
        payment.payment_id,
        booking.booking_id,
        source,
        reason,
    )
    raise AuthenticityError(details={"reason": reason})


def _flag_success_after_failure(payment: Payment, booking: Booking, report: ProviderPayment, source: str) -> None:
    """A charge succeeded on an order already marked failed; leave one audit event for an operator."""
    if not _audited_for_charge(payment, "settled_after_failure", report.payment_id):
        record_audit(
            booking,
            "settled_after_failure",
            {
                "source": source,
                "provider_payment_id": report.payment_id,
                "amount": report.amount,
                "currency": report.currency,
                "failure_reason": payment.failure_reason,
                "booking_status": booking.status,
            },
            payment=payment,
            actor="system",
        )
        current_app.logger.warning(
            "Charge %s succeeded on failed payment %s (booking %s is %s)",
            report.payment_id,
            payment.payment_id,
            booking.booking_id,
            booking.status,
        )
    db.session.commit()


def _record_failed_attempt(payment: Payment, booking: Booking, report: ProviderPayment, source: str) -> None:
    """The provider declined one attempt; the order stays open for a retry."""
    if not _audited_for_charge(payment, "payment_attempt_failed", report.payment_id):
        record_audit(
            booking,
            "payment_attempt_failed",
            {"source": source, "provider_payment_id": report.payment_id, "reason": report.failure_reason},
            payment=payment,
            actor="system",
        )
        current_app.logger.info(
            "Payment attempt %s for payment %s declined: %s", report.payment_id, payment.payment_id, report.failure_reason
        )
    db.session.commit()


def _settle_once(payment_id: int, report: ProviderPayment, source: str, signature: str | None) -> SettlementResult:
    payment = db.session.get(Payment, payment_id, with_for_update=True, populate_existing=True)
    if payment is None:
        raise NotFoundError("Payment record not found")
    booking = db.session.get(Booking, payment.booking_id, with_for_update=True, populate_existing=True)

    if payment.status != "pending":
        if payment.status == "failed" and report.status == SUCCEEDED and report.order_id == payment.provider_order_id:
            _flag_success_after_failure(payment, booking, report, source)
        else:
            db.session.rollback()
        return _already_processed(payment_id)

    mismatch = _mismatch(payment, report)
    if mismatch:
        return _reject_payment(
            payment,
            mismatch,
            source,
            {
                "reported_order_id": report.order_id,
                "reported_amount": report.amount,
                "reported_currency": report.currency,
            },
        )

    if report.status == PENDING:
        if report.failure_reason:
            _record_failed_attempt(payment, booking, report, source)
        else:
            db.session.rollback()
        return SettlementResult(payment=payment, booking=booking, outcome="pending")

    if report.status == FAILED:
        if not _claim_terminal_status(payment, "failed", source, report.payment_id, failure_reason=report.failure_reason or "payment_failed"):
            db.session.rollback()
            return _already_processed(payment_id)
        outcome = booking.status
        if booking.status == states.PENDING:
            _move(booking, states.CANCELLED)
            outcome = states.CANCELLED
        record_audit(booking, "payment_failed", {"source": source, "reason": report.failure_reason}, payment=payment, actor="system")
        db.session.commit()
        current_app.logger.info("Payment %s failed via %s; booking %s is %s", payment_id, source, booking.booking_id, booking.status)
        if outcome == states.CANCELLED:
            _after_commit(booking, outcome, "The payment could not be completed.")
        return SettlementResult(payment=payment, booking=booking, outcome=outcome)

    if report.status != SUCCEEDED:
        raise ValidationError(f"Unknown provider payment status '{report.status}'")

    if not _claim_terminal_status(payment, "completed", source, report.payment_id, signature):
        db.session.rollback()
        return _already_processed(payment_id)

    if booking.status != states.PENDING:
        # Paid after the booking was cancelled or otherwise moved on; needs a refund decision.
        record_audit(
            booking,
            "settled_non_pending_booking",
            {"booking_status": booking.status, "source": source},
            payment=payment,
            actor="system",
        )
        db.session.commit()
        current_app.logger.warning(
            "Payment %s completed for booking %s in status %s", payment_id, booking.booking_id, booking.status
        )
        return SettlementResult(payment=payment, booking=booking, outcome=booking.status, notes=["refund_review_required"])

    outcome = _apply_offer_and_confirm(booking, payment, actor=source)
    db.session.commit()
    current_app.logger.info(
        "Payment %s settled via %s; booking %s is %s", payment_id, source, booking.booking_id, booking.status
    )
    _after_commit(booking, outcome)
    return SettlementResult(payment=payment, booking=booking, outcome=outcome)


def settle_payment(
    payment_id: int,
    report: ProviderPayment,
    source: str,
    signature: str | None = None,
) -> SettlementResult:
    """Apply a provider report to a payment exactly once.

    Repeated or concurrent calls for the same payment leave the same final
    state as a single call and write at most one OfferUsage row.
    """
    return _with_ledger_retry(
        lambda: _settle_once(payment_id, report, source, signature),
        f"settling payment {payment_id}",
    )


def _reject_caller(payment: Payment, reason: str) -> None:
    """Audit a verify call that could not prove it holds the order. The payment is untouched."""
    record_audit(payment.booking, "verification_rejected", {"reason": reason, "source": "verify"}, payment=payment, actor="system")
    db.session.commit()
    current_app.logger.warning("Rejected verify call for payment %s: %s", payment.payment_id, reason)
    raise AuthenticityError(details={"reason": reason})


def verify_settlement(order_id: str, client_secret: str) -> SettlementResult:
    """Synchronous settlement after checkout.

    The caller presents the order id and the client secret it was handed
    when the booking was created. The intent is retrieved from the provider
    and the secret is compared with the retrieved one; the settlement itself
    runs on the provider's report only.
    """
    if not order_id or not client_secret:
        raise ValidationError("order_id and client_secret are required")

    payment = Payment.query.filter_by(provider_order_id=order_id).first()
    if payment is None:
        raise NotFoundError("Payment record not found")
    if payment.status == "completed":
        return _already_processed(payment.payment_id)

    gateway = get_gateway()
    report = gateway.fetch_payment(order_id)
    if not gateway.client_secret_matches(report, client_secret):
        _reject_caller(payment, "invalid_client_secret")

    return settle_payment(payment.payment_id, report, "verify")


# A failed attempt returns the intent to requires_payment_method and the
# customer may retry, so only cancellation closes the order.
WEBHOOK_EVENTS = {
    "payment_intent.succeeded": SUCCEEDED,
    "payment_intent.payment_failed": PENDING,
    "payment_intent.canceled": FAILED,
}


def handle_payment_webhook(payload: bytes, signature_header: str | None) -> SettlementResult | None:
    """Asynchronous settlement from a signed provider callback.

    Returns None for events that are not about a known booking payment.
    """
    event = get_gateway().construct_webhook_event(payload, signature_header)
    event_type = event.get("type")
    data = (event.get("data") or {}).get("object") or {}

    status = WEBHOOK_EVENTS.get(event_type)
    if status is None:
        current_app.logger.info("Ignoring unhandled webhook event %s", event_type)
        return None

    report = payment_from_intent(data, status)
    if event_type == "payment_intent.payment_failed" and not report.failure_reason:
        report = replace(report, failure_reason="payment_failed")
    payment = Payment.query.filter_by(provider_order_id=report.order_id).first()
    if payment is None:
        current_app.logger.warning("Webhook %s for unknown order %s", event_type, report.order_id)
        return None

    payment_id = payment.payment_id
    try:
        return settle_payment(payment_id, report, "webhook", signature=signature_header)
    except AuthenticityError:
        # The event itself was authentic; the mismatch is recorded on the payment.
        payment = db.session.get(Payment, payment_id, populate_existing=True)
        return SettlementResult(payment=payment, booking=payment.booking, outcome="rejected")


# --- reschedule and status updates ---------------------------------------


def get_booking(booking_id: int) -> Booking:
    booking = db.session.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError("Booking not found")
    return booking


def reschedule_booking(
    booking_id: int,
    starts_at: datetime,
    staff_id=_UNSET,
    now: datetime | None = None,
) -> Booking:
    """Move a pending or confirmed booking; its status is unchanged."""
    booking = get_booking(booking_id)
    states.ensure_reschedulable(booking.status)

    new_staff = booking.staff_id if staff_id is _UNSET else staff_id
    _check_staff(booking.salon_id, new_staff)
    new_start = to_naive_utc(starts_at)
    new_end = new_start + timedelta(minutes=booking.duration_minutes)

    ensure_bookable(booking.salon_id, new_staff, new_start, new_end, now, exclude_booking_id=booking.booking_id)

    previous = {"starts_at": booking.starts_at.isoformat(), "staff_id": booking.staff_id}
    try:
        release_claims(booking)
        booking.starts_at = new_start
        booking.ends_at = new_end
        booking.staff_id = new_staff
        db.session.flush()
        claim_interval(booking)
        record_audit(
            booking,
            "rescheduled",
            {"from": previous, "to": {"starts_at": new_start.isoformat(), "staff_id": new_staff}},
        )
        db.session.commit()
    except BookingError:
        db.session.rollback()
        raise

    try:
        get_notifier().send_reschedule_notice(booking)
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to send reschedule notice for booking %s", booking.booking_id, exc_info=exc)
    return booking


def _update_status_once(booking_id: int, status: str, actor: str, note: str | None, salon_id: int | None) -> tuple[Booking, str]:
    booking = db.session.get(Booking, booking_id, with_for_update=True, populate_existing=True)
    if booking is None or (salon_id is not None and booking.salon_id != salon_id):
        raise NotFoundError(f"Booking {booking_id} not found")

    current = booking.status
    states.validate_transition(current, status)

    if current in states.OPERATOR_ONLY_SOURCES and actor != "operator":
        raise IllegalTransitionError(current, status, "Only an operator can resolve a booking under review")
    if status == states.PENDING_REVIEW:
        raise IllegalTransitionError(current, status, "Bookings are placed under review only by payment settlement")

    if current == states.PENDING and status == states.CONFIRMED:
        if booking.payment_method != "pay_at_salon":
            raise IllegalTransitionError(current, status, "Pay-now bookings are confirmed by payment settlement")
        outcome = _apply_offer_and_confirm(booking, None, actor)
    elif current == states.PENDING_REVIEW:
        _move(booking, status)
        honored = False
        if status == states.CONFIRMED and booking.offer_id is not None and booking.client_id is not None:
            record_usage(booking.client_id, booking.offer_id, booking.booking_id, booking.discount_amount_cents)
            honored = True
        record_audit(
            booking,
            "review_resolved",
            {"decision": status, "note": note, "discount_honored": honored},
            payment=booking.latest_payment,
            actor=actor,
        )
        outcome = status
    else:
        _move(booking, status)
        outcome = status
        if note:
            record_audit(booking, "status_note", {"status": status, "note": note}, actor=actor)

    db.session.commit()
    return booking, outcome


def update_booking_status(
    booking_id: int,
    status: str,
    actor: str = "staff",
    note: str | None = None,
    salon_id: int | None = None,
) -> Booking:
    """Validated status change for staff, operators and the expiry sweep."""
    if actor not in ACTORS:
        raise ValidationError(f"actor must be one of: {', '.join(ACTORS)}")
    try:
        booking, outcome = _with_ledger_retry(
            lambda: _update_status_once(booking_id, status, actor, note, salon_id),
            f"updating booking {booking_id}",
        )
    except BookingError:
        db.session.rollback()
        raise

    _after_commit(booking, outcome)
    return booking


def bulk_update_booking_status(
    salon_id: int,
    booking_ids: list[int],
    status: str,
    actor: str = "staff",
) -> list[dict[str, object]]:
    """Update each booking independently; one result per requested id."""
    if not booking_ids:
        raise ValidationError("booking_ids must be a non-empty list")

    results: list[dict[str, object]] = []
    for booking_id in booking_ids:
        try:
            booking = update_booking_status(booking_id, status, actor=actor, salon_id=salon_id)
        except BookingError as exc:
            results.append({"booking_id": booking_id, "ok": False, **exc.to_dict()})
            continue
        results.append({"booking_id": booking_id, "ok": True, "status": booking.status})
    return results


def expire_stale_bookings(now: datetime | None = None) -> list[int]:
    """Cancel pending bookings with no settled payment after the grace period."""
    now = to_naive_utc(now) if now else naive_utc_now()
    cutoff = now - timedelta(minutes=current_app.config["PENDING_BOOKING_GRACE_MINUTES"])

    expired = []
    stale = Booking.query.filter(Booking.status == states.PENDING, Booking.quoted_at < cutoff).all()
    for booking in stale:
        if any(payment.status != "pending" for payment in booking.payments):
            continue
        try:
            update_booking_status(booking.booking_id, states.CANCELLED, actor="system", note="payment window expired")
        except (IllegalTransitionError, NotFoundError) as exc:
            current_app.logger.info("Skipping expiry of booking %s: %s", booking.booking_id, exc.message)
            continue
        expired.append(booking.booking_id)
    return expired
