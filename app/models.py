"""Database models for the salon booking engine."""
from __future__ import annotations

from datetime import datetime, timezone

from .extensions import db


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def naive_utc_now() -> datetime:
    """Return the current UTC time without tzinfo, as booking timestamps are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise ``value`` to naive UTC. Naive input is assumed to already be UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _iso(value) -> str | None:
    return value.isoformat() if value else None


BOOKING_STATUSES = ("pending", "confirmed", "pending_review", "completed", "cancelled", "failed")
PAYMENT_STATUSES = ("pending", "completed", "failed")


class User(db.Model):
    __tablename__ = "users"

    user_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    role = db.Column(
        db.Enum(
            "client",
            "vendor",
            "admin",
            name="user_role",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="client",
    )
    phone = db.Column(db.String(30))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict_basic(self) -> dict[str, object]:
        return {
            "id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "phone": self.phone,
        }


class Salon(db.Model):
    __tablename__ = "salons"

    salon_id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    name = db.Column(db.String(150), nullable=False)
    # per_staff: each staff member is an independent resource.
    # salon_wide: the salon is a single resource (e.g. one chair).
    scheduling_mode = db.Column(
        db.Enum(
            "per_staff",
            "salon_wide",
            name="salon_scheduling_mode",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="per_staff",
    )
    timezone = db.Column(db.String(64), nullable=False, server_default="UTC")
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    vendor = db.relationship("User")

    @property
    def is_salon_wide(self) -> bool:
        return self.scheduling_mode == "salon_wide"

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.salon_id,
            "name": self.name,
            "scheduling_mode": self.scheduling_mode,
            "timezone": self.timezone,
        }


class Staff(db.Model):
    __tablename__ = "staff"

    staff_id = db.Column(db.Integer, primary_key=True)
    salon_id = db.Column(db.Integer, db.ForeignKey("salons.salon_id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    title = db.Column(db.String(100), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    salon = db.relationship("Salon")
    user = db.relationship("User")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.staff_id,
            "salon_id": self.salon_id,
            "title": self.title,
            "name": self.user.name if self.user else None,
            "is_active": self.is_active,
        }


class Service(db.Model):
    """Services offered by a salon."""

    __tablename__ = "services"

    service_id = db.Column(db.Integer, primary_key=True)
    salon_id = db.Column(db.Integer, db.ForeignKey("salons.salon_id"), nullable=False)
    name = db.Column(db.String(150), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, server_default="usd")
    duration_minutes = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    salon = db.relationship("Salon")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.service_id,
            "salon_id": self.salon_id,
            "name": self.name,
            "price_cents": self.price_cents,
            "currency": self.currency,
            "duration_minutes": self.duration_minutes,
            "is_active": self.is_active,
        }


class AvailabilityPattern(db.Model):
    """Recurring weekly availability for a salon or one of its staff."""

    __tablename__ = "availability_patterns"

    pattern_id = db.Column(db.Integer, primary_key=True)
    salon_id = db.Column(db.Integer, db.ForeignKey("salons.salon_id"), nullable=False)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=True)
    day_of_week = db.Column(db.Integer, nullable=False)  # 0=Sunday ... 6=Saturday
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    slot_duration_minutes = db.Column(db.Integer, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    salon = db.relationship("Salon")
    staff = db.relationship("Staff")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.pattern_id,
            "salon_id": self.salon_id,
            "staff_id": self.staff_id,
            "day_of_week": self.day_of_week,
            "start_time": self.start_time.strftime("%H:%M") if self.start_time else None,
            "end_time": self.end_time.strftime("%H:%M") if self.end_time else None,
            "slot_duration_minutes": self.slot_duration_minutes,
            "is_active": self.is_active,
        }


class TimeSlot(db.Model):
    """A bookable candidate generated from a pattern, or a manual hold."""

    __tablename__ = "time_slots"
    __table_args__ = (
        db.UniqueConstraint("pattern_id", "starts_at", name="uq_time_slots_pattern_start"),
    )

    slot_id = db.Column(db.Integer, primary_key=True)
    pattern_id = db.Column(db.Integer, db.ForeignKey("availability_patterns.pattern_id"), nullable=True)
    salon_id = db.Column(db.Integer, db.ForeignKey("salons.salon_id"), nullable=False)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=True)
    starts_at = db.Column(db.DateTime, nullable=False, index=True)
    ends_at = db.Column(db.DateTime, nullable=False)
    is_booked = db.Column(db.Boolean, nullable=False, default=False)
    is_blocked = db.Column(db.Boolean, nullable=False, default=False)

    pattern = db.relationship("AvailabilityPattern")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.slot_id,
            "pattern_id": self.pattern_id,
            "salon_id": self.salon_id,
            "staff_id": self.staff_id,
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
            "is_booked": bool(self.is_booked),
            "is_blocked": bool(self.is_blocked),
        }


class Booking(db.Model):
    """A customer's reservation. Cancelled, never deleted."""

    __tablename__ = "bookings"
    __table_args__ = (
        db.CheckConstraint("discount_amount_cents >= 0", name="ck_bookings_discount_non_negative"),
        db.CheckConstraint("discount_amount_cents <= total_amount_cents", name="ck_bookings_discount_le_total"),
        db.CheckConstraint(
            "final_amount_cents = total_amount_cents - discount_amount_cents",
            name="ck_bookings_final_amount",
        ),
    )

    booking_id = db.Column(db.Integer, primary_key=True)
    salon_id = db.Column(db.Integer, db.ForeignKey("salons.salon_id"), nullable=False, index=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("staff.staff_id"), nullable=True)
    client_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    guest_session_id = db.Column(db.String(100), nullable=True)
    customer_name = db.Column(db.String(100))
    customer_email = db.Column(db.String(255))
    customer_phone = db.Column(db.String(30))
    starts_at = db.Column(db.DateTime, nullable=False, index=True)
    ends_at = db.Column(db.DateTime, nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False)
    status = db.Column(
        db.Enum(
            *BOOKING_STATUSES,
            name="booking_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="pending",
    )
    total_amount_cents = db.Column(db.Integer, nullable=False)
    discount_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    final_amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    offer_id = db.Column(db.Integer, db.ForeignKey("offers.offer_id"), nullable=True)
    # Frozen copy of the discount terms at booking time.
    offer_snapshot = db.Column(db.JSON, nullable=True)
    quoted_at = db.Column(db.DateTime, nullable=False)
    payment_method = db.Column(
        db.Enum("pay_now", "pay_at_salon", name="booking_payment_method", native_enum=False, validate_strings=True),
        nullable=False,
        server_default="pay_now",
    )
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    salon = db.relationship("Salon")
    staff = db.relationship("Staff")
    client = db.relationship("User")
    services = db.relationship("BookingService", back_populates="booking", cascade="all, delete-orphan")
    payments = db.relationship("Payment", back_populates="booking", order_by="Payment.payment_id")
    audit_events = db.relationship("BookingAuditEvent", back_populates="booking", order_by="BookingAuditEvent.event_id")

    @property
    def is_guest(self) -> bool:
        return self.client_id is None

    @property
    def latest_payment(self):
        return self.payments[-1] if self.payments else None

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.booking_id,
            "salon_id": self.salon_id,
            "staff_id": self.staff_id,
            "services": [item.to_dict() for item in self.services],
            "customer": {
                "client_id": self.client_id,
                "guest_session_id": self.guest_session_id,
                "name": self.customer_name,
                "email": self.customer_email,
                "phone": self.customer_phone,
            },
            "date": self.starts_at.date().isoformat() if self.starts_at else None,
            "start_time": self.starts_at.strftime("%H:%M") if self.starts_at else None,
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
            "duration_minutes": self.duration_minutes,
            "status": self.status,
            "total_amount_cents": self.total_amount_cents,
            "discount_amount_cents": self.discount_amount_cents,
            "final_amount_cents": self.final_amount_cents,
            "currency": self.currency,
            "offer_id": self.offer_id,
            "offer_snapshot": self.offer_snapshot,
            "payment_method": self.payment_method,
            "notes": self.notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class BookingService(db.Model):
    """A service line on a booking, with the price and duration charged."""

    __tablename__ = "booking_services"

    booking_service_id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.booking_id"), nullable=False)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False)

    booking = db.relationship("Booking", back_populates="services")
    service = db.relationship("Service")

    def to_dict(self) -> dict[str, object]:
        return {
            "service_id": self.service_id,
            "name": self.service.name if self.service else None,
            "price_cents": self.price_cents,
            "duration_minutes": self.duration_minutes,
        }


class BookingSlotClaim(db.Model):
    """One reserved granule of a resource. The unique constraint is the double-booking backstop."""

    __tablename__ = "booking_slot_claims"
    __table_args__ = (
        db.UniqueConstraint("salon_id", "resource_key", "starts_at", name="uq_booking_slot_claims_resource_start"),
    )

    claim_id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.booking_id"), nullable=False, index=True)
    salon_id = db.Column(db.Integer, db.ForeignKey("salons.salon_id"), nullable=False)
    resource_key = db.Column(db.String(50), nullable=False)
    starts_at = db.Column(db.DateTime, nullable=False)


class Payment(db.Model):
    """One online payment attempt for a booking."""

    __tablename__ = "payments"

    payment_id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.booking_id"), nullable=False, index=True)
    provider_order_id = db.Column(db.String(255), nullable=True, unique=True)
    provider_payment_id = db.Column(db.String(255), nullable=True)
    provider_signature = db.Column(db.String(255), nullable=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(
        db.Enum(*PAYMENT_STATUSES, name="payment_status", native_enum=False, validate_strings=True),
        nullable=False,
        server_default="pending",
    )
    failure_reason = db.Column(db.String(255))
    settled_via = db.Column(db.String(20))
    settled_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    booking = db.relationship("Booking", back_populates="payments")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.payment_id,
            "booking_id": self.booking_id,
            "provider_order_id": self.provider_order_id,
            "provider_payment_id": self.provider_payment_id,
            "amount_cents": self.amount_cents,
            "currency": self.currency,
            "status": self.status,
            "failure_reason": self.failure_reason,
            "settled_via": self.settled_via,
            "settled_at": _iso(self.settled_at),
        }


class Offer(db.Model):
    """Promotional offer, platform-wide or owned by one salon."""

    __tablename__ = "offers"

    offer_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    is_platform_wide = db.Column(db.Boolean, nullable=False, default=False)
    salon_id = db.Column(db.Integer, db.ForeignKey("salons.salon_id"), nullable=True)
    discount_type = db.Column(
        db.Enum("percentage", "fixed", name="offer_discount_type", native_enum=False, validate_strings=True),
        nullable=False,
    )
    discount_value = db.Column(db.Integer, nullable=False)
    max_discount_cents = db.Column(db.Integer, nullable=True)
    minimum_purchase_cents = db.Column(db.Integer, nullable=True)
    valid_from = db.Column(db.DateTime, nullable=False)
    valid_until = db.Column(db.DateTime, nullable=False)
    approval_status = db.Column(
        db.Enum("pending", "approved", "rejected", name="offer_approval_status", native_enum=False, validate_strings=True),
        nullable=False,
        server_default="pending",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    usage_limit_per_user = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.offer_id,
            "title": self.title,
            "is_platform_wide": self.is_platform_wide,
            "salon_id": self.salon_id,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "max_discount_cents": self.max_discount_cents,
            "minimum_purchase_cents": self.minimum_purchase_cents,
            "valid_from": _iso(self.valid_from),
            "valid_until": _iso(self.valid_until),
            "approval_status": self.approval_status,
            "is_active": self.is_active,
            "usage_limit_per_user": self.usage_limit_per_user,
        }


class OfferUsage(db.Model):
    """Append-only usage ledger. A row exists only for a settled booking."""

    __tablename__ = "offer_usages"
    __table_args__ = (
        db.UniqueConstraint("user_id", "offer_id", "usage_sequence", name="uq_offer_usages_user_offer_seq"),
        db.UniqueConstraint("booking_id", name="uq_offer_usages_booking"),
    )

    usage_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    offer_id = db.Column(db.Integer, db.ForeignKey("offers.offer_id"), nullable=False)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.booking_id"), nullable=False)
    discount_applied_cents = db.Column(db.Integer, nullable=False)
    usage_sequence = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.usage_id,
            "user_id": self.user_id,
            "offer_id": self.offer_id,
            "booking_id": self.booking_id,
            "discount_applied_cents": self.discount_applied_cents,
            "usage_sequence": self.usage_sequence,
        }


class BookingAuditEvent(db.Model):
    """Durable record of security-relevant and operator events on a booking."""

    __tablename__ = "booking_audit_events"

    event_id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.booking_id"), nullable=False, index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.payment_id"), nullable=True)
    kind = db.Column(db.String(50), nullable=False)
    detail = db.Column(db.JSON, nullable=True, default=dict)
    actor = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    booking = db.relationship("Booking", back_populates="audit_events")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.event_id,
            "booking_id": self.booking_id,
            "payment_id": self.payment_id,
            "kind": self.kind,
            "detail": self.detail or {},
            "actor": self.actor,
            "created_at": _iso(self.created_at),
        }


class Notification(db.Model):
    __tablename__ = "notifications"

    notification_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.booking_id"), nullable=True)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    notification_type = db.Column(
        db.Enum(
            "booking_confirmed",
            "booking_cancelled",
            "booking_rescheduled",
            "booking_under_review",
            name="notification_type",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    is_read = db.Column(db.Boolean, nullable=False, server_default="0")
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.notification_id,
            "user_id": self.user_id,
            "booking_id": self.booking_id,
            "title": self.title,
            "message": self.message,
            "notification_type": self.notification_type,
            "is_read": self.is_read,
            "created_at": _iso(self.created_at),
        }


class BookingReminder(db.Model):
    __tablename__ = "booking_reminders"
    __table_args__ = (
        db.UniqueConstraint("booking_id", "remind_at", name="uq_booking_reminders_booking_time"),
    )

    reminder_id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.booking_id"), nullable=False)
    remind_at = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="scheduled")
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
