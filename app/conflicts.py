"""Slot and booking conflict detection.

``find_overlaps`` is an optimistic pre-check that produces good error
messages. The authoritative guarantee is ``claim_interval``: every active
booking owns one ``BookingSlotClaim`` row per granule it covers, and the
unique constraint on those rows makes a second overlapping insert fail.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from .booking_status import ACTIVE_STATUSES
from .errors import ConflictError, NotFoundError, ValidationError
from .extensions import db
from .models import Booking, BookingSlotClaim, Salon, TimeSlot, naive_utc_now, to_naive_utc

SALON_RESOURCE = "salon"


def resource_key(salon: Salon, staff_id: int | None) -> str | None:
    """Identify the resource a booking occupies, or None if it occupies nothing yet.

    Salon-wide salons are a single resource. Per-staff salons schedule each
    staff member independently; an unassigned booking there has no resource.
    """
    if salon.is_salon_wide:
        return SALON_RESOURCE
    if staff_id is None:
        return None
    return f"staff:{staff_id}"


def _get_salon(salon_id: int) -> Salon:
    salon = db.session.get(Salon, salon_id)
    if salon is None:
        raise NotFoundError("Salon not found")
    return salon


def intervals_overlap(s1: datetime, e1: datetime, s2: datetime, e2: datetime) -> bool:
    """Half-open intervals ``[s1, e1)`` and ``[s2, e2)`` overlap."""
    return s1 < e2 and s2 < e1


def find_overlaps(
    salon_id: int,
    staff_id: int | None,
    start: datetime,
    end: datetime,
    exclude_booking_id: int | None = None,
) -> list[Booking]:
    """Return active bookings overlapping ``[start, end)`` on the same resource."""
    salon = _get_salon(salon_id)
    if resource_key(salon, staff_id) is None:
        return []

    query = Booking.query.filter(
        Booking.salon_id == salon_id,
        Booking.status.in_(ACTIVE_STATUSES),
        Booking.starts_at < to_naive_utc(end),
        Booking.ends_at > to_naive_utc(start),
    )
    if not salon.is_salon_wide:
        query = query.filter(Booking.staff_id == staff_id)
    if exclude_booking_id is not None:
        query = query.filter(Booking.booking_id != exclude_booking_id)
    return query.order_by(Booking.starts_at).all()


def find_blocking_slots(salon_id: int, staff_id: int | None, start: datetime, end: datetime) -> list[TimeSlot]:
    """Manual holds overlapping ``[start, end)``. Salon-level holds block every resource."""
    salon = _get_salon(salon_id)
    query = TimeSlot.query.filter(
        TimeSlot.salon_id == salon_id,
        TimeSlot.is_blocked.is_(True),
        TimeSlot.starts_at < to_naive_utc(end),
        TimeSlot.ends_at > to_naive_utc(start),
    )
    if not salon.is_salon_wide:
        if staff_id is None:
            query = query.filter(TimeSlot.staff_id.is_(None))
        else:
            query = query.filter(or_(TimeSlot.staff_id == staff_id, TimeSlot.staff_id.is_(None)))
    return query.all()


def _granularity() -> timedelta:
    return timedelta(minutes=current_app.config["BOOKING_CLAIM_GRANULARITY_MINUTES"])


def _align_down(value: datetime) -> datetime:
    step = int(_granularity().total_seconds() // 60)
    minutes = value.hour * 60 + value.minute
    aligned = (minutes // step) * step
    return value.replace(hour=aligned // 60, minute=aligned % 60, second=0, microsecond=0)


def ensure_bookable(
    salon_id: int,
    staff_id: int | None,
    start: datetime,
    end: datetime,
    now: datetime | None = None,
    exclude_booking_id: int | None = None,
) -> None:
    """Reject a past start, a misaligned start, an overlap or a blocked interval."""
    start = to_naive_utc(start)
    end = to_naive_utc(end)
    now = to_naive_utc(now) if now else naive_utc_now()

    if end <= start:
        raise ValidationError("Booking must have a positive duration")
    if start < now:
        raise ValidationError("Cannot book a time in the past")
    if _align_down(start) != start:
        step = current_app.config["BOOKING_CLAIM_GRANULARITY_MINUTES"]
        raise ValidationError(f"Start time must fall on a {step}-minute boundary")

    if find_overlaps(salon_id, staff_id, start, end, exclude_booking_id):
        raise ConflictError("Scheduling conflict: the selected time is no longer available")
    if find_blocking_slots(salon_id, staff_id, start, end):
        raise ConflictError("Scheduling conflict: the selected time is blocked")


def _matching_slots(booking: Booking, salon: Salon):
    query = TimeSlot.query.filter(
        TimeSlot.salon_id == booking.salon_id,
        TimeSlot.starts_at < booking.ends_at,
        TimeSlot.ends_at > booking.starts_at,
    )
    if not salon.is_salon_wide:
        query = query.filter(TimeSlot.staff_id == booking.staff_id)
    return query


def claim_interval(booking: Booking) -> int:
    """Insert the booking's claim rows and flush.

    On a uniqueness violation the unit of work is rolled back and
    ConflictError is raised; nothing from the current transaction survives.
    """
    salon = _get_salon(booking.salon_id)
    key = resource_key(salon, booking.staff_id)
    if key is None:
        return 0

    step = _granularity()
    cursor = _align_down(booking.starts_at)
    count = 0
    while cursor < booking.ends_at:
        db.session.add(
            BookingSlotClaim(
                booking_id=booking.booking_id,
                salon_id=booking.salon_id,
                resource_key=key,
                starts_at=cursor,
            )
        )
        cursor += step
        count += 1

    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        current_app.logger.warning(
            "Slot claim collision for salon %s resource %s at %s", booking.salon_id, key, booking.starts_at
        )
        raise ConflictError("Scheduling conflict: the selected time is no longer available") from exc

    _matching_slots(booking, salon).update({TimeSlot.is_booked: True}, synchronize_session="fetch")
    return count


def release_claims(booking: Booking) -> None:
    """Drop the booking's claims and free generated slots nothing else occupies."""
    BookingSlotClaim.query.filter(BookingSlotClaim.booking_id == booking.booking_id).delete(
        synchronize_session="fetch"
    )
    salon = _get_salon(booking.salon_id)
    if resource_key(salon, booking.staff_id) is None:
        return
    for slot in _matching_slots(booking, salon).filter(TimeSlot.is_booked.is_(True)).all():
        still_taken = find_overlaps(
            booking.salon_id, slot.staff_id, slot.starts_at, slot.ends_at, exclude_booking_id=booking.booking_id
        )
        if not still_taken:
            slot.is_booked = False
    db.session.flush()
