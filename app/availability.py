"""Expansion of recurring availability patterns into bookable time slots."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app

from .errors import ConflictError, NotFoundError, ValidationError
from .extensions import db
from .models import AvailabilityPattern, Salon, Staff, TimeSlot, naive_utc_now, to_naive_utc


@dataclass(frozen=True)
class SlotCandidate:
    salon_id: int
    staff_id: int | None
    starts_at: datetime
    ends_at: datetime


def parse_time(value: object, field: str) -> time:
    if isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a time in HH:MM format")


def salon_zone(tz_name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone '{tz_name}'")


def local_to_utc(day: date, at: time, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, at, tzinfo=zone).astimezone(timezone.utc).replace(tzinfo=None)


def day_of_week_for(day: date) -> int:
    """0=Sunday ... 6=Saturday."""
    return (day.weekday() + 1) % 7


def validate_pattern_fields(day_of_week: object, start_time: time, end_time: time, slot_duration_minutes: object) -> None:
    if not isinstance(day_of_week, int) or isinstance(day_of_week, bool) or not 0 <= day_of_week <= 6:
        raise ValidationError("day_of_week must be an integer between 0 (Sunday) and 6 (Saturday)")
    if end_time <= start_time:
        raise ValidationError("end_time must be after start_time")
    if not isinstance(slot_duration_minutes, int) or isinstance(slot_duration_minutes, bool) or slot_duration_minutes <= 0:
        raise ValidationError("slot_duration_minutes must be a positive integer")


def expand_pattern(
    pattern: AvailabilityPattern,
    date_from: date,
    date_to: date,
    tz_name: str | None = None,
) -> list[SlotCandidate]:
    """Return one candidate per slot for every matching weekday in ``[date_from, date_to]``.

    A slot is emitted only if it ends no later than the pattern's end time.
    """
    if date_to < date_from:
        return []
    if tz_name is None:
        tz_name = pattern.salon.timezone if pattern.salon is not None else "UTC"
    zone = salon_zone(tz_name)
    step = timedelta(minutes=pattern.slot_duration_minutes)

    candidates: list[SlotCandidate] = []
    day = date_from
    while day <= date_to:
        if day_of_week_for(day) == pattern.day_of_week:
            cursor = datetime.combine(day, pattern.start_time)
            day_end = datetime.combine(day, pattern.end_time)
            while cursor + step <= day_end:
                candidates.append(
                    SlotCandidate(
                        salon_id=pattern.salon_id,
                        staff_id=pattern.staff_id,
                        starts_at=local_to_utc(day, cursor.time(), zone),
                        ends_at=local_to_utc(day, (cursor + step).time(), zone),
                    )
                )
                cursor += step
        day += timedelta(days=1)
    return candidates


def _default_horizon(date_from: date | None, date_to: date | None) -> tuple[date, date]:
    if date_from is None:
        date_from = naive_utc_now().date()
    if date_to is None:
        date_to = date_from + timedelta(days=current_app.config["SLOT_HORIZON_DAYS"])
    return date_from, date_to


def regenerate_slots(
    pattern: AvailabilityPattern,
    date_from: date | None = None,
    date_to: date | None = None,
) -> list[TimeSlot]:
    """Idempotently (re)generate the pattern's slots over the horizon.

    Unbooked, unblocked slots of this pattern inside the horizon are cleared
    first; booked and blocked slots are never deleted and are not duplicated.
    The caller commits.
    """
    date_from, date_to = _default_horizon(date_from, date_to)
    zone = salon_zone(pattern.salon.timezone if pattern.salon else None)
    window_start = local_to_utc(date_from, time(0, 0), zone)
    window_end = local_to_utc(date_to + timedelta(days=1), time(0, 0), zone)

    TimeSlot.query.filter(
        TimeSlot.pattern_id == pattern.pattern_id,
        TimeSlot.starts_at >= window_start,
        TimeSlot.starts_at < window_end,
        TimeSlot.is_booked.is_(False),
        TimeSlot.is_blocked.is_(False),
    ).delete(synchronize_session="fetch")

    if not pattern.is_active:
        db.session.flush()
        return []

    kept = {
        slot.starts_at
        for slot in TimeSlot.query.filter(
            TimeSlot.pattern_id == pattern.pattern_id,
            TimeSlot.starts_at >= window_start,
            TimeSlot.starts_at < window_end,
        )
    }

    created: list[TimeSlot] = []
    for candidate in expand_pattern(pattern, date_from, date_to, zone.key):
        if candidate.starts_at in kept:
            continue
        slot = TimeSlot(
            pattern_id=pattern.pattern_id,
            salon_id=candidate.salon_id,
            staff_id=candidate.staff_id,
            starts_at=candidate.starts_at,
            ends_at=candidate.ends_at,
        )
        db.session.add(slot)
        created.append(slot)

    db.session.flush()
    return created


def _check_pattern_owner(salon_id: int, staff_id: int | None) -> Salon:
    salon = db.session.get(Salon, salon_id)
    if salon is None:
        raise NotFoundError("Salon not found")
    if staff_id is not None:
        staff = db.session.get(Staff, staff_id)
        if staff is None or staff.salon_id != salon_id:
            raise ValidationError("Staff member does not belong to this salon")
    return salon


def create_pattern(
    salon_id: int,
    day_of_week: int,
    start_time: time,
    end_time: time,
    slot_duration_minutes: int,
    staff_id: int | None = None,
    is_active: bool = True,
) -> AvailabilityPattern:
    validate_pattern_fields(day_of_week, start_time, end_time, slot_duration_minutes)
    _check_pattern_owner(salon_id, staff_id)

    pattern = AvailabilityPattern(
        salon_id=salon_id,
        staff_id=staff_id,
        day_of_week=day_of_week,
        start_time=start_time,
        end_time=end_time,
        slot_duration_minutes=slot_duration_minutes,
        is_active=is_active,
    )
    db.session.add(pattern)
    db.session.flush()
    regenerate_slots(pattern)
    db.session.commit()
    return pattern


def update_pattern(pattern_id: int, **changes: object) -> AvailabilityPattern:
    pattern = db.session.get(AvailabilityPattern, pattern_id)
    if pattern is None:
        raise NotFoundError("Availability pattern not found")

    day_of_week = changes.get("day_of_week", pattern.day_of_week)
    start_time = changes.get("start_time", pattern.start_time)
    end_time = changes.get("end_time", pattern.end_time)
    slot_duration = changes.get("slot_duration_minutes", pattern.slot_duration_minutes)
    staff_id = changes.get("staff_id", pattern.staff_id)
    validate_pattern_fields(day_of_week, start_time, end_time, slot_duration)
    _check_pattern_owner(pattern.salon_id, staff_id)

    pattern.day_of_week = day_of_week
    pattern.start_time = start_time
    pattern.end_time = end_time
    pattern.slot_duration_minutes = slot_duration
    pattern.staff_id = staff_id
    if "is_active" in changes:
        pattern.is_active = bool(changes["is_active"])

    regenerate_slots(pattern)
    db.session.commit()
    return pattern


def delete_pattern(pattern_id: int) -> None:
    """Delete a pattern and its open slots. Booked or blocked slots are detached, not removed."""
    pattern = db.session.get(AvailabilityPattern, pattern_id)
    if pattern is None:
        raise NotFoundError("Availability pattern not found")

    TimeSlot.query.filter(
        TimeSlot.pattern_id == pattern_id,
        TimeSlot.is_booked.is_(False),
        TimeSlot.is_blocked.is_(False),
    ).delete(synchronize_session="fetch")
    TimeSlot.query.filter(TimeSlot.pattern_id == pattern_id).update(
        {TimeSlot.pattern_id: None}, synchronize_session="fetch"
    )
    db.session.delete(pattern)
    db.session.commit()


def set_slot_blocked(slot_id: int, blocked: bool) -> TimeSlot:
    slot = db.session.get(TimeSlot, slot_id)
    if slot is None:
        raise NotFoundError("Time slot not found")
    if blocked and slot.is_booked:
        raise ConflictError("Slot is already booked")
    slot.is_blocked = blocked
    db.session.commit()
    return slot


def list_open_slots(
    salon_id: int,
    on_date: date,
    staff_id: int | None = None,
    now: datetime | None = None,
) -> list[TimeSlot]:
    """Slots of ``on_date`` (salon-local) that can still be booked."""
    from .conflicts import find_overlaps

    salon = db.session.get(Salon, salon_id)
    if salon is None:
        raise NotFoundError("Salon not found")
    zone = salon_zone(salon.timezone)
    day_start = local_to_utc(on_date, time(0, 0), zone)
    day_end = local_to_utc(on_date + timedelta(days=1), time(0, 0), zone)
    now = to_naive_utc(now) if now else naive_utc_now()

    query = TimeSlot.query.filter(
        TimeSlot.salon_id == salon_id,
        TimeSlot.starts_at >= day_start,
        TimeSlot.starts_at < day_end,
        TimeSlot.starts_at > now,
        TimeSlot.is_booked.is_(False),
        TimeSlot.is_blocked.is_(False),
    )
    if staff_id is not None:
        query = query.filter(TimeSlot.staff_id == staff_id)

    open_slots = []
    for slot in query.order_by(TimeSlot.starts_at).all():
        if not find_overlaps(salon.salon_id, slot.staff_id, slot.starts_at, slot.ends_at):
            open_slots.append(slot)
    return open_slots


def block_slot(slot_id: int) -> TimeSlot:
    return set_slot_blocked(slot_id, True)


def unblock_slot(slot_id: int) -> TimeSlot:
    return set_slot_blocked(slot_id, False)
