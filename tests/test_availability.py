"""Tests for availability pattern expansion and slot generation."""
from __future__ import annotations

from datetime import date, datetime, time

import pytest

from app.availability import (block_slot, create_pattern, day_of_week_for,
                              delete_pattern, expand_pattern, list_open_slots,
                              regenerate_slots, unblock_slot, update_pattern,
                              validate_pattern_fields)
from app.errors import ConflictError, ValidationError
from app.extensions import db
from app.models import AvailabilityPattern, TimeSlot

MONDAY = date(2030, 1, 7)


def test_day_of_week_counts_from_sunday() -> None:
    """Sunday is 0 and Saturday is 6."""
    assert day_of_week_for(date(2030, 1, 6)) == 0
    assert day_of_week_for(MONDAY) == 1
    assert day_of_week_for(date(2030, 1, 12)) == 6


def test_monday_morning_pattern_yields_four_slots() -> None:
    """09:00-11:00 in 30 minute steps gives 09:00, 09:30, 10:00, 10:30 and nothing at 11:00."""
    pattern = AvailabilityPattern(
        salon_id=1,
        day_of_week=1,
        start_time=time(9, 0),
        end_time=time(11, 0),
        slot_duration_minutes=30,
    )

    candidates = expand_pattern(pattern, MONDAY, MONDAY, "UTC")

    assert [c.starts_at.strftime("%H:%M") for c in candidates] == ["09:00", "09:30", "10:00", "10:30"]
    assert all((c.ends_at - c.starts_at).total_seconds() == 1800 for c in candidates)


def test_expand_pattern_skips_other_weekdays_and_partial_slots() -> None:
    """A trailing interval shorter than the slot length is not emitted."""
    pattern = AvailabilityPattern(
        salon_id=1,
        day_of_week=1,
        start_time=time(9, 0),
        end_time=time(10, 15),
        slot_duration_minutes=30,
    )

    candidates = expand_pattern(pattern, date(2030, 1, 6), date(2030, 1, 14), "UTC")

    assert [c.starts_at for c in candidates] == [
        datetime(2030, 1, 7, 9, 0),
        datetime(2030, 1, 7, 9, 30),
        datetime(2030, 1, 14, 9, 0),
        datetime(2030, 1, 14, 9, 30),
    ]


def test_expand_pattern_converts_salon_local_time_to_utc() -> None:
    pattern = AvailabilityPattern(
        salon_id=1,
        day_of_week=1,
        start_time=time(9, 0),
        end_time=time(10, 0),
        slot_duration_minutes=60,
    )

    candidates = expand_pattern(pattern, MONDAY, MONDAY, "America/New_York")

    assert candidates[0].starts_at == datetime(2030, 1, 7, 14, 0)


@pytest.mark.parametrize(
    "day, start, end, duration",
    [
        (7, time(9, 0), time(10, 0), 30),
        (1, time(10, 0), time(10, 0), 30),
        (1, time(11, 0), time(10, 0), 30),
        (1, time(9, 0), time(10, 0), 0),
    ],
)
def test_validate_pattern_fields_rejects_bad_patterns(day, start, end, duration) -> None:
    with pytest.raises(ValidationError):
        validate_pattern_fields(day, start, end, duration)


def test_create_pattern_generates_slots(app, factory) -> None:
    with app.app_context():
        salon = factory.salon()
        pattern = create_pattern(salon.salon_id, 1, time(9, 0), time(11, 0), 30)

        regenerate_slots(pattern, MONDAY, MONDAY)
        db.session.commit()

        slots = TimeSlot.query.filter(
            TimeSlot.pattern_id == pattern.pattern_id,
            TimeSlot.starts_at >= datetime(2030, 1, 7),
            TimeSlot.starts_at < datetime(2030, 1, 8),
        ).all()
        assert len(slots) == 4


def test_regenerate_slots_is_idempotent(app, factory) -> None:
    """Regenerating twice leaves the same set of slots."""
    with app.app_context():
        salon = factory.salon()
        pattern = factory.pattern(salon)

        first = regenerate_slots(pattern, MONDAY, MONDAY)
        db.session.commit()
        regenerate_slots(pattern, MONDAY, MONDAY)
        db.session.commit()

        assert len(first) == 4
        assert TimeSlot.query.filter_by(pattern_id=pattern.pattern_id).count() == 4


def test_regenerate_slots_keeps_booked_and_blocked_slots(app, factory) -> None:
    with app.app_context():
        salon = factory.salon()
        pattern = factory.pattern(salon)
        regenerate_slots(pattern, MONDAY, MONDAY)
        db.session.commit()

        slots = TimeSlot.query.filter_by(pattern_id=pattern.pattern_id).order_by(TimeSlot.starts_at).all()
        slots[0].is_booked = True
        slots[1].is_blocked = True
        booked_id, blocked_id = slots[0].slot_id, slots[1].slot_id
        db.session.commit()

        regenerate_slots(pattern, MONDAY, MONDAY)
        db.session.commit()

        remaining = TimeSlot.query.filter_by(pattern_id=pattern.pattern_id).all()
        assert len(remaining) == 4
        assert {booked_id, blocked_id} <= {slot.slot_id for slot in remaining}


def test_update_pattern_regenerates_with_new_duration(app, factory) -> None:
    with app.app_context():
        salon = factory.salon()
        pattern = create_pattern(salon.salon_id, 1, time(9, 0), time(11, 0), 30)

        update_pattern(pattern.pattern_id, slot_duration_minutes=60)
        regenerate_slots(pattern, MONDAY, MONDAY)
        db.session.commit()

        monday = TimeSlot.query.filter(
            TimeSlot.pattern_id == pattern.pattern_id,
            TimeSlot.starts_at >= datetime(2030, 1, 7),
            TimeSlot.starts_at < datetime(2030, 1, 8),
        ).all()
        assert sorted(slot.starts_at.hour for slot in monday) == [9, 10]


def test_update_pattern_rejects_inverted_times(app, factory) -> None:
    with app.app_context():
        salon = factory.salon()
        pattern = factory.pattern(salon)

        with pytest.raises(ValidationError):
            update_pattern(pattern.pattern_id, end_time=time(8, 0))


def test_delete_pattern_keeps_blocked_slot(app, factory) -> None:
    with app.app_context():
        salon = factory.salon()
        pattern = factory.pattern(salon)
        regenerate_slots(pattern, MONDAY, MONDAY)
        db.session.commit()
        slot = TimeSlot.query.filter_by(pattern_id=pattern.pattern_id).first()
        block_slot(slot.slot_id)
        slot_id = slot.slot_id
        pattern_id = pattern.pattern_id

        delete_pattern(pattern_id)

        assert db.session.get(AvailabilityPattern, pattern_id) is None
        kept = TimeSlot.query.all()
        assert [s.slot_id for s in kept] == [slot_id]
        assert kept[0].pattern_id is None


def test_block_booked_slot_is_a_conflict(app, factory) -> None:
    with app.app_context():
        salon = factory.salon()
        slot = TimeSlot(
            salon_id=salon.salon_id,
            starts_at=datetime(2030, 1, 7, 9, 0),
            ends_at=datetime(2030, 1, 7, 9, 30),
            is_booked=True,
        )
        db.session.add(slot)
        db.session.commit()

        with pytest.raises(ConflictError):
            block_slot(slot.slot_id)


def test_list_open_slots_hides_blocked_slots(app, factory) -> None:
    with app.app_context():
        salon = factory.salon(scheduling_mode="salon_wide")
        pattern = factory.pattern(salon)
        regenerate_slots(pattern, MONDAY, MONDAY)
        db.session.commit()
        first = TimeSlot.query.filter_by(pattern_id=pattern.pattern_id).order_by(TimeSlot.starts_at).first()
        block_slot(first.slot_id)

        open_slots = list_open_slots(salon.salon_id, MONDAY, now=datetime(2030, 1, 1))
        assert [slot.starts_at.strftime("%H:%M") for slot in open_slots] == ["09:30", "10:00", "10:30"]

        unblock_slot(first.slot_id)
        assert len(list_open_slots(salon.salon_id, MONDAY, now=datetime(2030, 1, 1))) == 4
