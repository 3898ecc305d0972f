"""Booking status state machine."""
from __future__ import annotations

from .errors import IllegalTransitionError

PENDING = "pending"
CONFIRMED = "confirmed"
PENDING_REVIEW = "pending_review"
COMPLETED = "completed"
CANCELLED = "cancelled"
FAILED = "failed"

# Bookings in these states occupy their staff/salon interval.
ACTIVE_STATUSES = frozenset({PENDING, CONFIRMED})

RESCHEDULABLE_STATUSES = frozenset({PENDING, CONFIRMED})

TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED, FAILED})

LEGAL_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({CONFIRMED, PENDING_REVIEW, CANCELLED, FAILED}),
    CONFIRMED: frozenset({COMPLETED, CANCELLED}),
    PENDING_REVIEW: frozenset({CONFIRMED, CANCELLED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
    FAILED: frozenset(),
}

# Exits from pending_review are a human decision.
OPERATOR_ONLY_SOURCES = frozenset({PENDING_REVIEW})


def is_legal(current: str, target: str) -> bool:
    return target in LEGAL_TRANSITIONS.get(current, frozenset())


def validate_transition(current: str, target: str) -> None:
    """Raise IllegalTransitionError unless ``current -> target`` is in the table."""
    if target not in LEGAL_TRANSITIONS:
        raise IllegalTransitionError(current, target, f"Unknown booking status '{target}'")
    if not is_legal(current, target):
        raise IllegalTransitionError(current, target)


def ensure_reschedulable(current: str) -> None:
    if current not in RESCHEDULABLE_STATUSES:
        raise IllegalTransitionError(
            current,
            current,
            f"Cannot reschedule a booking with status '{current}'",
        )


def enters_active_set(current: str, target: str) -> bool:
    return current not in ACTIVE_STATUSES and target in ACTIVE_STATUSES


def leaves_active_set(current: str, target: str) -> bool:
    return current in ACTIVE_STATUSES and target not in ACTIVE_STATUSES
