"""Offer eligibility and discount calculation.

``evaluate_offer`` is pure: given the same terms, amount, salon, time and
usage count it always returns the same answer. Bookings keep a frozen
``OfferTerms`` snapshot so the settlement-time evaluation can only differ
from the quote-time one through the usage ledger.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy import func

from .extensions import db
from .models import Offer, OfferUsage, naive_utc_now, to_naive_utc

# Ineligibility reasons, in the order they are checked.
OFFER_NOT_FOUND = "offer_not_found"
SALON_MISMATCH = "salon_mismatch"
INACTIVE = "inactive"
NOT_APPROVED = "not_approved"
OUTSIDE_VALIDITY_WINDOW = "outside_validity_window"
MINIMUM_PURCHASE = "minimum_purchase"
USAGE_LIMIT_REACHED = "usage_limit_reached"

REASON_MESSAGES = {
    OFFER_NOT_FOUND: "Offer not found",
    SALON_MISMATCH: "Offer not valid for this salon",
    INACTIVE: "Offer is not active",
    NOT_APPROVED: "Offer has not been approved",
    OUTSIDE_VALIDITY_WINDOW: "Offer expired or not yet active",
    MINIMUM_PURCHASE: "Minimum purchase not met",
    USAGE_LIMIT_REACHED: "Usage limit reached",
}


@dataclass(frozen=True)
class OfferTerms:
    offer_id: int
    title: str
    is_platform_wide: bool
    salon_id: int | None
    discount_type: str
    discount_value: int
    max_discount_cents: int | None
    minimum_purchase_cents: int | None
    valid_from: datetime
    valid_until: datetime
    approval_status: str
    is_active: bool
    usage_limit_per_user: int | None

    @classmethod
    def from_offer(cls, offer: Offer) -> "OfferTerms":
        return cls(
            offer_id=offer.offer_id,
            title=offer.title,
            is_platform_wide=bool(offer.is_platform_wide),
            salon_id=offer.salon_id,
            discount_type=offer.discount_type,
            discount_value=int(offer.discount_value),
            max_discount_cents=offer.max_discount_cents,
            minimum_purchase_cents=offer.minimum_purchase_cents,
            valid_from=to_naive_utc(offer.valid_from),
            valid_until=to_naive_utc(offer.valid_until),
            approval_status=offer.approval_status,
            is_active=bool(offer.is_active),
            usage_limit_per_user=offer.usage_limit_per_user,
        )

    def to_snapshot(self) -> dict[str, object]:
        snapshot = asdict(self)
        snapshot["valid_from"] = self.valid_from.isoformat()
        snapshot["valid_until"] = self.valid_until.isoformat()
        return snapshot

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, object]) -> "OfferTerms":
        data = dict(snapshot)
        data["valid_from"] = to_naive_utc(datetime.fromisoformat(data["valid_from"]))
        data["valid_until"] = to_naive_utc(datetime.fromisoformat(data["valid_until"]))
        return cls(**data)


@dataclass(frozen=True)
class OfferEvaluation:
    eligible: bool
    discount: int
    reason: str | None = None

    @property
    def message(self) -> str | None:
        return REASON_MESSAGES.get(self.reason) if self.reason else None

    def to_dict(self) -> dict[str, object]:
        return {
            "eligible": self.eligible,
            "discount_cents": self.discount,
            "reason": self.reason,
            "message": self.message,
        }


def calculate_discount(terms: OfferTerms, amount: int) -> int:
    """Discount in minor units, never negative and never above ``amount``."""
    if terms.discount_type == "percentage":
        discount = (amount * terms.discount_value) // 100
    else:
        discount = terms.discount_value

    if terms.max_discount_cents and discount > terms.max_discount_cents:
        discount = terms.max_discount_cents

    return max(0, min(discount, amount))


def evaluate_offer(
    terms: OfferTerms | None,
    amount: int,
    salon_id: int,
    now: datetime,
    usage_count: int | None = None,
) -> OfferEvaluation:
    """Check eligibility in a fixed order; the first failure is the reason.

    ``usage_count`` is the number of ledger rows for this user and offer, or
    ``None`` for a guest (guests are never capped).
    """
    if terms is None:
        return OfferEvaluation(False, 0, OFFER_NOT_FOUND)

    if not terms.is_platform_wide and terms.salon_id != salon_id:
        return OfferEvaluation(False, 0, SALON_MISMATCH)

    if not terms.is_active:
        return OfferEvaluation(False, 0, INACTIVE)

    if terms.approval_status != "approved":
        return OfferEvaluation(False, 0, NOT_APPROVED)

    now = to_naive_utc(now)
    if not (terms.valid_from <= now <= terms.valid_until):
        return OfferEvaluation(False, 0, OUTSIDE_VALIDITY_WINDOW)

    if terms.minimum_purchase_cents and amount < terms.minimum_purchase_cents:
        return OfferEvaluation(False, 0, MINIMUM_PURCHASE)

    if (
        usage_count is not None
        and terms.usage_limit_per_user is not None
        and usage_count >= terms.usage_limit_per_user
    ):
        return OfferEvaluation(False, 0, USAGE_LIMIT_REACHED)

    return OfferEvaluation(True, calculate_discount(terms, amount))


def count_usages(user_id: int | None, offer_id: int) -> int | None:
    if user_id is None:
        return None
    return (
        db.session.query(func.count(OfferUsage.usage_id))
        .filter(OfferUsage.user_id == user_id, OfferUsage.offer_id == offer_id)
        .scalar()
    ) or 0


def evaluate_offer_for(
    offer_id: int,
    user_id: int | None,
    amount: int,
    salon_id: int,
    now: datetime | None = None,
) -> OfferEvaluation:
    """Evaluate a live offer against the current usage ledger."""
    offer = db.session.get(Offer, offer_id)
    terms = OfferTerms.from_offer(offer) if offer else None
    usage_count = count_usages(user_id, offer_id) if terms else None
    return evaluate_offer(terms, amount, salon_id, now or naive_utc_now(), usage_count)


def record_usage(user_id: int, offer_id: int, booking_id: int, discount: int) -> OfferUsage:
    """Append the next ledger row for ``user_id``/``offer_id``.

    The sequence number is derived from the current count; the unique
    ``(user_id, offer_id, usage_sequence)`` constraint makes two concurrent
    appends collide on flush instead of both succeeding.
    """
    sequence = (count_usages(user_id, offer_id) or 0) + 1
    usage = OfferUsage(
        user_id=user_id,
        offer_id=offer_id,
        booking_id=booking_id,
        discount_applied_cents=discount,
        usage_sequence=sequence,
    )
    db.session.add(usage)
    db.session.flush()
    return usage


def best_offer(
    offers: list[OfferTerms],
    amount: int,
    salon_id: int,
    now: datetime,
    usage_counts: dict[int, int | None] | None = None,
) -> tuple[OfferTerms, OfferEvaluation] | None:
    """Pick the applicable offer with the highest discount; ties go to platform-wide offers."""
    usage_counts = usage_counts or {}
    best: tuple[OfferTerms, OfferEvaluation] | None = None
    for terms in offers:
        evaluation = evaluate_offer(terms, amount, salon_id, now, usage_counts.get(terms.offer_id))
        if not evaluation.eligible:
            continue
        if best is None or evaluation.discount > best[1].discount:
            best = (terms, evaluation)
        elif evaluation.discount == best[1].discount and terms.is_platform_wide and not best[0].is_platform_wide:
            best = (terms, evaluation)
    return best


def price_breakdown(amount: int, evaluation: OfferEvaluation | None) -> dict[str, int]:
    discount = evaluation.discount if evaluation and evaluation.eligible else 0
    return {
        "original_amount_cents": amount,
        "discount_amount_cents": discount,
        "final_amount_cents": amount - discount,
        "savings_percentage": (discount * 100) // amount if amount > 0 else 0,
    }
