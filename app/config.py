"""Default configuration for the booking engine."""
from __future__ import annotations

import os


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return int(value)


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///salonbook.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Stripe is the payment provider. Webhooks are signed with the endpoint secret.
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "usd")

    SLOT_HORIZON_DAYS = _int_env("SLOT_HORIZON_DAYS", 90)
    BOOKING_CLAIM_GRANULARITY_MINUTES = _int_env("BOOKING_CLAIM_GRANULARITY_MINUTES", 5)
    PENDING_BOOKING_GRACE_MINUTES = _int_env("PENDING_BOOKING_GRACE_MINUTES", 30)
    REMINDER_OFFSETS_MINUTES = [24 * 60, 120]

    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")
