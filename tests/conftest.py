"""pytest configuration: path management, app fixtures and test data helpers."""
from __future__ import annotations

import json
import sys
from datetime import datetime, time
from pathlib import Path

import pytest

# Ensure the project root is available on sys.path so tests can import the app package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from app import create_app  # noqa: E402
from app.errors import AuthenticityError, UpstreamError  # noqa: E402
from app.extensions import db  # noqa: E402
from app.gateway import SUCCEEDED, ProviderOrder, ProviderPayment, StripeGateway  # noqa: E402
from app.models import (AvailabilityPattern, Offer, Salon, Service,  # noqa: E402
                        Staff, User)

# 2030-01-07 is a Monday.
FUTURE_MONDAY = datetime(2030, 1, 7, 10, 0)

WEBHOOK_SIGNATURE = "t=1,v1=valid"


class FakeGateway(StripeGateway):
    """In-memory provider. Orders succeed unless a test swaps in another report."""

    def __init__(self) -> None:
        super().__init__(api_key="sk_test", webhook_secret="whsec_test")
        self.reports: dict[str, ProviderPayment] = {}
        self.fail_create = False
        self.fail_fetch = False
        self.created = 0

    def create_order(self, amount, currency, metadata):
        if self.fail_create:
            raise UpstreamError("An error occurred while processing the payment.")
        self.created += 1
        order_id = f"pi_test_{self.created}"
        self.reports[order_id] = ProviderPayment(
            order_id=order_id,
            payment_id=f"ch_test_{self.created}",
            amount=amount,
            currency=currency,
            status=SUCCEEDED,
            client_secret=f"{order_id}_secret",
        )
        return ProviderOrder(order_id=order_id, client_secret=f"{order_id}_secret")

    def fetch_payment(self, order_id):
        if self.fail_fetch:
            raise UpstreamError("Failed to retrieve payment from the provider.")
        return self.reports[order_id]

    def construct_webhook_event(self, payload, signature_header):
        if signature_header != WEBHOOK_SIGNATURE:
            raise AuthenticityError("Invalid webhook signature")
        return json.loads(payload)


class Factory:
    """Creates and commits rows; call inside an application context."""

    def __init__(self) -> None:
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def _save(self, obj):
        db.session.add(obj)
        db.session.commit()
        return obj

    def user(self, role: str = "client", **kwargs) -> User:
        n = self._next()
        kwargs.setdefault("name", f"User {n}")
        kwargs.setdefault("email", f"user{n}@example.com")
        return self._save(User(role=role, **kwargs))

    def salon(self, scheduling_mode: str = "per_staff", **kwargs) -> Salon:
        kwargs.setdefault("name", f"Salon {self._next()}")
        return self._save(Salon(scheduling_mode=scheduling_mode, **kwargs))

    def staff(self, salon: Salon, **kwargs) -> Staff:
        kwargs.setdefault("title", "Stylist")
        return self._save(Staff(salon_id=salon.salon_id, **kwargs))

    def service(self, salon: Salon, price_cents: int = 50000, duration_minutes: int = 60, **kwargs) -> Service:
        kwargs.setdefault("name", f"Service {self._next()}")
        kwargs.setdefault("currency", "usd")
        return self._save(
            Service(salon_id=salon.salon_id, price_cents=price_cents, duration_minutes=duration_minutes, **kwargs)
        )

    def offer(self, salon: Salon | None = None, **kwargs) -> Offer:
        kwargs.setdefault("title", "Spring special")
        kwargs.setdefault("discount_type", "percentage")
        kwargs.setdefault("discount_value", 20)
        kwargs.setdefault("valid_from", datetime(2020, 1, 1))
        kwargs.setdefault("valid_until", datetime(2099, 1, 1))
        kwargs.setdefault("approval_status", "approved")
        kwargs.setdefault("is_platform_wide", salon is None)
        return self._save(Offer(salon_id=salon.salon_id if salon else None, **kwargs))

    def pattern(self, salon: Salon, staff: Staff | None = None, **kwargs) -> AvailabilityPattern:
        kwargs.setdefault("day_of_week", 1)
        kwargs.setdefault("start_time", time(9, 0))
        kwargs.setdefault("end_time", time(11, 0))
        kwargs.setdefault("slot_duration_minutes", 30)
        return self._save(
            AvailabilityPattern(salon_id=salon.salon_id, staff_id=staff.staff_id if staff else None, **kwargs)
        )


@pytest.fixture
def app():
    flask_app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": "sqlite://",
            "SECRET_KEY": "test-secret",
            "STRIPE_SECRET_KEY": "sk_test",
            "STRIPE_WEBHOOK_SECRET": "whsec_test",
        }
    )
    with flask_app.app_context():
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def gateway(app) -> FakeGateway:
    fake = FakeGateway()
    app.extensions["payment_gateway"] = fake
    return fake


@pytest.fixture
def factory(app) -> Factory:
    return Factory()
