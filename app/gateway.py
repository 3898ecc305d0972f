"""Stripe payment gateway adapter."""
from __future__ import annotations

import hmac
import json
from dataclasses import dataclass

import stripe
from flask import current_app

from .errors import AuthenticityError, UpstreamError

SUCCEEDED = "succeeded"
FAILED = "failed"
PENDING = "pending"

_STRIPE_STATUS_MAP = {
    "succeeded": SUCCEEDED,
    "canceled": FAILED,
    "requires_payment_method": PENDING,
    "requires_confirmation": PENDING,
    "requires_action": PENDING,
    "requires_capture": PENDING,
    "processing": PENDING,
}


@dataclass(frozen=True)
class ProviderOrder:
    order_id: str
    client_secret: str | None = None


@dataclass(frozen=True)
class ProviderPayment:
    """What the provider reports about a payment attempt."""

    order_id: str
    payment_id: str | None
    amount: int
    currency: str
    status: str
    failure_reason: str | None = None
    client_secret: str | None = None


def normalize_status(provider_status: str | None) -> str:
    return _STRIPE_STATUS_MAP.get(provider_status or "", PENDING)


def payment_from_intent(intent, status: str | None = None) -> ProviderPayment:
    """Build a ProviderPayment from a PaymentIntent object or webhook payload dict."""
    get = intent.get if isinstance(intent, dict) else lambda key, default=None: getattr(intent, key, default)
    error = get("last_payment_error") or {}
    failure_reason = error.get("message") if isinstance(error, dict) else getattr(error, "message", None)
    if not failure_reason and get("status") == "canceled":
        failure_reason = get("cancellation_reason") or "canceled"
    return ProviderPayment(
        order_id=get("id"),
        payment_id=get("latest_charge") or get("id"),
        amount=int(get("amount") or 0),
        currency=(get("currency") or "").lower(),
        status=status or normalize_status(get("status")),
        failure_reason=failure_reason,
        client_secret=get("client_secret"),
    )


class StripeGateway:
    """Opens orders, fetches payments and authenticates callbacks."""

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    @classmethod
    def from_config(cls) -> "StripeGateway":
        config = current_app.config
        return cls(
            api_key=config.get("STRIPE_SECRET_KEY"),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
        )

    def _require_key(self) -> None:
        if not self.api_key:
            current_app.logger.warning("Stripe secret key not configured")
            raise UpstreamError("Payments are not currently available. Please contact support.")
        stripe.api_key = self.api_key

    def create_order(self, amount: int, currency: str, metadata: dict[str, str]) -> ProviderOrder:
        self._require_key()
        try:
            intent = stripe.PaymentIntent.create(amount=int(amount), currency=currency, metadata=metadata)
        except stripe.StripeError as exc:
            current_app.logger.exception("Stripe API error while creating payment intent", exc_info=exc)
            raise UpstreamError("An error occurred while processing the payment.") from exc
        return ProviderOrder(order_id=intent.id, client_secret=getattr(intent, "client_secret", None))

    def fetch_payment(self, order_id: str) -> ProviderPayment:
        self._require_key()
        try:
            intent = stripe.PaymentIntent.retrieve(order_id)
        except stripe.StripeError as exc:
            current_app.logger.exception("Stripe API error while retrieving payment intent", exc_info=exc)
            raise UpstreamError("Failed to retrieve payment from the provider.") from exc
        return payment_from_intent(intent)

    def construct_webhook_event(self, payload: bytes, signature_header: str | None) -> dict:
        """Verify the signature and return the event as a plain dict."""
        if not self.webhook_secret:
            current_app.logger.error("Stripe webhook secret not configured - webhooks will not be processed")
            raise UpstreamError("Webhook processing is not configured.")
        try:
            stripe.Webhook.construct_event(payload, signature_header, self.webhook_secret)
        except ValueError as exc:
            raise AuthenticityError("Invalid webhook payload") from exc
        except stripe.SignatureVerificationError as exc:
            raise AuthenticityError("Invalid webhook signature") from exc
        return json.loads(payload)

    @staticmethod
    def client_secret_matches(report: ProviderPayment, client_secret: str | None) -> bool:
        """Compare the caller's client secret with the one on the retrieved intent."""
        if not client_secret or not report.client_secret:
            return False
        return hmac.compare_digest(report.client_secret, client_secret)


def get_gateway() -> StripeGateway:
    gateway = current_app.extensions.get("payment_gateway")
    if gateway is None:
        gateway = StripeGateway.from_config()
    return gateway
