"""Stripe service - Checkout Sessions for paid mentoring sessions"""

import logging
from dataclasses import dataclass
from typing import Optional

import stripe

from ..config import FRONTEND_URL, PLATFORM_FEE_PERCENT, STRIPE_CURRENCY, STRIPE_SECRET_KEY

logger = logging.getLogger(__name__)


class StripeNotConfigured(Exception):
    """Raised when a Stripe call is attempted without STRIPE_SECRET_KEY"""

    pass


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: Optional[str]
    payment_intent: Optional[str]


def application_fee_cents(price_cents: int, fee_percent: float = PLATFORM_FEE_PERCENT) -> int:
    """Platform share of a session price, rounded to the nearest cent"""
    return int(round(price_cents * fee_percent / 100))


class StripeService:
    """Service for Stripe Checkout operations"""

    def __init__(self, api_key: Optional[str] = STRIPE_SECRET_KEY, currency: str = STRIPE_CURRENCY):
        self.api_key = api_key
        self.currency = currency
        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY not set; checkout endpoints will fail until configured")

    def is_available(self) -> bool:
        """Check if Stripe is configured"""
        return bool(self.api_key)

    def create_checkout_session(
        self,
        *,
        booking_id: str,
        service_name: str,
        price_cents: int,
        connect_account_id: str,
        customer_email: Optional[str],
        metadata: dict[str, str],
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Create a Checkout Session that pays the mentor's Connect account minus
        the platform fee. `metadata` is copied onto the PaymentIntent as well so
        payment_intent.* webhooks can be correlated.
        """
        if not self.is_available():
            raise StripeNotConfigured("Stripe is not configured: set STRIPE_SECRET_KEY")

        params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "unit_amount": price_cents,
                        "product_data": {"name": service_name},
                    },
                    "quantity": 1,
                }
            ],
            "payment_intent_data": {
                "application_fee_amount": application_fee_cents(price_cents),
                "transfer_data": {"destination": connect_account_id},
                "metadata": metadata,
                "transfer_group": f"booking:{booking_id}",
            },
            "metadata": metadata,
            "client_reference_id": booking_id,
            "success_url": success_url
            or f"{FRONTEND_URL}/bookings/{booking_id}?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": cancel_url or f"{FRONTEND_URL}/bookings/{booking_id}?checkout=cancelled",
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error(f"❌ Failed to create Stripe checkout session for booking {booking_id}: {e}")
            raise

        logger.info(f"💳 Stripe checkout session {session.id} created for booking {booking_id}")
        return CheckoutSession(
            id=session.id,
            url=session.get("url"),
            payment_intent=session.get("payment_intent"),
        )
