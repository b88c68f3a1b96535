"""
Stripe Webhook Routes
Applies Stripe payment, refund and Connect account events
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..config import STRIPE_WEBHOOK_SECRET
from ..database import get_db
from ..domain.bookings.events import STRIPE, parse_stripe_event
from ..domain.bookings.reconciler import EventReconciler
from ..rate_limiter import create_rate_limiter
from ..webhook_security import StripeWebhookVerifier, VerificationFailed, read_verified_body

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["stripe-webhooks"])

rate_limit_webhook = create_rate_limiter(
    limit=100,
    window_seconds=60,
    key_prefix="webhook_stripe",
    use_ip=False,
)


def get_stripe_verifier() -> StripeWebhookVerifier:
    return StripeWebhookVerifier(STRIPE_WEBHOOK_SECRET)


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    verifier: StripeWebhookVerifier = Depends(get_stripe_verifier),
    _: None = Depends(rate_limit_webhook),
):
    """
    Handle Stripe webhook events - Rate limited to 100 requests per minute
    Supported events: checkout.session.*, payment_intent.succeeded (declines are logged only),
    charge.refunded, account.updated
    """
    try:
        body = await read_verified_body(request, verifier)
        event = parse_stripe_event(body)
        logger.debug(f"📥 Received Stripe webhook: {event.event_type} ({event.external_id})")

        result = EventReconciler(db).apply_event(STRIPE, event)
        if not result.acknowledged:
            raise HTTPException(status_code=500, detail=f"Event not reconciled: {result.detail}")

        return {"received": True}

    except VerificationFailed as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Stripe webhook processing error: {str(e)}")
        logger.exception("Full webhook error traceback:")
        raise HTTPException(status_code=500, detail="Webhook processing failed") from e
