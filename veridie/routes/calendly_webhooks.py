"""
Calendly Webhook Routes
Applies Calendly invitee events to bookings
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..config import CALENDLY_WEBHOOK_SECRET
from ..database import get_db
from ..domain.bookings.events import CALENDLY, parse_calendly_event
from ..domain.bookings.reconciler import EventReconciler
from ..rate_limiter import create_rate_limiter
from ..webhook_security import CalendlyWebhookVerifier, VerificationFailed, read_verified_body

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/calendly", tags=["calendly-webhooks"])

# Rate limiter for webhooks - 100 requests per minute
rate_limit_webhook = create_rate_limiter(
    limit=100,
    window_seconds=60,
    key_prefix="webhook_calendly",
    use_ip=False,  # Global limit for all webhooks
)


def get_calendly_verifier() -> CalendlyWebhookVerifier:
    return CalendlyWebhookVerifier(CALENDLY_WEBHOOK_SECRET)


@router.post("/events")
async def handle_calendly_webhook(
    request: Request,
    db: Session = Depends(get_db),
    verifier: CalendlyWebhookVerifier = Depends(get_calendly_verifier),
    _: None = Depends(rate_limit_webhook),
):
    """
    Handle Calendly webhook events - Rate limited to 100 requests per minute
    Supported events: invitee.created, invitee.canceled

    Responses:
    - 401: signature invalid or payload does not match the event schema
    - 500: event could not be applied (Calendly retries)
    - 200: applied, already applied, or deliberately ignored
    """
    try:
        body = await read_verified_body(request, verifier)
        event = parse_calendly_event(body)
        logger.debug(f"📥 Received Calendly webhook: {event.event_type}")

        result = EventReconciler(db).apply_event(CALENDLY, event)
        if not result.acknowledged:
            raise HTTPException(status_code=500, detail=f"Event not reconciled: {result.detail}")

        return {"received": True}

    except VerificationFailed as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Calendly webhook processing error: {str(e)}")
        logger.exception("Full webhook error traceback:")
        raise HTTPException(status_code=500, detail="Webhook processing failed") from e
