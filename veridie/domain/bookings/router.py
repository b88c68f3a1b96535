"""Booking router - FastAPI endpoints for checkout and booking lookups"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...config import CalendlyOAuthConfig
from ...database import get_db
from ...services.calendly_service import CalendlyService
from ...services.stripe_service import StripeService
from .schemas import BookingResponse, CheckoutRequest, CheckoutResponse
from .service import BookingService, booking_to_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def get_stripe_service() -> StripeService:
    return StripeService()


def get_booking_service(
    db: Session = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db, stripe_service, CalendlyService(CalendlyOAuthConfig.from_env()))


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(
    data: CheckoutRequest,
    service: BookingService = Depends(get_booking_service),
):
    """Create a pending booking and a Stripe Checkout Session for it"""
    logger.info(f"📥 Checkout requested for mentor {data.mentorId}, service {data.serviceId}")
    return service.create_checkout(data)


@router.get("/{booking_id}", response_model=BookingResponse)
def get_booking(booking_id: str, service: BookingService = Depends(get_booking_service)):
    """Get a booking by id"""
    return booking_to_response(service.get_booking(booking_id))
