"""Booking service - Checkout and booking lookups"""

import logging

import stripe
from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models import Booking, BookingStatus
from ...services.calendly_service import CalendlyService
from ...services.stripe_service import StripeNotConfigured, StripeService
from .repository import BookingRepository
from .schemas import BookingResponse, CheckoutRequest, CheckoutResponse

logger = logging.getLogger(__name__)


def booking_to_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        mentorId=booking.mentor_id,
        serviceId=booking.service_id,
        clientId=booking.client_id,
        guestName=booking.guest_name,
        guestEmail=booking.guest_email,
        date=booking.date,
        time=booking.time,
        status=booking.status,
        paymentReference=booking.payment_reference,
        schedulingEventReference=booking.scheduling_event_reference,
        meetingUrl=booking.meeting_url,
        created_at=booking.created_at,
    )


class BookingService:
    """Service layer for checkout; status changes after checkout belong to the reconciler"""

    def __init__(self, db: Session, stripe_service: StripeService, calendly: CalendlyService):
        self.db = db
        self.stripe = stripe_service
        self.calendly = calendly
        self.repo = BookingRepository()

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.repo.get_booking(self.db, booking_id)
        if not booking:
            raise HTTPException(status_code=404, detail="Booking not found")
        return booking

    def create_checkout(self, data: CheckoutRequest) -> CheckoutResponse:
        """
        Create (or reuse) a pending booking and its Stripe Checkout Session.

        A booking that was created from a Calendly event for the same mentor,
        service, client and day and has not been paid for is reused rather than
        duplicated.
        """
        if not self.stripe.is_available():
            raise HTTPException(status_code=503, detail="Payments are not configured")

        mentor = self.repo.get_mentor(self.db, data.mentorId)
        if not mentor:
            raise HTTPException(status_code=404, detail="Mentor not found")
        service = self.repo.get_service(self.db, data.serviceId)
        if not service or service.mentor_id != mentor.id:
            raise HTTPException(status_code=404, detail="Service not found for this mentor")
        if not mentor.stripe_connect_account_id or not mentor.stripe_charges_enabled:
            raise HTTPException(status_code=409, detail="Mentor cannot accept payments yet")

        customer_email = data.guestEmail
        customer_name = data.guestName
        if data.clientId:
            profile = self.repo.get_profile(self.db, data.clientId)
            if not profile:
                raise HTTPException(status_code=404, detail="Client not found")
            customer_email = profile.email
            customer_name = profile.full_name

        booking = self.repo.find_attachable_booking(
            self.db, mentor.id, service.id, data.clientId, data.guestEmail, data.date
        )
        if booking:
            logger.info(f"🔗 Reusing scheduled booking {booking.id} for checkout")
        else:
            booking = self.repo.create_booking(
                self.db,
                mentor_id=mentor.id,
                service_id=service.id,
                day=data.date,
                start=data.time,
                status=BookingStatus.PENDING_PAYMENT,
                client_id=data.clientId,
                guest_name=data.guestName,
                guest_email=data.guestEmail,
            )

        metadata = {
            "bookingId": booking.id,
            "mentorId": mentor.id,
            "serviceId": service.id,
            "date": data.date.isoformat(),
            "time": data.time.strftime("%H:%M") if data.time else "",
            "clientId": data.clientId or "",
        }

        try:
            session = self.stripe.create_checkout_session(
                booking_id=booking.id,
                service_name=service.name,
                price_cents=service.price_cents,
                connect_account_id=mentor.stripe_connect_account_id,
                customer_email=customer_email,
                metadata=metadata,
            )
        except StripeNotConfigured as e:
            self.db.rollback()
            raise HTTPException(status_code=503, detail=str(e)) from e
        except stripe.StripeError as e:
            self.db.rollback()
            raise HTTPException(status_code=502, detail="Payment provider error") from e

        booking.checkout_session_id = session.id
        if session.payment_intent:
            booking.payment_reference = session.payment_intent
        self.db.commit()
        self.db.refresh(booking)
        logger.info(f"✅ Checkout ready for booking {booking.id} (session {session.id})")

        scheduling_url = None
        if service.calendly_scheduling_url and not booking.scheduling_event_reference:
            scheduling_url = self.calendly.generate_scheduling_link(
                service.calendly_scheduling_url,
                prefill_data={"name": customer_name, "email": customer_email},
                booking_id=booking.id,
            )

        return CheckoutResponse(
            bookingId=booking.id,
            checkoutSessionId=session.id,
            checkoutUrl=session.url,
            schedulingUrl=scheduling_url,
        )
