"""Booking repository - Database operations for bookings and the webhook ledger"""

from datetime import date, time
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import (
    Booking,
    BookingStatus,
    CalendlyCredential,
    Mentor,
    Profile,
    Service,
    WebhookEvent,
)

OPEN_STATUSES = (BookingStatus.PENDING_PAYMENT.value, BookingStatus.CONFIRMED.value)


class BookingRepository:
    """Repository for booking database operations"""

    @staticmethod
    def get_booking(db: Session, booking_id: str) -> Optional[Booking]:
        return db.query(Booking).filter(Booking.id == booking_id).first()

    @staticmethod
    def get_by_scheduling_reference(db: Session, reference: str) -> Optional[Booking]:
        return db.query(Booking).filter(Booking.scheduling_event_reference == reference).first()

    @staticmethod
    def get_by_payment_reference(db: Session, reference: str) -> Optional[Booking]:
        return db.query(Booking).filter(Booking.payment_reference == reference).first()

    @staticmethod
    def get_by_checkout_session(db: Session, session_id: str) -> Optional[Booking]:
        return db.query(Booking).filter(Booking.checkout_session_id == session_id).first()

    @staticmethod
    def find_unscheduled_booking(
        db: Session, mentor_id: str, service_id: Optional[str], email: str, day: Optional[date] = None
    ) -> Optional[Booking]:
        """
        Find an open booking for this mentor and client that has no scheduling
        reference yet. Bookings on `day` win over bookings on other days.
        """
        query = (
            db.query(Booking)
            .outerjoin(Profile, Booking.client_id == Profile.id)
            .filter(
                Booking.mentor_id == mentor_id,
                Booking.scheduling_event_reference.is_(None),
                Booking.status.in_(OPEN_STATUSES),
                (func.lower(Booking.guest_email) == email) | (func.lower(Profile.email) == email),
            )
        )
        if service_id:
            query = query.filter(Booking.service_id == service_id)

        candidates = query.order_by(Booking.created_at.desc()).all()
        if not candidates:
            return None
        if day is not None:
            for booking in candidates:
                if booking.date == day:
                    return booking
        return candidates[0]

    @staticmethod
    def find_attachable_booking(
        db: Session, mentor_id: str, service_id: str, client_id: Optional[str], guest_email: Optional[str], day: date
    ) -> Optional[Booking]:
        """A scheduling-created booking for the same slot that has not been paid for yet"""
        query = db.query(Booking).filter(
            Booking.mentor_id == mentor_id,
            Booking.service_id == service_id,
            Booking.date == day,
            Booking.payment_reference.is_(None),
            Booking.checkout_session_id.is_(None),
            Booking.scheduling_event_reference.isnot(None),
            Booking.status.in_(OPEN_STATUSES),
        )
        if client_id:
            query = query.filter(Booking.client_id == client_id)
        else:
            query = query.filter(Booking.guest_email == guest_email)
        return query.first()

    @staticmethod
    def create_booking(
        db: Session,
        mentor_id: str,
        service_id: Optional[str],
        day: date,
        start: Optional[time],
        status: BookingStatus,
        client_id: Optional[str] = None,
        guest_name: Optional[str] = None,
        guest_email: Optional[str] = None,
        scheduling_event_reference: Optional[str] = None,
        meeting_url: Optional[str] = None,
    ) -> Booking:
        """Stage a new booking; the caller owns the commit"""
        booking = Booking(
            mentor_id=mentor_id,
            service_id=service_id,
            date=day,
            time=start,
            status=status.value,
            client_id=client_id,
            guest_name=None if client_id else guest_name,
            guest_email=None if client_id else guest_email,
            scheduling_event_reference=scheduling_event_reference,
            meeting_url=meeting_url,
        )
        db.add(booking)
        db.flush()
        return booking

    @staticmethod
    def get_mentor(db: Session, mentor_id: str) -> Optional[Mentor]:
        return db.query(Mentor).filter(Mentor.id == mentor_id).first()

    @staticmethod
    def get_mentor_by_calendly_users(db: Session, user_uris: list[str]) -> Optional[Mentor]:
        """Resolve the mentor whose connected Calendly account hosts the event"""
        if not user_uris:
            return None
        credential = (
            db.query(CalendlyCredential)
            .filter(CalendlyCredential.calendly_user_uri.in_(user_uris))
            .first()
        )
        return credential.mentor if credential else None

    @staticmethod
    def get_calendly_user_uri(db: Session, mentor_id: str) -> Optional[str]:
        credential = (
            db.query(CalendlyCredential).filter(CalendlyCredential.mentor_id == mentor_id).first()
        )
        return credential.calendly_user_uri if credential else None

    @staticmethod
    def get_mentor_by_connect_account(db: Session, account_id: str) -> Optional[Mentor]:
        return db.query(Mentor).filter(Mentor.stripe_connect_account_id == account_id).first()

    @staticmethod
    def get_service(db: Session, service_id: str) -> Optional[Service]:
        return db.query(Service).filter(Service.id == service_id).first()

    @staticmethod
    def get_profile(db: Session, profile_id: str) -> Optional[Profile]:
        return db.query(Profile).filter(Profile.id == profile_id).first()

    @staticmethod
    def get_profile_by_email(db: Session, email: str) -> Optional[Profile]:
        return db.query(Profile).filter(func.lower(Profile.email) == email.lower()).first()

    @staticmethod
    def record_webhook_event(
        db: Session,
        provider: str,
        event_type: str,
        outcome: str,
        external_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> WebhookEvent:
        """Append a ledger row and commit it"""
        row = WebhookEvent(
            provider=provider,
            event_type=event_type,
            external_id=external_id,
            outcome=outcome,
            booking_id=booking_id,
            detail=detail,
        )
        db.add(row)
        db.commit()
        return row
