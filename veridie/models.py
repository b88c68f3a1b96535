import enum
import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_uuid():
    """Generate a string UUID primary key"""
    return str(uuid.uuid4())


class BookingStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    REFUNDED = "refunded"


class Mentor(Base):
    __tablename__ = "mentors"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")

    # Stripe Connect destination account for session payouts
    stripe_connect_account_id = Column(String(255), unique=True, index=True, nullable=True)
    stripe_details_submitted = Column(Boolean, default=False, nullable=False)
    stripe_charges_enabled = Column(Boolean, default=False, nullable=False)
    stripe_payouts_enabled = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    services = relationship("Service", back_populates="mentor")
    calendly_credential = relationship(
        "CalendlyCredential", back_populates="mentor", uselist=False
    )


class Profile(Base):
    """Authenticated marketplace client"""

    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    full_name = Column(String(255), nullable=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Service(Base):
    __tablename__ = "services"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    mentor_id = Column(String(36), ForeignKey("mentors.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price_cents = Column(Integer, nullable=False, default=0)
    stripe_price_id = Column(String(255), nullable=True)
    calendly_event_type_uri = Column(String(500), nullable=True)
    # Public booking page for the event type; checkout links carry a booking token to it
    calendly_scheduling_url = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    mentor = relationship("Mentor", back_populates="services")


class CalendlyCredential(Base):
    """
    A mentor's Calendly OAuth connection.

    Token columns hold Fernet ciphertext; only the credential store reads or
    writes them. A row with a null access_token is disconnected.
    """

    __tablename__ = "calendly_credentials"
    __table_args__ = (
        CheckConstraint(
            "access_token IS NULL OR token_expires_at IS NOT NULL",
            name="ck_calendly_credentials_expiry_present",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    mentor_id = Column(String(36), ForeignKey("mentors.id"), nullable=False, unique=True)

    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)

    # Calendly user info, required for subsequent API calls
    calendly_user_uri = Column(String(500), nullable=True, index=True)
    calendly_organization_uri = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    mentor = relationship("Mentor", back_populates="calendly_credential")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint(
            "(client_id IS NOT NULL AND guest_email IS NULL AND guest_name IS NULL) OR "
            "(client_id IS NULL AND guest_email IS NOT NULL AND guest_name IS NOT NULL)",
            name="ck_bookings_client_identity",
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    mentor_id = Column(String(36), ForeignKey("mentors.id"), nullable=False, index=True)
    service_id = Column(String(36), ForeignKey("services.id"), nullable=True, index=True)

    # Either an authenticated client or a guest, never both
    client_id = Column(String(36), ForeignKey("profiles.id"), nullable=True, index=True)
    guest_name = Column(String(255), nullable=True)
    guest_email = Column(String(255), nullable=True, index=True)

    date = Column(Date, nullable=False)
    time = Column(Time, nullable=True)
    status = Column(String(32), nullable=False, default=BookingStatus.PENDING_PAYMENT.value)

    # Idempotency keys for payment and scheduling webhooks
    payment_reference = Column(String(255), unique=True, nullable=True)
    scheduling_event_reference = Column(String(500), unique=True, nullable=True)

    checkout_session_id = Column(String(255), unique=True, nullable=True)
    meeting_url = Column(String(500), nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    mentor = relationship("Mentor")
    service = relationship("Service")
    client = relationship("Profile")

    __mapper_args__ = {"version_id_col": version}

    @property
    def client_email(self):
        if self.client is not None:
            return self.client.email
        return self.guest_email


class WebhookEvent(Base):
    """Append-only ledger of webhook deliveries and how they were reconciled"""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(32), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    external_id = Column(String(500), nullable=True, index=True)
    outcome = Column(String(32), nullable=False, index=True)
    booking_id = Column(String(36), nullable=True, index=True)
    detail = Column(Text, nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now())
