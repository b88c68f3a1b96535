"""
Provider webhook events.

Raw deliveries are parsed only after their signature has been verified. Each
provider event kind has a pydantic schema; a delivery that does not conform is
rejected with VerificationFailed instead of being half-parsed. The result is
one of a closed set of event dataclasses (ProviderEvent) that the reconciler
matches exhaustively.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from pydantic import BaseModel, ValidationError

from ...webhook_security import VerificationFailed

logger = logging.getLogger(__name__)

CALENDLY = "calendly"
STRIPE = "stripe"

BOOKING_TOKEN_PREFIX = "booking:"


@dataclass(frozen=True)
class CorrelationHints:
    """Identifiers carried inside a provider payload. Untrusted: used to find a booking, never to authorize."""

    booking_id: Optional[str] = None
    mentor_id: Optional[str] = None
    service_id: Optional[str] = None
    client_id: Optional[str] = None
    client_email: Optional[str] = None


@dataclass(frozen=True)
class SchedulingBookingCreated:
    event_reference: str
    invitee_uri: str
    invitee_email: str
    invitee_name: Optional[str]
    start_time: datetime
    meeting_url: Optional[str] = None
    host_user_uris: tuple[str, ...] = ()
    hints: CorrelationHints = field(default_factory=CorrelationHints)
    provider: str = CALENDLY
    event_type: str = "invitee.created"

    @property
    def external_id(self) -> str:
        return f"{self.invitee_uri}#{self.event_type}"


@dataclass(frozen=True)
class SchedulingBookingCanceled:
    event_reference: str
    invitee_uri: str
    reason: Optional[str] = None
    provider: str = CALENDLY
    event_type: str = "invitee.canceled"

    @property
    def external_id(self) -> str:
        return f"{self.invitee_uri}#{self.event_type}"


@dataclass(frozen=True)
class PaymentSucceeded:
    event_id: str
    event_type: str
    payment_reference: Optional[str]
    checkout_session_id: Optional[str] = None
    hints: CorrelationHints = field(default_factory=CorrelationHints)
    provider: str = STRIPE

    @property
    def external_id(self) -> str:
        return self.event_id


@dataclass(frozen=True)
class PaymentFailed:
    event_id: str
    event_type: str
    payment_reference: Optional[str]
    checkout_session_id: Optional[str] = None
    hints: CorrelationHints = field(default_factory=CorrelationHints)
    provider: str = STRIPE

    @property
    def external_id(self) -> str:
        return self.event_id


@dataclass(frozen=True)
class PaymentRefunded:
    event_id: str
    event_type: str
    payment_reference: str
    provider: str = STRIPE

    @property
    def external_id(self) -> str:
        return self.event_id


@dataclass(frozen=True)
class ConnectAccountUpdated:
    event_id: str
    account_id: str
    details_submitted: bool
    charges_enabled: bool
    payouts_enabled: bool
    provider: str = STRIPE
    event_type: str = "account.updated"

    @property
    def external_id(self) -> str:
        return self.event_id


@dataclass(frozen=True)
class IgnoredEvent:
    provider: str
    event_type: str
    external_id: Optional[str] = None


ProviderEvent = Union[
    SchedulingBookingCreated,
    SchedulingBookingCanceled,
    PaymentSucceeded,
    PaymentFailed,
    PaymentRefunded,
    ConnectAccountUpdated,
    IgnoredEvent,
]


# ============================================================================
# CALENDLY SCHEMAS
# ============================================================================


class CalendlyEnvelope(BaseModel):
    event: str
    payload: dict


class CalendlyQuestionAnswer(BaseModel):
    question: str
    answer: Optional[str] = None


class CalendlyTracking(BaseModel):
    utm_source: Optional[str] = None
    utm_content: Optional[str] = None


class CalendlyLocation(BaseModel):
    type: Optional[str] = None
    join_url: Optional[str] = None
    location: Optional[str] = None


class CalendlyMembership(BaseModel):
    user: str


class CalendlyScheduledEvent(BaseModel):
    uri: str
    start_time: datetime
    end_time: Optional[datetime] = None
    location: Optional[CalendlyLocation] = None
    event_memberships: list[CalendlyMembership] = []


class CalendlyInviteePayload(BaseModel):
    uri: str
    email: str
    name: Optional[str] = None
    scheduled_event: CalendlyScheduledEvent
    questions_and_answers: list[CalendlyQuestionAnswer] = []
    tracking: Optional[CalendlyTracking] = None


class CalendlyCancellation(BaseModel):
    reason: Optional[str] = None
    canceled_by: Optional[str] = None


class CalendlyCanceledPayload(BaseModel):
    uri: str
    scheduled_event: CalendlyScheduledEvent
    cancellation: Optional[CalendlyCancellation] = None


def _answer_value(answer: Optional[str], label: str) -> Optional[str]:
    if not answer:
        return None
    value = answer.strip()
    prefix = f"{label}:"
    if value.lower().startswith(prefix.lower()):
        value = value[len(prefix) :].strip()
    return value or None


def _calendly_hints(payload: CalendlyInviteePayload) -> CorrelationHints:
    booking_id = None
    if payload.tracking and payload.tracking.utm_content:
        token = payload.tracking.utm_content.strip()
        if token.startswith(BOOKING_TOKEN_PREFIX):
            booking_id = token[len(BOOKING_TOKEN_PREFIX) :] or None

    # Legacy correlation: free-text answers to "Mentor ID" / "Service ID" questions
    mentor_id = service_id = None
    for qa in payload.questions_and_answers:
        question = qa.question.lower()
        if "mentor id" in question:
            mentor_id = _answer_value(qa.answer, "Mentor ID")
        elif "service id" in question:
            service_id = _answer_value(qa.answer, "Service ID")
        elif "booking id" in question and booking_id is None:
            booking_id = _answer_value(qa.answer, "Booking ID")

    return CorrelationHints(
        booking_id=booking_id,
        mentor_id=mentor_id,
        service_id=service_id,
        client_email=payload.email.strip().lower(),
    )


def _load_json(raw_body: bytes, provider: str) -> dict:
    try:
        data = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise VerificationFailed(f"{provider} webhook body is not valid JSON") from e
    if not isinstance(data, dict):
        raise VerificationFailed(f"{provider} webhook body is not a JSON object")
    return data


def parse_calendly_event(raw_body: bytes) -> ProviderEvent:
    """Parse a verified Calendly delivery into a ProviderEvent"""
    data = _load_json(raw_body, CALENDLY)
    try:
        envelope = CalendlyEnvelope.model_validate(data)
        if envelope.event == "invitee.created":
            payload = CalendlyInviteePayload.model_validate(envelope.payload)
            location = payload.scheduled_event.location
            return SchedulingBookingCreated(
                event_reference=payload.scheduled_event.uri,
                invitee_uri=payload.uri,
                invitee_email=payload.email.strip().lower(),
                invitee_name=payload.name,
                start_time=payload.scheduled_event.start_time,
                meeting_url=location.join_url if location else None,
                host_user_uris=tuple(m.user for m in payload.scheduled_event.event_memberships),
                hints=_calendly_hints(payload),
            )
        if envelope.event == "invitee.canceled":
            payload = CalendlyCanceledPayload.model_validate(envelope.payload)
            return SchedulingBookingCanceled(
                event_reference=payload.scheduled_event.uri,
                invitee_uri=payload.uri,
                reason=payload.cancellation.reason if payload.cancellation else None,
            )
    except ValidationError as e:
        logger.warning(f"🚫 Calendly payload does not match schema: {e.error_count()} errors")
        raise VerificationFailed("Calendly payload does not match the expected schema") from e

    return IgnoredEvent(provider=CALENDLY, event_type=envelope.event)


# ============================================================================
# STRIPE SCHEMAS
# ============================================================================


class StripeEventData(BaseModel):
    object: dict


class StripeEnvelope(BaseModel):
    id: str
    type: str
    data: StripeEventData
    account: Optional[str] = None


class StripeCheckoutSession(BaseModel):
    id: str
    payment_intent: Optional[str] = None
    payment_status: Optional[str] = None
    metadata: dict[str, str] = {}


class StripePaymentError(BaseModel):
    message: Optional[str] = None


class StripePaymentIntent(BaseModel):
    id: str
    metadata: dict[str, str] = {}
    last_payment_error: Optional[StripePaymentError] = None


class StripeCharge(BaseModel):
    id: str
    payment_intent: str
    amount: int
    amount_refunded: int = 0
    refunded: bool = False


class StripeAccount(BaseModel):
    id: str
    details_submitted: bool = False
    charges_enabled: bool = False
    payouts_enabled: bool = False


def _stripe_hints(metadata: dict[str, str]) -> CorrelationHints:
    email = metadata.get("clientEmail")
    return CorrelationHints(
        booking_id=metadata.get("bookingId") or None,
        mentor_id=metadata.get("mentorId") or None,
        service_id=metadata.get("serviceId") or None,
        client_id=metadata.get("clientId") or None,
        client_email=email.strip().lower() if email else None,
    )


def parse_stripe_event(raw_body: bytes) -> ProviderEvent:
    """Parse a verified Stripe delivery into a ProviderEvent"""
    data = _load_json(raw_body, STRIPE)
    try:
        envelope = StripeEnvelope.model_validate(data)
        obj = envelope.data.object
        event_type = envelope.type

        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            session = StripeCheckoutSession.model_validate(obj)
            if session.payment_status != "paid":
                # Delayed methods complete unpaid and follow up with async_payment_* events
                return IgnoredEvent(STRIPE, event_type, envelope.id)
            return PaymentSucceeded(
                event_id=envelope.id,
                event_type=event_type,
                payment_reference=session.payment_intent,
                checkout_session_id=session.id,
                hints=_stripe_hints(session.metadata),
            )
        if event_type in ("checkout.session.async_payment_failed", "checkout.session.expired"):
            # Terminal: the session can no longer be paid
            session = StripeCheckoutSession.model_validate(obj)
            return PaymentFailed(
                event_id=envelope.id,
                event_type=event_type,
                payment_reference=session.payment_intent,
                checkout_session_id=session.id,
                hints=_stripe_hints(session.metadata),
            )
        if event_type == "payment_intent.succeeded":
            intent = StripePaymentIntent.model_validate(obj)
            return PaymentSucceeded(
                event_id=envelope.id,
                event_type=event_type,
                payment_reference=intent.id,
                hints=_stripe_hints(intent.metadata),
            )
        if event_type == "payment_intent.payment_failed":
            # A declined attempt; the open Checkout Session lets the client retry on the same intent
            intent = StripePaymentIntent.model_validate(obj)
            reason = intent.last_payment_error.message if intent.last_payment_error else "no reason given"
            logger.info(f"💳 Payment attempt {intent.id} declined: {reason}")
            return IgnoredEvent(STRIPE, event_type, envelope.id)
        if event_type == "charge.refunded":
            charge = StripeCharge.model_validate(obj)
            if not charge.refunded and charge.amount_refunded < charge.amount:
                # Partial refunds leave the session booked
                return IgnoredEvent(STRIPE, event_type, envelope.id)
            return PaymentRefunded(
                event_id=envelope.id,
                event_type=event_type,
                payment_reference=charge.payment_intent,
            )
        if event_type == "account.updated":
            account = StripeAccount.model_validate(obj)
            return ConnectAccountUpdated(
                event_id=envelope.id,
                account_id=account.id,
                details_submitted=account.details_submitted,
                charges_enabled=account.charges_enabled,
                payouts_enabled=account.payouts_enabled,
            )
    except ValidationError as e:
        logger.warning(f"🚫 Stripe payload does not match schema: {e.error_count()} errors")
        raise VerificationFailed("Stripe payload does not match the expected schema") from e

    return IgnoredEvent(STRIPE, envelope.type, envelope.id)
