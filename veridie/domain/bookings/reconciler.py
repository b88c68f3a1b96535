"""
Event Reconciler

Applies verified provider events to Booking rows. Booking status only moves
forward along:

    pending_payment -> confirmed -> cancelled
    pending_payment -> confirmed -> refunded
    pending_payment -> failed

Re-delivered events are no-ops, events that would move a booking backward are
reported as INVALID_TRANSITION (still a success for the provider), and events
that cannot be tied to a booking are UNMATCHED so the provider retries later.
Every delivery is written to the webhook_events ledger.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional, assert_never

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...models import Booking, BookingStatus
from ..scheduling.availability import resolve_timezone
from .events import (
    ConnectAccountUpdated,
    CorrelationHints,
    IgnoredEvent,
    PaymentFailed,
    PaymentRefunded,
    PaymentSucceeded,
    ProviderEvent,
    SchedulingBookingCanceled,
    SchedulingBookingCreated,
)
from .repository import BookingRepository

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2


class ReconciliationOutcome(str, enum.Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    INVALID_TRANSITION = "invalid_transition"
    UNMATCHED = "unmatched"
    REJECTED = "rejected"
    IGNORED = "ignored"


ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING_PAYMENT: frozenset({BookingStatus.CONFIRMED, BookingStatus.FAILED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.CANCELLED, BookingStatus.REFUNDED}),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.FAILED: frozenset(),
    BookingStatus.REFUNDED: frozenset(),
}


def plan_transition(current: BookingStatus, target: BookingStatus) -> ReconciliationOutcome:
    """Classify moving a booking from `current` to `target`"""
    if current == target:
        return ReconciliationOutcome.ALREADY_APPLIED
    if target in ALLOWED_TRANSITIONS[current]:
        return ReconciliationOutcome.APPLIED
    return ReconciliationOutcome.INVALID_TRANSITION


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    booking_id: Optional[str] = None
    previous_status: Optional[str] = None
    status: Optional[str] = None
    detail: str = ""

    @property
    def acknowledged(self) -> bool:
        """Whether the provider should stop redelivering this event"""
        return self.outcome != ReconciliationOutcome.UNMATCHED


class EventReconciler:
    """Applies verified webhook events to bookings"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BookingRepository()

    def apply_event(self, provider: str, event: ProviderEvent) -> ReconciliationResult:
        """
        Apply one verified event and record it in the ledger.

        A concurrent writer on the same booking surfaces as StaleDataError (or
        IntegrityError for a duplicate reference); the event is re-evaluated
        against fresh state once before the error propagates.
        """
        if event.provider != provider:
            raise ValueError(f"{event.provider} event passed to the {provider} reconciler")

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                result = self._dispatch(event)
                self.db.commit()
                break
            except (StaleDataError, IntegrityError) as e:
                self.db.rollback()
                if attempt == MAX_ATTEMPTS:
                    logger.error(
                        f"❌ {provider} {event.event_type} kept conflicting with concurrent writes: {e}"
                    )
                    raise
                logger.warning(
                    f"⚠️ Concurrent booking update while applying {provider} {event.event_type}, retrying"
                )
                self.db.expire_all()

        self._record(provider, event, result)
        return result

    def _dispatch(self, event: ProviderEvent) -> ReconciliationResult:
        match event:
            case SchedulingBookingCreated():
                return self._on_scheduling_created(event)
            case SchedulingBookingCanceled():
                return self._on_scheduling_canceled(event)
            case PaymentSucceeded():
                return self._on_payment(event, BookingStatus.CONFIRMED)
            case PaymentFailed():
                return self._on_payment(event, BookingStatus.FAILED)
            case PaymentRefunded():
                return self._on_refund(event)
            case ConnectAccountUpdated():
                return self._on_account_updated(event)
            case IgnoredEvent():
                return ReconciliationResult(
                    ReconciliationOutcome.IGNORED, detail=f"{event.event_type} is not handled"
                )
            case _:
                assert_never(event)

    def _record(self, provider: str, event: ProviderEvent, result: ReconciliationResult) -> None:
        self.repo.record_webhook_event(
            self.db,
            provider=provider,
            event_type=event.event_type,
            outcome=result.outcome.value,
            external_id=event.external_id,
            booking_id=result.booking_id,
            detail=result.detail or None,
        )

        message = (
            f"{provider} {event.event_type} ({event.external_id}) -> {result.outcome.value}"
            f" booking={result.booking_id} {result.detail}"
        ).rstrip()
        if result.outcome in (ReconciliationOutcome.UNMATCHED, ReconciliationOutcome.REJECTED):
            logger.error(f"❌ Webhook not applied: {message}")
        elif result.outcome == ReconciliationOutcome.APPLIED:
            logger.info(f"✅ Webhook applied: {message}")
        else:
            logger.info(f"ℹ️ Webhook no-op: {message}")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, booking: Booking, target: BookingStatus, detail: str = "") -> ReconciliationResult:
        previous = booking.status
        outcome = plan_transition(BookingStatus(previous), target)
        if outcome == ReconciliationOutcome.APPLIED:
            booking.status = target.value
            self.db.flush()
        elif outcome == ReconciliationOutcome.INVALID_TRANSITION:
            detail = detail or f"cannot move {previous} -> {target.value}"
        return ReconciliationResult(
            outcome,
            booking_id=booking.id,
            previous_status=previous,
            status=booking.status,
            detail=detail,
        )

    @staticmethod
    def _hint_mismatch(booking: Booking, hints: CorrelationHints) -> Optional[str]:
        if hints.mentor_id and hints.mentor_id != booking.mentor_id:
            return f"mentor hint {hints.mentor_id} does not match booking mentor {booking.mentor_id}"
        if hints.service_id and hints.service_id != booking.service_id:
            return f"service hint {hints.service_id} does not match booking service {booking.service_id}"
        return None

    def _hosted_by(self, mentor_id: str, event: SchedulingBookingCreated) -> bool:
        """Whether the mentor's connected Calendly user is among the event's hosts"""
        if not event.host_user_uris:
            return True
        host_uri = self.repo.get_calendly_user_uri(self.db, mentor_id)
        return host_uri is not None and host_uri in event.host_user_uris

    def _rejected(self, booking: Booking, reason: str) -> ReconciliationResult:
        return ReconciliationResult(
            ReconciliationOutcome.REJECTED,
            booking_id=booking.id,
            previous_status=booking.status,
            status=booking.status,
            detail=reason,
        )

    # ------------------------------------------------------------------
    # Scheduling provider
    # ------------------------------------------------------------------

    def _on_scheduling_created(self, event: SchedulingBookingCreated) -> ReconciliationResult:
        booking = self.repo.get_by_scheduling_reference(self.db, event.event_reference)
        if booking is not None:
            return self._transition(booking, BookingStatus.CONFIRMED)

        hints = event.hints
        if hints.booking_id:
            booking = self.repo.get_booking(self.db, hints.booking_id)
            if booking is None:
                return ReconciliationResult(
                    ReconciliationOutcome.UNMATCHED,
                    detail=f"booking token {hints.booking_id} not found",
                )
        elif hints.mentor_id and hints.client_email:
            mentor = self.repo.get_mentor(self.db, hints.mentor_id)
            if mentor is not None:
                # Bookings carry the mentor-local date
                event_day = event.start_time.astimezone(resolve_timezone(mentor.timezone)).date()
                booking = self.repo.find_unscheduled_booking(
                    self.db, mentor.id, hints.service_id, hints.client_email, event_day
                )

        if booking is not None:
            mismatch = self._hint_mismatch(booking, hints)
            if mismatch:
                return self._rejected(booking, mismatch)
            if not self._hosted_by(booking.mentor_id, event):
                return self._rejected(booking, f"scheduled event is not hosted by mentor {booking.mentor_id}")
            if booking.scheduling_event_reference not in (None, event.event_reference):
                return self._rejected(booking, "booking is already tied to another scheduled event")

            if BookingStatus(booking.status) not in (BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED):
                return self._transition(booking, BookingStatus.CONFIRMED)
            booking.scheduling_event_reference = event.event_reference
            if event.meeting_url:
                booking.meeting_url = event.meeting_url
            result = self._transition(booking, BookingStatus.CONFIRMED, detail="scheduling reference attached")
            if result.outcome == ReconciliationOutcome.ALREADY_APPLIED:
                return ReconciliationResult(
                    ReconciliationOutcome.APPLIED,
                    booking_id=booking.id,
                    previous_status=result.previous_status,
                    status=booking.status,
                    detail="scheduling reference attached",
                )
            return result

        return self._create_from_scheduling(event)

    def _create_from_scheduling(self, event: SchedulingBookingCreated) -> ReconciliationResult:
        """A booking made directly on the mentor's Calendly page, without a checkout first"""
        hints = event.hints
        mentor = None
        if hints.mentor_id:
            mentor = self.repo.get_mentor(self.db, hints.mentor_id)
        elif event.host_user_uris:
            mentor = self.repo.get_mentor_by_calendly_users(self.db, list(event.host_user_uris))
        if mentor is None:
            return ReconciliationResult(
                ReconciliationOutcome.UNMATCHED,
                detail=f"no mentor for scheduled event {event.event_reference}",
            )

        if not self._hosted_by(mentor.id, event):
            return ReconciliationResult(
                ReconciliationOutcome.REJECTED,
                detail=f"scheduled event is not hosted by mentor {mentor.id}",
            )

        if hints.service_id:
            service = self.repo.get_service(self.db, hints.service_id)
            if service is None or service.mentor_id != mentor.id:
                return ReconciliationResult(
                    ReconciliationOutcome.REJECTED,
                    detail=f"service {hints.service_id} does not belong to mentor {mentor.id}",
                )

        profile = self.repo.get_profile_by_email(self.db, event.invitee_email)
        guest_name = (event.invitee_name or "").strip()
        if profile is None and not guest_name:
            return ReconciliationResult(
                ReconciliationOutcome.UNMATCHED,
                detail="invitee is neither a known client nor a named guest",
            )

        local_start = event.start_time.astimezone(resolve_timezone(mentor.timezone))
        booking = self.repo.create_booking(
            self.db,
            mentor_id=mentor.id,
            service_id=hints.service_id,
            day=local_start.date(),
            start=local_start.time().replace(second=0, microsecond=0),
            status=BookingStatus.CONFIRMED,
            client_id=profile.id if profile else None,
            guest_name=guest_name,
            guest_email=event.invitee_email,
            scheduling_event_reference=event.event_reference,
            meeting_url=event.meeting_url,
        )
        return ReconciliationResult(
            ReconciliationOutcome.APPLIED,
            booking_id=booking.id,
            status=booking.status,
            detail="booking created from scheduled event",
        )

    def _on_scheduling_canceled(self, event: SchedulingBookingCanceled) -> ReconciliationResult:
        booking = self.repo.get_by_scheduling_reference(self.db, event.event_reference)
        if booking is None:
            return ReconciliationResult(
                ReconciliationOutcome.UNMATCHED,
                detail=f"no booking for scheduled event {event.event_reference}",
            )
        if booking.status == BookingStatus.REFUNDED.value:
            return ReconciliationResult(
                ReconciliationOutcome.ALREADY_APPLIED,
                booking_id=booking.id,
                previous_status=booking.status,
                status=booking.status,
                detail="booking already refunded",
            )
        return self._transition(booking, BookingStatus.CANCELLED, detail=event.reason or "")

    # ------------------------------------------------------------------
    # Payment provider
    # ------------------------------------------------------------------

    def _find_payment_booking(self, event: PaymentSucceeded | PaymentFailed) -> Optional[Booking]:
        if event.payment_reference:
            booking = self.repo.get_by_payment_reference(self.db, event.payment_reference)
            if booking is not None:
                return booking
        if event.checkout_session_id:
            booking = self.repo.get_by_checkout_session(self.db, event.checkout_session_id)
            if booking is not None:
                return booking
        if event.hints.booking_id:
            return self.repo.get_booking(self.db, event.hints.booking_id)
        return None

    def _on_payment(self, event: PaymentSucceeded | PaymentFailed, target: BookingStatus) -> ReconciliationResult:
        booking = self._find_payment_booking(event)
        if booking is None:
            return ReconciliationResult(
                ReconciliationOutcome.UNMATCHED,
                detail=f"no booking for payment {event.payment_reference or event.checkout_session_id}",
            )

        mismatch = self._hint_mismatch(booking, event.hints)
        if mismatch:
            return self._rejected(booking, mismatch)
        if (
            event.payment_reference
            and booking.payment_reference
            and booking.payment_reference != event.payment_reference
        ):
            return self._rejected(booking, "booking is already tied to another payment")

        if event.payment_reference and booking.payment_reference is None:
            booking.payment_reference = event.payment_reference
        return self._transition(booking, target)

    def _on_refund(self, event: PaymentRefunded) -> ReconciliationResult:
        booking = self.repo.get_by_payment_reference(self.db, event.payment_reference)
        if booking is None:
            return ReconciliationResult(
                ReconciliationOutcome.UNMATCHED,
                detail=f"no booking for refunded payment {event.payment_reference}",
            )
        return self._transition(booking, BookingStatus.REFUNDED)

    def _on_account_updated(self, event: ConnectAccountUpdated) -> ReconciliationResult:
        mentor = self.repo.get_mentor_by_connect_account(self.db, event.account_id)
        if mentor is None:
            return ReconciliationResult(
                ReconciliationOutcome.IGNORED,
                detail=f"no mentor for Connect account {event.account_id}",
            )

        flags = {
            "stripe_details_submitted": event.details_submitted,
            "stripe_charges_enabled": event.charges_enabled,
            "stripe_payouts_enabled": event.payouts_enabled,
        }
        if all(getattr(mentor, name) == value for name, value in flags.items()):
            return ReconciliationResult(
                ReconciliationOutcome.ALREADY_APPLIED, detail=f"mentor {mentor.id} unchanged"
            )
        for name, value in flags.items():
            setattr(mentor, name, value)
        self.db.flush()
        return ReconciliationResult(
            ReconciliationOutcome.APPLIED, detail=f"mentor {mentor.id} Connect status updated"
        )
