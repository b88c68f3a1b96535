import json
from datetime import date

import pytest

from conftest import MENTOR_CALENDLY_URI
from veridie.models import Booking, BookingStatus, WebhookEvent
from veridie.webhook_security import create_webhook_signature

CALENDLY_SECRET = "calendly-signing-key"
STRIPE_SECRET = "whsec_test_veridie"


@pytest.fixture
def pending_booking(db, connect_mentor, mentor, service):
    connect_mentor()
    booking = Booking(
        mentor_id=mentor.id,
        service_id=service.id,
        guest_name="Casey Client",
        guest_email="casey@example.com",
        date=date(2030, 5, 1),
        status=BookingStatus.PENDING_PAYMENT.value,
        checkout_session_id="cs_live_1",
    )
    db.add(booking)
    db.commit()
    db.refresh(booking)
    return booking


def invitee_created(
    booking_id=None, event_uri="https://api.calendly.com/scheduled_events/EV1", host=MENTOR_CALENDLY_URI
) -> bytes:
    return json.dumps(
        {
            "event": "invitee.created",
            "payload": {
                "uri": f"{event_uri}/invitees/INV1",
                "email": "casey@example.com",
                "name": "Casey Client",
                "scheduled_event": {
                    "uri": event_uri,
                    "start_time": "2030-05-01T15:00:00.000000Z",
                    "location": {"type": "google_conference", "join_url": "https://meet.google.com/abc"},
                    "event_memberships": [{"user": host}],
                },
                "tracking": {"utm_content": f"booking:{booking_id}" if booking_id else None},
            },
        }
    ).encode()


def checkout_completed(session_id="cs_live_1", payment_intent="pi_live_1", event_id="evt_checkout") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "payment_intent": payment_intent,
                    "payment_status": "paid",
                    "metadata": {},
                }
            },
        }
    ).encode()


def post_calendly(client, body: bytes, secret=CALENDLY_SECRET):
    return client.post(
        "/webhooks/calendly/events",
        content=body,
        headers={
            "Content-Type": "application/json",
            "Calendly-Webhook-Signature": create_webhook_signature(secret, body, provider="calendly"),
        },
    )


def post_stripe(client, body: bytes, secret=STRIPE_SECRET):
    return client.post(
        "/webhooks/stripe",
        content=body,
        headers={
            "Content-Type": "application/json",
            "Stripe-Signature": create_webhook_signature(secret, body, provider="stripe"),
        },
    )


def booking_state(db, booking_id):
    db.expire_all()
    booking = db.get(Booking, booking_id)
    return booking.status, booking.payment_reference, booking.scheduling_event_reference


class TestCalendlyWebhook:
    def test_invitee_created_confirms_tokened_booking(self, client, db, pending_booking):
        response = post_calendly(client, invitee_created(pending_booking.id))

        assert response.status_code == 200
        assert response.json() == {"received": True}
        status, _, reference = booking_state(db, pending_booking.id)
        assert status == "confirmed"
        assert reference == "https://api.calendly.com/scheduled_events/EV1"

    def test_redelivery_is_acknowledged_without_changes(self, client, db, pending_booking):
        body = invitee_created(pending_booking.id)

        assert post_calendly(client, body).status_code == 200
        assert post_calendly(client, body).status_code == 200

        assert db.query(Booking).count() == 1
        outcomes = [row.outcome for row in db.query(WebhookEvent).order_by(WebhookEvent.id)]
        assert outcomes == ["applied", "already_applied"]

    def test_bad_signature_is_rejected_before_parsing(self, client, db, pending_booking):
        response = post_calendly(client, invitee_created(pending_booking.id), secret="wrong-key")

        assert response.status_code == 401
        assert booking_state(db, pending_booking.id)[0] == "pending_payment"
        assert db.query(WebhookEvent).count() == 0

    def test_missing_signature_is_rejected(self, client):
        response = client.post("/webhooks/calendly/events", content=invitee_created())

        assert response.status_code == 401

    def test_signed_but_nonconforming_payload_is_rejected(self, client, db):
        body = json.dumps({"event": "invitee.created", "payload": {"email": "x@example.com"}}).encode()

        response = post_calendly(client, body)

        assert response.status_code == 401
        assert db.query(WebhookEvent).count() == 0

    def test_booking_token_on_foreign_event_is_acknowledged_but_not_applied(self, client, db, pending_booking):
        body = invitee_created(
            pending_booking.id,
            event_uri="https://api.calendly.com/scheduled_events/OTHER",
            host="https://api.calendly.com/users/SOMEONE_ELSE",
        )

        response = post_calendly(client, body)

        assert response.status_code == 200
        assert booking_state(db, pending_booking.id) == ("pending_payment", None, None)
        assert db.query(WebhookEvent).one().outcome == "rejected"

    def test_unmatched_event_asks_for_redelivery(self, client, db, mentor):
        response = post_calendly(client, invitee_created("no-such-booking"))

        assert response.status_code == 500
        ledger = db.query(WebhookEvent).one()
        assert ledger.provider == "calendly"
        assert ledger.outcome == "unmatched"

    def test_unhandled_event_type_is_acknowledged(self, client, db):
        body = json.dumps({"event": "routing_form_submission.created", "payload": {}}).encode()

        assert post_calendly(client, body).status_code == 200
        assert db.query(WebhookEvent).one().outcome == "ignored"


class TestStripeWebhook:
    def test_checkout_completed_confirms_booking(self, client, db, pending_booking):
        response = post_stripe(client, checkout_completed())

        assert response.status_code == 200
        assert response.json() == {"received": True}
        status, payment_reference, _ = booking_state(db, pending_booking.id)
        assert status == "confirmed"
        assert payment_reference == "pi_live_1"

    def test_payment_then_scheduling_in_any_order(self, client, db, pending_booking):
        assert post_calendly(client, invitee_created(pending_booking.id)).status_code == 200
        assert post_stripe(client, checkout_completed()).status_code == 200

        assert booking_state(db, pending_booking.id) == (
            "confirmed",
            "pi_live_1",
            "https://api.calendly.com/scheduled_events/EV1",
        )

    def test_bad_signature_is_rejected(self, client, db, pending_booking):
        response = post_stripe(client, checkout_completed(), secret="whsec_wrong")

        assert response.status_code == 401
        assert booking_state(db, pending_booking.id)[0] == "pending_payment"

    def test_unknown_payment_asks_for_redelivery(self, client, db, pending_booking):
        response = post_stripe(client, checkout_completed(session_id="cs_other", payment_intent="pi_other"))

        assert response.status_code == 500
        assert db.query(WebhookEvent).one().outcome == "unmatched"

    def test_refund_after_confirmation(self, client, db, pending_booking):
        post_stripe(client, checkout_completed())
        refund = json.dumps(
            {
                "id": "evt_refund",
                "type": "charge.refunded",
                "data": {
                    "object": {
                        "id": "ch_1",
                        "payment_intent": "pi_live_1",
                        "amount": 10000,
                        "amount_refunded": 10000,
                        "refunded": True,
                    }
                },
            }
        ).encode()

        assert post_stripe(client, refund).status_code == 200
        assert booking_state(db, pending_booking.id)[0] == "refunded"

    def test_backward_transition_is_acknowledged_but_ignored(self, client, db, pending_booking):
        pending_booking.status = BookingStatus.CANCELLED.value
        db.commit()

        response = post_stripe(client, checkout_completed())

        assert response.status_code == 200
        assert booking_state(db, pending_booking.id)[0] == "cancelled"
        assert db.query(WebhookEvent).one().outcome == "invalid_transition"
