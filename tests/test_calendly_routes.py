from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import respx

from conftest import EVENT_TYPE_URI, MENTOR_CALENDLY_URI
from veridie.models import CalendlyCredential
from veridie.security_utils import generate_timed_token
from veridie.services.calendly_service import CalendlyService

TOKEN_URL = CalendlyService.TOKEN_URL
USER_URL = f"{CalendlyService.BASE_URL}/users/me"
SUBSCRIPTIONS_URL = f"{CalendlyService.BASE_URL}/webhook_subscriptions"
EVENT_TYPES_URL = f"{CalendlyService.BASE_URL}/event_types"
AVAILABILITY_URL = f"{CalendlyService.BASE_URL}/event_type_available_times"


def tomorrow() -> str:
    return (datetime.now(timezone.utc) + timedelta(days=1)).date().isoformat()


def token_payload(access="access-1", refresh="refresh-1"):
    return {"access_token": access, "refresh_token": refresh, "expires_in": 7200, "token_type": "Bearer"}


def user_payload():
    return {
        "resource": {
            "uri": MENTOR_CALENDLY_URI,
            "email": "dana@calendly.test",
            "current_organization": "https://api.calendly.com/organizations/ORG1",
        }
    }


class TestConnection:
    def test_connect_returns_signed_state(self, client, mentor):
        response = client.get("/calendly/connect", params={"mentor_id": mentor.id})

        assert response.status_code == 200
        data = response.json()
        query = parse_qs(urlparse(data["authorization_url"]).query)
        assert query["client_id"] == ["test-client-id"]
        assert query["state"] == [data["state"]]

    def test_connect_unknown_mentor(self, client):
        assert client.get("/calendly/connect", params={"mentor_id": "nobody"}).status_code == 404

    @respx.mock
    def test_callback_stores_encrypted_tokens_and_subscribes(self, client, db, store, mentor):
        respx.post(TOKEN_URL).respond(200, json=token_payload())
        respx.get(USER_URL).respond(200, json=user_payload())
        subscription = respx.post(SUBSCRIPTIONS_URL).respond(201, json={"resource": {}})
        state = generate_timed_token({"mentor_id": mentor.id})

        response = client.post("/calendly/callback", json={"code": "auth-code", "state": state})

        assert response.status_code == 200
        assert response.json()["webhook_subscribed"] is True
        assert subscription.call_count == 1
        db.expire_all()
        row = db.query(CalendlyCredential).filter_by(mentor_id=mentor.id).one()
        assert row.access_token != "access-1"
        assert store.load(mentor.id).access_token == "access-1"
        assert row.calendly_user_uri == MENTOR_CALENDLY_URI

    @respx.mock
    def test_failed_subscription_does_not_fail_connection(self, client, store, mentor):
        respx.post(TOKEN_URL).respond(200, json=token_payload())
        respx.get(USER_URL).respond(200, json=user_payload())
        respx.post(SUBSCRIPTIONS_URL).respond(409, json={"title": "Already Exists"})
        state = generate_timed_token({"mentor_id": mentor.id})

        response = client.post("/calendly/callback", json={"code": "auth-code", "state": state})

        assert response.status_code == 200
        assert response.json()["webhook_subscribed"] is False
        assert store.load(mentor.id).connected is True

    def test_callback_with_forged_state(self, client, mentor):
        response = client.post("/calendly/callback", json={"code": "auth-code", "state": "forged"})

        assert response.status_code == 400

    @respx.mock
    def test_rejected_code_needs_reconnect(self, client, store, mentor):
        respx.post(TOKEN_URL).respond(400, json={"error": "invalid_grant"})
        state = generate_timed_token({"mentor_id": mentor.id})

        response = client.post("/calendly/callback", json={"code": "used-code", "state": state})

        assert response.status_code == 502
        assert store.load(mentor.id) is None

    @respx.mock
    def test_non_json_token_response_is_a_provider_error(self, client, store, mentor):
        respx.post(TOKEN_URL).respond(200, text="<html>gateway</html>")
        state = generate_timed_token({"mentor_id": mentor.id})

        response = client.post("/calendly/callback", json={"code": "auth-code", "state": state})

        assert response.status_code == 502
        assert store.load(mentor.id) is None

    def test_status_and_disconnect(self, client, connect_mentor, mentor):
        connect_mentor()

        status = client.get(f"/calendly/mentors/{mentor.id}/status").json()
        assert status["connected"] is True
        assert status["calendly_user_uri"] == MENTOR_CALENDLY_URI

        assert client.post(f"/calendly/mentors/{mentor.id}/disconnect").status_code == 200
        assert client.get(f"/calendly/mentors/{mentor.id}/status").json()["connected"] is False

    def test_disconnect_without_integration(self, client, mentor):
        assert client.post(f"/calendly/mentors/{mentor.id}/disconnect").status_code == 404

    @respx.mock
    def test_event_types(self, client, connect_mentor, mentor):
        connect_mentor()
        route = respx.get(EVENT_TYPES_URL).respond(
            200,
            json={
                "collection": [
                    {
                        "uri": EVENT_TYPE_URI,
                        "name": "Essay review",
                        "duration": 60,
                        "scheduling_url": "https://calendly.com/dana/essay-review",
                    }
                ]
            },
        )

        response = client.get(f"/calendly/mentors/{mentor.id}/event-types")

        assert response.status_code == 200
        assert response.json()["event_types"][0]["booking_url"] == "https://calendly.com/dana/essay-review"
        assert route.calls.last.request.url.params["user"] == MENTOR_CALENDLY_URI


class TestAvailableTimes:
    def url(self, mentor):
        return f"/calendly/mentors/{mentor.id}/available-times"

    @respx.mock
    def test_lists_open_slots(self, client, connect_mentor, mentor, service):
        connect_mentor()
        day = tomorrow()
        respx.get(AVAILABILITY_URL).respond(
            200,
            json={
                "collection": [
                    {"status": "available", "start_time": f"{day}T13:00:00Z", "scheduling_url": "https://c/1"},
                    {"status": "available", "start_time": f"{day}T09:30:00Z", "scheduling_url": "https://c/2"},
                ]
            },
        )

        response = client.get(self.url(mentor), params={"date": day, "service_id": service.id})

        assert response.status_code == 200
        data = response.json()
        assert data["timezone"] == "UTC"
        assert [slot["time"] for slot in data["slots"]] == ["09:30", "13:00"]

    @respx.mock
    def test_expired_authorization_recovers_transparently(self, client, connect_mentor, mentor, service):
        connect_mentor()
        day = tomorrow()
        token_route = respx.post(TOKEN_URL).respond(200, json=token_payload("access-2", "refresh-2"))
        respx.get(AVAILABILITY_URL).mock(
            side_effect=[
                httpx.Response(401, json={"title": "Unauthenticated"}),
                httpx.Response(200, json={"collection": []}),
            ]
        )

        response = client.get(self.url(mentor), params={"date": day, "service_id": service.id})

        assert response.status_code == 200
        assert response.json()["slots"] == []
        assert token_route.call_count == 1

    def test_not_connected_asks_for_reconnect(self, client, mentor, service):
        response = client.get(self.url(mentor), params={"date": tomorrow(), "service_id": service.id})

        assert response.status_code == 409
        assert response.json()["needs_reconnect"] is True

    @respx.mock
    def test_revoked_refresh_token_asks_for_reconnect(self, client, connect_mentor, mentor, service):
        connect_mentor(expires_in=timedelta(minutes=-5))
        respx.post(TOKEN_URL).respond(400, json={"error": "invalid_grant"})

        response = client.get(self.url(mentor), params={"date": tomorrow(), "service_id": service.id})

        assert response.status_code == 409
        data = response.json()
        assert data["needs_reconnect"] is True
        assert data["retryable"] is False
        assert "refresh-1" not in data["detail"]

    @respx.mock
    def test_provider_outage_is_retryable(self, client, connect_mentor, mentor, service):
        connect_mentor()
        respx.get(AVAILABILITY_URL).respond(503, text="maintenance")

        response = client.get(self.url(mentor), params={"date": tomorrow(), "service_id": service.id})

        assert response.status_code == 503
        assert response.json()["retryable"] is True
        assert response.json()["needs_reconnect"] is False

    @respx.mock
    def test_provider_client_error(self, client, connect_mentor, mentor, service):
        connect_mentor()
        respx.get(AVAILABILITY_URL).respond(400, json={"title": "Invalid Argument"})

        response = client.get(self.url(mentor), params={"date": tomorrow(), "service_id": service.id})

        assert response.status_code == 502

    def test_unknown_service(self, client, mentor):
        response = client.get(self.url(mentor), params={"date": tomorrow(), "service_id": "nope"})

        assert response.status_code == 404

    def test_invalid_timezone(self, client, connect_mentor, mentor, service):
        connect_mentor()
        response = client.get(
            self.url(mentor),
            params={"date": tomorrow(), "service_id": service.id, "timezone": "Not/AZone"},
        )

        assert response.status_code == 400
