from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import httpx
import pytest
import respx

from conftest import EVENT_TYPE_URI
from veridie.domain.scheduling.availability import (
    AvailabilityFetcher,
    day_window,
    normalize_slots,
    resolve_timezone,
)
from veridie.domain.scheduling.errors import AuthenticationFailed, ProviderError, ProviderUnavailable
from veridie.domain.scheduling.token_manager import TokenLifecycleManager
from veridie.services.calendly_service import CalendlyService

TOKEN_URL = CalendlyService.TOKEN_URL
AVAILABILITY_URL = f"{CalendlyService.BASE_URL}/event_type_available_times"


def tomorrow() -> date:
    return (datetime.now(timezone.utc) + timedelta(days=1)).date()


def slot_entry(day: date, hour: int, status: str = "available") -> dict:
    return {
        "status": status,
        "invitees_remaining": 1,
        "start_time": f"{day.isoformat()}T{hour:02d}:00:00Z",
        "scheduling_url": f"https://calendly.com/dana/essay-review/{day.isoformat()}T{hour:02d}:00:00Z",
    }


@pytest.fixture
def fetcher(store, calendly):
    return AvailabilityFetcher(TokenLifecycleManager(store, calendly), calendly)


@pytest.mark.asyncio
@respx.mock
async def test_401_then_success_refreshes_exactly_once(fetcher, connect_mentor, mentor):
    connect_mentor(access_token="access-1", expires_in=timedelta(hours=2))
    day = tomorrow()
    token_route = respx.post(TOKEN_URL).respond(
        200, json={"access_token": "access-new", "refresh_token": "refresh-new", "expires_in": 7200}
    )
    availability_route = respx.get(AVAILABILITY_URL).mock(
        side_effect=[
            httpx.Response(401, json={"title": "Unauthenticated"}),
            httpx.Response(
                200,
                json={"collection": [slot_entry(day, 9), slot_entry(day, 10), slot_entry(day, 11)]},
            ),
        ]
    )

    slots = await fetcher.fetch_available_slots(mentor.id, EVENT_TYPE_URI, day, "UTC")

    assert [slot.label for slot in slots] == ["09:00", "10:00", "11:00"]
    assert token_route.call_count == 1
    assert availability_route.call_count == 2
    retry_request = availability_route.calls.last.request
    assert retry_request.headers["Authorization"] == "Bearer access-new"


@pytest.mark.asyncio
@respx.mock
async def test_second_401_raises_authentication_failed(fetcher, connect_mentor, mentor):
    connect_mentor(expires_in=timedelta(hours=2))
    token_route = respx.post(TOKEN_URL).respond(
        200, json={"access_token": "access-new", "refresh_token": "refresh-new", "expires_in": 7200}
    )
    availability_route = respx.get(AVAILABILITY_URL).respond(401, json={"title": "Unauthenticated"})

    with pytest.raises(AuthenticationFailed) as exc_info:
        await fetcher.fetch_available_slots(mentor.id, EVENT_TYPE_URI, tomorrow(), "UTC")

    assert exc_info.value.needs_reconnect is True
    assert token_route.call_count == 1
    assert availability_route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_query_parameters_cover_the_local_day(fetcher, connect_mentor, mentor):
    connect_mentor(expires_in=timedelta(hours=2))
    day = tomorrow() + timedelta(days=1)
    route = respx.get(AVAILABILITY_URL).respond(200, json={"collection": []})

    await fetcher.fetch_available_slots(mentor.id, EVENT_TYPE_URI, day, "America/New_York")

    params = route.calls.last.request.url.params
    assert params["event_type"] == EVENT_TYPE_URI
    assert params["timezone"] == "America/New_York"
    local_start = datetime.combine(day, time.min, tzinfo=ZoneInfo("America/New_York"))
    expected_start = local_start.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000000Z")
    assert params["start_time"] == expected_start
    assert params["end_time"].endswith("Z")


@pytest.mark.asyncio
@respx.mock
async def test_empty_availability_is_not_an_error(fetcher, connect_mentor, mentor):
    connect_mentor(expires_in=timedelta(hours=2))
    respx.get(AVAILABILITY_URL).respond(200, json={"collection": []})

    assert await fetcher.fetch_available_slots(mentor.id, EVENT_TYPE_URI, tomorrow(), "UTC") == []


@pytest.mark.asyncio
@respx.mock
async def test_server_error_is_retryable_without_refresh(fetcher, connect_mentor, mentor):
    connect_mentor(expires_in=timedelta(hours=2))
    token_route = respx.post(TOKEN_URL).respond(200, json={})
    respx.get(AVAILABILITY_URL).respond(502, text="bad gateway")

    with pytest.raises(ProviderUnavailable):
        await fetcher.fetch_available_slots(mentor.id, EVENT_TYPE_URI, tomorrow(), "UTC")
    assert token_route.call_count == 0


@pytest.mark.asyncio
@respx.mock
async def test_client_error_carries_status_and_truncated_body(fetcher, connect_mentor, mentor):
    connect_mentor(expires_in=timedelta(hours=2))
    respx.get(AVAILABILITY_URL).respond(400, text="x" * 2000)

    with pytest.raises(ProviderError) as exc_info:
        await fetcher.fetch_available_slots(mentor.id, EVENT_TYPE_URI, tomorrow(), "UTC")

    assert exc_info.value.status_code == 400
    assert len(exc_info.value.body) == 500
    assert "access-1" not in str(exc_info.value)


@pytest.mark.asyncio
@respx.mock
async def test_past_day_returns_empty_without_network(fetcher, connect_mentor, mentor):
    connect_mentor(expires_in=timedelta(hours=2))
    route = respx.get(AVAILABILITY_URL).respond(200, json={"collection": []})
    yesterday = (datetime.now(timezone.utc) - timedelta(days=2)).date()

    assert await fetcher.fetch_available_slots(mentor.id, EVENT_TYPE_URI, yesterday, "UTC") == []
    assert route.call_count == 0


def test_normalize_slots_filters_sorts_and_dedupes():
    day = date(2030, 3, 4)
    entries = [
        slot_entry(day, 15),
        slot_entry(day, 9),
        slot_entry(day, 9),
        slot_entry(day, 12, status="unavailable"),
        slot_entry(day + timedelta(days=1), 9),
        {"status": "available"},
    ]

    slots = normalize_slots(entries, day, ZoneInfo("UTC"))

    assert [slot.label for slot in slots] == ["09:00", "15:00"]
    assert slots[0].scheduling_url.endswith("T09:00:00Z")


def test_normalize_slots_converts_to_requested_timezone():
    day = date(2030, 7, 1)
    slots = normalize_slots([slot_entry(day, 14)], day, ZoneInfo("America/New_York"))

    assert slots[0].label == "10:00"
    assert slots[0].date == day
    assert slots[0].starts_at == datetime(2030, 7, 1, 14, tzinfo=timezone.utc)


def test_day_window_clamps_today_to_now():
    tz = ZoneInfo("UTC")
    now = datetime(2030, 1, 1, 15, 30, tzinfo=timezone.utc)

    start, end = day_window(now.date(), tz, now=now)

    assert start > now
    assert end == datetime(2030, 1, 1, 23, 59, 59, tzinfo=tz)


def test_resolve_timezone_rejects_unknown_names():
    with pytest.raises(ValueError):
        resolve_timezone("Mars/Olympus_Mons")
    assert resolve_timezone(None).key == "UTC"
