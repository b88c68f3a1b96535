import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ...services.calendly_service import CalendlyService
from .errors import AuthenticationFailed, ProviderError
from .token_manager import TokenLifecycleManager

logger = logging.getLogger(__name__)

# Calendly rejects windows that start in the past
PAST_WINDOW_MARGIN = timedelta(minutes=1)


@dataclass(frozen=True)
class AvailabilitySlot:
    """An open start time on a given local day; valid only for the request that produced it"""

    date: date
    start_time: time
    starts_at: datetime
    scheduling_url: Optional[str] = None

    @property
    def label(self) -> str:
        return self.start_time.strftime("%H:%M")


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name}") from e


def day_window(day: date, tz: ZoneInfo, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """Local 00:00:00-23:59:59 of `day`, with the start clamped to just after now"""
    now = now or datetime.now(timezone.utc)
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day, time(23, 59, 59), tzinfo=tz)
    earliest = now + PAST_WINDOW_MARGIN
    if start < earliest:
        start = earliest.astimezone(tz)
    return start, end


def normalize_slots(entries: list[dict[str, Any]], day: date, tz: ZoneInfo) -> list[AvailabilitySlot]:
    """Turn Calendly available-time entries into sorted, de-duplicated local slots"""
    slots: dict[datetime, AvailabilitySlot] = {}
    for entry in entries:
        if entry.get("status", "available") != "available":
            continue
        raw_start = entry.get("start_time")
        if not raw_start:
            logger.warning("⚠️ Calendly availability entry without start_time skipped")
            continue
        try:
            starts_at = datetime.fromisoformat(raw_start.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"⚠️ Unparseable Calendly start_time skipped: {raw_start}")
            continue
        if starts_at.tzinfo is None:
            starts_at = starts_at.replace(tzinfo=timezone.utc)

        local = starts_at.astimezone(tz)
        if local.date() != day:
            continue
        slots[starts_at] = AvailabilitySlot(
            date=local.date(),
            start_time=local.time().replace(second=0, microsecond=0),
            starts_at=starts_at,
            scheduling_url=entry.get("scheduling_url"),
        )
    return [slots[key] for key in sorted(slots)]


class AvailabilityFetcher:
    """Fetches a mentor's open Calendly times for one day"""

    def __init__(self, tokens: TokenLifecycleManager, calendly: CalendlyService):
        self.tokens = tokens
        self.calendly = calendly

    async def fetch_available_slots(
        self,
        mentor_id: str,
        event_type_ref: str,
        day: date,
        timezone_name: Optional[str] = None,
    ) -> list[AvailabilitySlot]:
        """
        Return the open slots of `event_type_ref` on `day` (local to `timezone_name`).

        A 401 from Calendly triggers exactly one forced token refresh and one
        retry; a second 401 raises AuthenticationFailed. An empty list means no
        availability and is not an error.
        """
        tz = resolve_timezone(timezone_name)
        start, end = day_window(day, tz)
        if end <= start:
            return []

        access_token = await self.tokens.ensure_valid_token(mentor_id)
        try:
            entries = await self._query(access_token, event_type_ref, start, end, tz)
        except ProviderError as e:
            if e.status_code != 401:
                raise
            logger.warning(f"⚠️ Calendly rejected token for mentor {mentor_id}, refreshing once")
            access_token = await self.tokens.force_refresh(mentor_id, access_token)
            try:
                entries = await self._query(access_token, event_type_ref, start, end, tz)
            except ProviderError as retry_error:
                if retry_error.status_code == 401:
                    logger.error(f"❌ Calendly still rejects mentor {mentor_id} after refresh")
                    raise AuthenticationFailed(mentor_id, needs_reconnect=True) from retry_error
                raise

        slots = normalize_slots(entries, day, tz)
        logger.info(f"📅 {len(slots)} Calendly slots for mentor {mentor_id} on {day.isoformat()}")
        return slots

    async def _query(
        self,
        access_token: str,
        event_type_ref: str,
        start: datetime,
        end: datetime,
        tz: ZoneInfo,
    ) -> list[dict[str, Any]]:
        return await self.calendly.get_available_times(
            access_token, event_type_ref, start, end, tz.key
        )
