import asyncio
import logging
from datetime import date, datetime
from typing import Any, Awaitable, Optional, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..config import BASE_URL, CALENDLY_WEBHOOK_SECRET, TOKEN_ENCRYPTION_KEY, CalendlyOAuthConfig
from ..database import get_db
from ..domain.scheduling.availability import AvailabilityFetcher, resolve_timezone
from ..domain.scheduling.credential_store import CredentialStore
from ..domain.scheduling.errors import (
    AuthenticationFailed,
    CalendlyIntegrationError,
    ConfigurationError,
    NotConnected,
    ProviderError,
    ProviderUnavailable,
    RefreshFailed,
)
from ..domain.scheduling.token_manager import TokenLifecycleManager
from ..models import Mentor, Service
from ..rate_limiter import create_rate_limiter
from ..security_utils import TokenCipher, generate_timed_token, verify_timed_token
from ..services.calendly_service import CalendlyService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendly", tags=["calendly"])

rate_limit_availability = create_rate_limiter(
    limit=60, window_seconds=60, key_prefix="calendly_availability", use_ip=True
)

WEBHOOK_EVENTS = ["invitee.created", "invitee.canceled"]

# How often a pending availability request checks whether its caller is gone
DISCONNECT_POLL_SECONDS = 0.5

T = TypeVar("T")


class CalendlyOAuthResponse(BaseModel):
    authorization_url: str
    state: str


class CalendlyTokenRequest(BaseModel):
    code: str
    state: str


class CalendlyConnectionStatus(BaseModel):
    connected: bool
    calendly_user_uri: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None


class AvailableSlot(BaseModel):
    time: str
    start_time: datetime
    scheduling_url: Optional[str] = None


class AvailableTimesResponse(BaseModel):
    mentor_id: str
    date: date
    timezone: str
    slots: list[AvailableSlot]


# ============================================================================
# DEPENDENCIES
# ============================================================================


def get_calendly_service() -> CalendlyService:
    return CalendlyService(CalendlyOAuthConfig.from_env())


def get_token_cipher() -> TokenCipher:
    if not TOKEN_ENCRYPTION_KEY:
        logger.error("❌ TOKEN_ENCRYPTION_KEY not configured")
        raise HTTPException(status_code=500, detail="Token encryption is not configured")
    return TokenCipher(TOKEN_ENCRYPTION_KEY)


def get_credential_store(
    db: Session = Depends(get_db), cipher: TokenCipher = Depends(get_token_cipher)
) -> CredentialStore:
    return CredentialStore(db, cipher)


def get_token_manager(
    store: CredentialStore = Depends(get_credential_store),
    calendly: CalendlyService = Depends(get_calendly_service),
) -> TokenLifecycleManager:
    return TokenLifecycleManager(store, calendly)


def get_availability_fetcher(
    tokens: TokenLifecycleManager = Depends(get_token_manager),
    calendly: CalendlyService = Depends(get_calendly_service),
) -> AvailabilityFetcher:
    return AvailabilityFetcher(tokens, calendly)


def _get_mentor(db: Session, mentor_id: str) -> Mentor:
    mentor = db.query(Mentor).filter(Mentor.id == mentor_id).first()
    if not mentor:
        raise HTTPException(status_code=404, detail="Mentor not found")
    return mentor


def integration_error_response(e: CalendlyIntegrationError) -> JSONResponse:
    """Render an integration failure as 'reconnect' vs 'try again'"""
    if isinstance(e, (NotConnected, RefreshFailed, AuthenticationFailed)):
        status_code = 409
    elif isinstance(e, ProviderUnavailable):
        status_code = 503
    elif isinstance(e, ProviderError):
        status_code = 502
    else:
        # ConfigurationError and anything unforeseen
        status_code = 500
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(e),
            "needs_reconnect": e.needs_reconnect,
            "retryable": e.retryable,
        },
    )


async def run_until_disconnected(request: Request, awaitable: Awaitable[T]) -> Optional[T]:
    """
    Await `awaitable`, cancelling it if the client goes away first.

    Returns None when the client disconnected.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("🛑 Client disconnected, cancelling Calendly request")
                task.cancel()
                return None
    finally:
        if not task.done():
            task.cancel()


# ============================================================================
# OAUTH CONNECTION
# ============================================================================


@router.get("/connect", response_model=CalendlyOAuthResponse)
async def initiate_calendly_connection(
    mentor_id: str = Query(...),
    db: Session = Depends(get_db),
    calendly: CalendlyService = Depends(get_calendly_service),
):
    """Initiate Calendly OAuth flow; the signed state carries the mentor id"""
    _get_mentor(db, mentor_id)
    state = generate_timed_token({"mentor_id": mentor_id})
    try:
        auth_url = calendly.get_authorization_url(state)
    except ConfigurationError as e:
        return integration_error_response(e)
    return CalendlyOAuthResponse(authorization_url=auth_url, state=state)


@router.post("/callback")
async def calendly_oauth_callback(
    data: CalendlyTokenRequest,
    db: Session = Depends(get_db),
    store: CredentialStore = Depends(get_credential_store),
    calendly: CalendlyService = Depends(get_calendly_service),
):
    """Handle OAuth callback and store tokens"""
    state = verify_timed_token(data.state)
    if not state or not state.get("mentor_id"):
        raise HTTPException(status_code=400, detail="Invalid or expired OAuth state")
    mentor = _get_mentor(db, state["mentor_id"])

    try:
        grant = await calendly.exchange_code_for_token(data.code)
        user_info = await calendly.get_user_info(grant.access_token)
    except CalendlyIntegrationError as e:
        logger.error(f"❌ Failed to connect Calendly for mentor {mentor.id}: {str(e)}")
        return integration_error_response(e)

    resource = user_info.get("resource", {})
    user_uri = resource.get("uri")
    organization_uri = resource.get("current_organization")
    store.save_new_credential(mentor.id, grant, user_uri, organization_uri)

    # Webhook subscription is best effort; the connection stands without it
    webhook_subscribed = False
    if user_uri and organization_uri:
        try:
            await calendly.create_webhook_subscription(
                grant.access_token,
                url=f"{BASE_URL}/webhooks/calendly/events",
                events=WEBHOOK_EVENTS,
                organization_uri=organization_uri,
                user_uri=user_uri,
                signing_key=CALENDLY_WEBHOOK_SECRET,
            )
            webhook_subscribed = True
        except ProviderError as webhook_err:
            logger.warning(f"⚠️ Failed to create Calendly webhook subscription: {webhook_err}")

    return {
        "message": "Calendly connected successfully",
        "email": resource.get("email"),
        "webhook_subscribed": webhook_subscribed,
    }


@router.get("/mentors/{mentor_id}/status", response_model=CalendlyConnectionStatus)
async def get_calendly_status(
    mentor_id: str,
    db: Session = Depends(get_db),
    store: CredentialStore = Depends(get_credential_store),
):
    """Get Calendly connection status"""
    _get_mentor(db, mentor_id)
    credential = store.load(mentor_id)
    if not credential or not credential.connected:
        return CalendlyConnectionStatus(connected=False)
    return CalendlyConnectionStatus(
        connected=True,
        calendly_user_uri=credential.provider_user_ref,
        token_expires_at=credential.expires_at,
        last_refreshed_at=credential.last_refreshed_at,
    )


@router.post("/mentors/{mentor_id}/disconnect")
async def disconnect_calendly(
    mentor_id: str,
    db: Session = Depends(get_db),
    store: CredentialStore = Depends(get_credential_store),
):
    """Disconnect Calendly integration"""
    _get_mentor(db, mentor_id)
    if not store.disconnect(mentor_id):
        raise HTTPException(status_code=404, detail="No Calendly integration found")
    return {"message": "Calendly disconnected successfully"}


@router.get("/mentors/{mentor_id}/event-types")
async def get_event_types(
    mentor_id: str,
    db: Session = Depends(get_db),
    tokens: TokenLifecycleManager = Depends(get_token_manager),
    calendly: CalendlyService = Depends(get_calendly_service),
):
    """List the mentor's active Calendly event types"""
    _get_mentor(db, mentor_id)
    try:
        access_token = await tokens.ensure_valid_token(mentor_id)
        credential = tokens.store.load(mentor_id)
        event_types_data = await calendly.list_event_types(
            access_token, credential.provider_user_ref if credential else None
        )
    except CalendlyIntegrationError as e:
        return integration_error_response(e)

    event_types: list[dict[str, Any]] = [
        {
            "uri": et.get("uri"),
            "name": et.get("name"),
            "duration": et.get("duration"),
            "booking_url": et.get("scheduling_url"),
        }
        for et in event_types_data.get("collection", [])
    ]
    return {"event_types": event_types}


# ============================================================================
# AVAILABILITY
# ============================================================================


@router.get("/mentors/{mentor_id}/available-times", response_model=AvailableTimesResponse)
async def get_available_times(
    mentor_id: str,
    request: Request,
    date: date = Query(..., description="Day to list, YYYY-MM-DD"),
    service_id: str = Query(...),
    timezone: Optional[str] = Query(None, description="IANA timezone, defaults to the mentor's"),
    db: Session = Depends(get_db),
    fetcher: AvailabilityFetcher = Depends(get_availability_fetcher),
    _: None = Depends(rate_limit_availability),
):
    """Open Calendly start times for one of the mentor's services on a day"""
    mentor = _get_mentor(db, mentor_id)
    service = (
        db.query(Service).filter(Service.id == service_id, Service.mentor_id == mentor.id).first()
    )
    if not service:
        raise HTTPException(status_code=404, detail="Service not found for this mentor")
    if not service.calendly_event_type_uri:
        raise HTTPException(status_code=409, detail="Service has no Calendly event type")

    timezone_name = timezone or mentor.timezone
    try:
        resolve_timezone(timezone_name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    try:
        slots = await run_until_disconnected(
            request,
            fetcher.fetch_available_slots(
                mentor.id, service.calendly_event_type_uri, date, timezone_name
            ),
        )
    except CalendlyIntegrationError as e:
        logger.warning(f"⚠️ Availability for mentor {mentor.id} failed: {type(e).__name__}")
        return integration_error_response(e)

    if slots is None:
        # Nobody is listening any more
        return JSONResponse(status_code=499, content={"detail": "Client closed request"})

    return AvailableTimesResponse(
        mentor_id=mentor.id,
        date=date,
        timezone=timezone_name,
        slots=[
            AvailableSlot(
                time=slot.label,
                start_time=slot.starts_at,
                scheduling_url=slot.scheduling_url,
            )
            for slot in slots
        ],
    )
