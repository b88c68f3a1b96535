import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from ..config import PROVIDER_TIMEOUT_SECONDS, CalendlyOAuthConfig
from ..domain.scheduling.errors import ConfigurationError, ProviderError, ProviderUnavailable

logger = logging.getLogger(__name__)

# Keep enough of an error body for diagnostics without flooding logs
MAX_ERROR_BODY_CHARS = 500


@dataclass(frozen=True)
class TokenGrant:
    """Token triple returned by the Calendly token endpoint"""

    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    owner_uri: Optional[str] = None
    organization_uri: Optional[str] = None


def _truncate(text: str) -> str:
    return text[:MAX_ERROR_BODY_CHARS]


def _json(response: httpx.Response) -> dict[str, Any]:
    """Decode a successful Calendly response, which is always a JSON object"""
    try:
        data = response.json()
    except ValueError as e:
        raise ProviderError(
            "Calendly returned a non-JSON body",
            status_code=response.status_code,
            body=_truncate(response.text),
        ) from e
    if not isinstance(data, dict):
        raise ProviderError("Calendly returned an unexpected JSON body", status_code=response.status_code)
    return data


class CalendlyService:
    """Service for interacting with Calendly API"""

    BASE_URL = "https://api.calendly.com"
    AUTH_URL = "https://auth.calendly.com/oauth/authorize"
    TOKEN_URL = "https://auth.calendly.com/oauth/token"  # noqa: S105 - OAuth endpoint URL

    def __init__(
        self,
        config: Optional[CalendlyOAuthConfig] = None,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ):
        self.config = config
        self.timeout = timeout

    def _require_config(self) -> CalendlyOAuthConfig:
        if self.config is None:
            logger.error("CALENDLY_CLIENT_ID / CALENDLY_CLIENT_SECRET not configured")
            raise ConfigurationError(
                "Calendly OAuth is not configured: set CALENDLY_CLIENT_ID and CALENDLY_CLIENT_SECRET"
            )
        return self.config

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Issue a request and map failures onto the integration error taxonomy.

        Transport errors, timeouts and 5xx become ProviderUnavailable; any other
        non-2xx becomes ProviderError carrying the status and a truncated body.
        Headers are never included in error messages.
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"⏱️ Calendly request timed out: {method} {url}")
            raise ProviderUnavailable(f"Calendly request timed out: {method} {url}") from e
        except httpx.TransportError as e:
            logger.warning(f"🔌 Calendly unreachable: {method} {url}: {type(e).__name__}")
            raise ProviderUnavailable(f"Calendly unreachable: {type(e).__name__}") from e

        if response.is_success:
            return response

        body = _truncate(response.text)
        if response.status_code >= 500:
            logger.warning(f"⚠️ Calendly {response.status_code} for {method} {url}")
            raise ProviderUnavailable(
                f"Calendly returned {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        logger.error(f"❌ Calendly {response.status_code} for {method} {url}: {body}")
        raise ProviderError(
            f"Calendly returned {response.status_code}",
            status_code=response.status_code,
            body=body,
        )

    @staticmethod
    def _parse_token_grant(data: dict[str, Any]) -> TokenGrant:
        access_token = data.get("access_token")
        expires_in = data.get("expires_in")
        if not access_token or expires_in is None:
            raise ProviderError("Calendly token response is missing access_token or expires_in")
        try:
            lifetime = timedelta(seconds=int(expires_in))
        except (TypeError, ValueError) as e:
            raise ProviderError(f"Calendly token response has a non-numeric expires_in: {expires_in!r}") from e
        return TokenGrant(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=datetime.now(timezone.utc) + lifetime,
            owner_uri=data.get("owner"),
            organization_uri=data.get("organization"),
        )

    def get_authorization_url(self, state: str) -> str:
        """Generate OAuth authorization URL"""
        config = self._require_config()
        params = {
            "client_id": config.client_id,
            "response_type": "code",
            "redirect_uri": config.redirect_uri,
            "state": state,
        }
        logger.info(f"🔗 Generating authorization URL with redirect_uri: {config.redirect_uri}")
        return f"{self.AUTH_URL}?{urlencode(params)}"

    async def exchange_code_for_token(self, code: str) -> TokenGrant:
        """Exchange authorization code for access token"""
        config = self._require_config()
        logger.info(f"🔄 Exchanging OAuth code for token with redirect_uri: {config.redirect_uri}")
        response = await self._send(
            "POST",
            self.TOKEN_URL,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "redirect_uri": config.redirect_uri,
            },
            headers={"Accept": "application/json"},
        )
        return self._parse_token_grant(_json(response))

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        """Refresh expired access token"""
        config = self._require_config()
        response = await self._send(
            "POST",
            self.TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": config.client_id,
                "client_secret": config.client_secret,
            },
            headers={"Accept": "application/json"},
        )
        return self._parse_token_grant(_json(response))

    async def get_user_info(self, access_token: str) -> dict[str, Any]:
        """Get current user information"""
        response = await self._send(
            "GET",
            f"{self.BASE_URL}/users/me",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        return _json(response)

    async def list_event_types(self, access_token: str, user_uri: str) -> dict[str, Any]:
        """List user's event types"""
        response = await self._send(
            "GET",
            f"{self.BASE_URL}/event_types",
            headers={"Authorization": f"Bearer {access_token}"},
            params={"user": user_uri, "active": "true"},
        )
        return _json(response)

    async def get_available_times(
        self,
        access_token: str,
        event_type_uri: str,
        start_time: datetime,
        end_time: datetime,
        timezone_name: str,
    ) -> list[dict[str, Any]]:
        """
        List open start times of an event type inside [start_time, end_time].

        Returns the raw `collection` entries; a 401 surfaces as ProviderError
        with status_code 401 so the caller can refresh and retry.
        """
        response = await self._send(
            "GET",
            f"{self.BASE_URL}/event_type_available_times",
            headers={"Authorization": f"Bearer {access_token}"},
            params={
                "event_type": event_type_uri,
                "start_time": start_time.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000000Z"),
                "end_time": end_time.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000000Z"),
                "timezone": timezone_name,
            },
        )
        data = _json(response)
        collection = data.get("collection")
        if not isinstance(collection, list):
            raise ProviderError(
                "Calendly availability response has no collection",
                status_code=response.status_code,
                body=_truncate(response.text),
            )
        return collection

    def generate_scheduling_link(
        self,
        event_type_url: str,
        prefill_data: Optional[dict] = None,
        booking_id: Optional[str] = None,
    ) -> str:
        """
        Generate a scheduling link with prefilled data

        Args:
            event_type_url: The Calendly event type scheduling URL
            prefill_data: Optional dict with 'name' and 'email' for prefilling
            booking_id: Local booking id, echoed back by Calendly in the
                invitee's `tracking.utm_content` for webhook correlation

        Returns:
            Complete scheduling URL with prefilled parameters
        """
        params = {}
        if prefill_data:
            if prefill_data.get("name"):
                params["name"] = prefill_data["name"]
            if prefill_data.get("email"):
                params["email"] = prefill_data["email"]
        if booking_id:
            params["utm_source"] = "veridie"
            params["utm_content"] = f"booking:{booking_id}"

        if not params:
            return event_type_url

        separator = "?" if "?" not in event_type_url else "&"
        return f"{event_type_url}{separator}{urlencode(params)}"

    async def create_webhook_subscription(
        self,
        access_token: str,
        url: str,
        events: list[str],
        organization_uri: str,
        user_uri: str,
        signing_key: Optional[str] = None,
        scope: str = "user",
    ) -> dict[str, Any]:
        """
        Create a webhook subscription

        Args:
            access_token: Calendly access token
            url: Your webhook endpoint URL
            events: List of events to subscribe to (e.g., ['invitee.created', 'invitee.canceled'])
            organization_uri: Organization URI from user info
            user_uri: User URI, required for user-scoped subscriptions
            signing_key: Secret Calendly signs deliveries with
            scope: 'organization' or 'user'
        """
        payload = {
            "url": url,
            "events": events,
            "organization": organization_uri,
            "user": user_uri,
            "scope": scope,
        }
        if signing_key:
            payload["signing_key"] = signing_key

        response = await self._send(
            "POST",
            f"{self.BASE_URL}/webhook_subscriptions",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            json=payload,
        )
        return _json(response)
