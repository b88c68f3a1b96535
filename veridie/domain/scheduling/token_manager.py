"""
Token lifecycle - keeps a mentor's Calendly access token usable.

Tokens are refreshed proactively once they are within the buffer window of
their expiry. Refreshes for one mentor are serialized inside this process;
across processes duplicate refreshes are tolerated because the store writes
the whole token triple in a single last-write-wins UPDATE.
"""

import asyncio
import logging
import weakref
from datetime import datetime, timedelta, timezone
from typing import Optional

from ...config import CALENDLY_TOKEN_REFRESH_BUFFER_MINUTES
from ...security_utils import TokenDecryptionError, mask_sensitive_data
from ...services.calendly_service import CalendlyService
from .credential_store import CredentialSnapshot, CredentialStore
from .errors import ConfigurationError, NotConnected, ProviderError, ProviderUnavailable, RefreshFailed

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_BUFFER = timedelta(minutes=CALENDLY_TOKEN_REFRESH_BUFFER_MINUTES)

# Per-mentor refresh locks; entries vanish once no coroutine holds them
_refresh_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _refresh_lock(mentor_id: str) -> asyncio.Lock:
    lock = _refresh_locks.get(mentor_id)
    if lock is None:
        lock = asyncio.Lock()
        _refresh_locks[mentor_id] = lock
    return lock


class TokenLifecycleManager:
    """Hands out valid Calendly access tokens, refreshing them when needed"""

    def __init__(
        self,
        store: CredentialStore,
        calendly: CalendlyService,
        refresh_buffer: timedelta = DEFAULT_REFRESH_BUFFER,
    ):
        self.store = store
        self.calendly = calendly
        self.refresh_buffer = refresh_buffer

    def is_expired(self, credential: CredentialSnapshot, now: Optional[datetime] = None) -> bool:
        if credential.expires_at is None:
            return True
        now = now or datetime.now(timezone.utc)
        return credential.expires_at - now < self.refresh_buffer

    def _load_connected(self, mentor_id: str) -> CredentialSnapshot:
        try:
            credential = self.store.load(mentor_id)
        except TokenDecryptionError as e:
            logger.error(f"❌ Stored Calendly credential for mentor {mentor_id} is unreadable")
            raise RefreshFailed(mentor_id, "stored credential is unreadable") from e
        if credential is None or not credential.connected:
            raise NotConnected(mentor_id)
        return credential

    def _require_configuration(self) -> None:
        if self.calendly.config is None:
            raise ConfigurationError(
                "Calendly OAuth is not configured: set CALENDLY_CLIENT_ID and CALENDLY_CLIENT_SECRET"
            )

    async def ensure_valid_token(self, mentor_id: str) -> str:
        """
        Return an access token that stays valid for at least the buffer window.

        Raises:
            ConfigurationError: OAuth client credentials are missing
            NotConnected: the mentor has no connected credential
            RefreshFailed: Calendly rejected the refresh token (reconnect needed)
            ProviderUnavailable: Calendly could not be reached (retryable)
        """
        self._require_configuration()
        credential = self._load_connected(mentor_id)
        if not self.is_expired(credential):
            return credential.access_token

        async with _refresh_lock(mentor_id):
            # Another coroutine may have refreshed while we waited
            credential = self._load_connected(mentor_id)
            if not self.is_expired(credential):
                return credential.access_token
            logger.info(f"🔄 Calendly token for mentor {mentor_id} expires soon, refreshing")
            return await self._refresh(credential)

    async def force_refresh(self, mentor_id: str, rejected_token: str) -> str:
        """
        Refresh regardless of the stored expiry, after Calendly rejected `rejected_token`.

        If the stored token already differs from the rejected one, someone else
        refreshed in the meantime and that token is returned as is.
        """
        self._require_configuration()
        async with _refresh_lock(mentor_id):
            credential = self._load_connected(mentor_id)
            if credential.access_token != rejected_token and not self.is_expired(credential):
                return credential.access_token
            logger.info(
                f"🔄 Forcing Calendly token refresh for mentor {mentor_id} "
                f"(rejected token {mask_sensitive_data(rejected_token)})"
            )
            return await self._refresh(credential)

    async def _refresh(self, credential: CredentialSnapshot) -> str:
        mentor_id = credential.mentor_id
        if not credential.refresh_token:
            raise RefreshFailed(mentor_id, "no refresh token stored")

        try:
            grant = await self.calendly.refresh_access_token(credential.refresh_token)
        except ProviderUnavailable:
            logger.warning(f"⚠️ Calendly unavailable while refreshing token for mentor {mentor_id}")
            raise
        except ProviderError as e:
            # A concurrent refresh elsewhere rotates the refresh token and invalidates ours
            latest = self.store.load(mentor_id)
            if (
                latest is not None
                and latest.connected
                and latest.refresh_token != credential.refresh_token
                and not self.is_expired(latest)
            ):
                logger.info(f"ℹ️ Token for mentor {mentor_id} was refreshed concurrently")
                return latest.access_token
            logger.error(
                f"❌ Calendly refused token refresh for mentor {mentor_id}: {e.status_code}"
            )
            raise RefreshFailed(mentor_id, str(e)) from e

        if not self.store.replace_tokens(mentor_id, grant, credential.refresh_token):
            # Disconnected while the refresh was in flight
            raise NotConnected(mentor_id)

        logger.info(f"✅ Calendly token refreshed for mentor {mentor_id}")
        return grant.access_token
