"""Credential store - the only writer of CalendlyCredential rows"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from ...models import CalendlyCredential
from ...security_utils import TokenCipher
from ...services.calendly_service import TokenGrant

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class CredentialSnapshot:
    """Decrypted, read-only view of a stored credential"""

    mentor_id: str
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    provider_user_ref: Optional[str]
    organization_uri: Optional[str]
    last_refreshed_at: Optional[datetime]

    @property
    def connected(self) -> bool:
        return self.access_token is not None


class CredentialStore:
    """Reads and writes a mentor's Calendly OAuth credential"""

    def __init__(self, db: Session, cipher: TokenCipher):
        self.db = db
        self.cipher = cipher

    def _snapshot(self, row: CalendlyCredential) -> CredentialSnapshot:
        return CredentialSnapshot(
            mentor_id=row.mentor_id,
            access_token=self.cipher.decrypt(row.access_token),
            refresh_token=self.cipher.decrypt(row.refresh_token),
            expires_at=as_utc(row.token_expires_at),
            provider_user_ref=row.calendly_user_uri,
            organization_uri=row.calendly_organization_uri,
            last_refreshed_at=as_utc(row.last_refreshed_at),
        )

    def load(self, mentor_id: str) -> Optional[CredentialSnapshot]:
        """Read the current stored credential, bypassing any cached row state"""
        row = (
            self.db.query(CalendlyCredential)
            .populate_existing()
            .filter(CalendlyCredential.mentor_id == mentor_id)
            .first()
        )
        if row is None:
            return None
        return self._snapshot(row)

    def save_new_credential(
        self,
        mentor_id: str,
        grant: TokenGrant,
        user_uri: Optional[str],
        organization_uri: Optional[str] = None,
    ) -> CredentialSnapshot:
        """Create or overwrite the credential after a successful OAuth authorization"""
        now = datetime.now(timezone.utc)
        row = (
            self.db.query(CalendlyCredential)
            .filter(CalendlyCredential.mentor_id == mentor_id)
            .first()
        )
        if row is None:
            row = CalendlyCredential(mentor_id=mentor_id)
            self.db.add(row)

        row.access_token = self.cipher.encrypt(grant.access_token)
        row.refresh_token = self.cipher.encrypt(grant.refresh_token)
        row.token_expires_at = grant.expires_at
        row.last_refreshed_at = now
        row.calendly_user_uri = user_uri or grant.owner_uri
        row.calendly_organization_uri = organization_uri or grant.organization_uri
        self.db.commit()
        self.db.refresh(row)

        logger.info(f"✅ Stored Calendly credential for mentor {mentor_id}")
        return self._snapshot(row)

    def replace_tokens(self, mentor_id: str, grant: TokenGrant, previous_refresh_token: str) -> bool:
        """
        Overwrite access token, refresh token and expiry in one UPDATE.

        All three columns are written together so a concurrent reader never
        sees a mixed pair; the last writer wins. Rows that were disconnected in
        the meantime are left alone.

        Returns:
            True if a connected credential was updated
        """
        refresh_token = grant.refresh_token or previous_refresh_token
        updated = (
            self.db.query(CalendlyCredential)
            .filter(
                CalendlyCredential.mentor_id == mentor_id,
                CalendlyCredential.access_token.isnot(None),
            )
            .update(
                {
                    CalendlyCredential.access_token: self.cipher.encrypt(grant.access_token),
                    CalendlyCredential.refresh_token: self.cipher.encrypt(refresh_token),
                    CalendlyCredential.token_expires_at: grant.expires_at,
                    CalendlyCredential.last_refreshed_at: datetime.now(timezone.utc),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated == 1

    def disconnect(self, mentor_id: str) -> bool:
        """Null every token field; the row itself is kept"""
        updated = (
            self.db.query(CalendlyCredential)
            .filter(CalendlyCredential.mentor_id == mentor_id)
            .update(
                {
                    CalendlyCredential.access_token: None,
                    CalendlyCredential.refresh_token: None,
                    CalendlyCredential.token_expires_at: None,
                    CalendlyCredential.calendly_user_uri: None,
                    CalendlyCredential.calendly_organization_uri: None,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        if updated:
            logger.info(f"🔌 Disconnected Calendly for mentor {mentor_id}")
        return updated == 1
