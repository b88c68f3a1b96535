"""
Security Utilities
Token encryption at rest, signed OAuth state, and log masking
"""

import logging
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from .config import SECRET_KEY

logger = logging.getLogger(__name__)

OAUTH_STATE_SALT = "calendly-oauth-state"
OAUTH_STATE_MAX_AGE = 600


# ============================================================================
# TOKEN ENCRYPTION
# ============================================================================


class TokenDecryptionError(Exception):
    """Raised when a stored token cannot be decrypted with the configured key"""

    pass


class TokenCipher:
    """Fernet wrapper used for OAuth tokens stored in the database"""

    def __init__(self, key: str):
        if not key:
            raise ValueError("TOKEN_ENCRYPTION_KEY is required to store OAuth tokens")
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as e:
            raise TokenDecryptionError("Stored token could not be decrypted") from e


# ============================================================================
# SIGNED STATE
# ============================================================================


def generate_timed_token(data: dict[str, Any], salt: str = OAUTH_STATE_SALT) -> str:
    """
    Generate a time-limited token using itsdangerous.
    Used as the OAuth `state` parameter so the callback can trust the mentor id.
    """
    serializer = URLSafeTimedSerializer(SECRET_KEY)
    return serializer.dumps(data, salt=salt)


def verify_timed_token(
    token: str, max_age: int = OAUTH_STATE_MAX_AGE, salt: str = OAUTH_STATE_SALT
) -> Optional[dict[str, Any]]:
    """
    Verify and decode a timed token

    Returns:
        Decoded data if valid, None if invalid or expired
    """
    serializer = URLSafeTimedSerializer(SECRET_KEY)
    try:
        return serializer.loads(token, salt=salt, max_age=max_age)
    except SignatureExpired:
        logger.warning("Token expired")
        return None
    except BadSignature:
        logger.warning("Invalid token signature")
        return None


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """
    Mask sensitive data for logging/display

    Args:
        data: Sensitive data to mask
        visible_chars: Number of characters to show at the end

    Returns:
        Masked string
    """
    if not data:
        return ""
    if len(data) <= visible_chars:
        return "*" * len(data)

    return "*" * (len(data) - visible_chars) + data[-visible_chars:]
