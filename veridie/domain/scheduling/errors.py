"""Calendly integration errors - typed so callers can offer "reconnect" vs "try again" """

from typing import Optional


class CalendlyIntegrationError(Exception):
    """Base class for token and availability failures"""

    needs_reconnect = False
    retryable = False


class ConfigurationError(CalendlyIntegrationError):
    """Calendly OAuth client credentials are not configured"""


class NotConnected(CalendlyIntegrationError):
    """Mentor has no Calendly credential (never connected or disconnected)"""

    needs_reconnect = True

    def __init__(self, mentor_id: str):
        super().__init__(f"Mentor {mentor_id} has not connected Calendly")
        self.mentor_id = mentor_id


class RefreshFailed(CalendlyIntegrationError):
    """Calendly rejected the refresh token. Terminal: the mentor must reconnect."""

    needs_reconnect = True

    def __init__(self, mentor_id: str, reason: str = "refresh token rejected"):
        super().__init__(f"Calendly token refresh failed for mentor {mentor_id}: {reason}")
        self.mentor_id = mentor_id
        self.reason = reason


class ProviderError(CalendlyIntegrationError):
    """Calendly answered with a non-success status"""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProviderUnavailable(ProviderError):
    """Network failure, timeout or 5xx. Safe to retry with backoff."""

    retryable = True


class AuthenticationFailed(CalendlyIntegrationError):
    """Calendly still answered 401 after a forced token refresh"""

    def __init__(self, mentor_id: str, needs_reconnect: bool = True):
        super().__init__(f"Calendly rejected the credentials of mentor {mentor_id}")
        self.mentor_id = mentor_id
        self.needs_reconnect = needs_reconnect
