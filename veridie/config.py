import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./veridie.db")

# Public base URL of this API (used for OAuth callback and webhook URLs)
BASE_URL = os.getenv("BASE_URL", "http://localhost:8000").rstrip("/")

# Frontend base URL for redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")

# Security - signs OAuth state tokens
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION",
        RuntimeWarning,
        stacklevel=2,
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Fernet key for OAuth tokens at rest (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")
TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY")

# Calendly OAuth Configuration
CALENDLY_CLIENT_ID = os.getenv("CALENDLY_CLIENT_ID")
CALENDLY_CLIENT_SECRET = os.getenv("CALENDLY_CLIENT_SECRET")
CALENDLY_REDIRECT_URI = os.getenv("CALENDLY_REDIRECT_URI", f"{BASE_URL}/calendly/callback")
# Webhook signing key from the Calendly webhook subscription
CALENDLY_WEBHOOK_SECRET = os.getenv("CALENDLY_WEBHOOK_SECRET")
# Refresh tokens this long before they expire (clock skew + in-flight latency)
CALENDLY_TOKEN_REFRESH_BUFFER_MINUTES = int(
    os.getenv("CALENDLY_TOKEN_REFRESH_BUFFER_MINUTES", "30")
)

# Timeout for token and availability calls to external providers
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))

# Stripe Configuration
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "usd")
# Platform share of each session price, transferred minus this fee to the mentor
PLATFORM_FEE_PERCENT = float(os.getenv("PLATFORM_FEE_PERCENT", "20"))

# Webhook signature replay window
WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))


@dataclass(frozen=True)
class CalendlyOAuthConfig:
    """Calendly OAuth client credentials, complete or absent."""

    client_id: str
    client_secret: str
    redirect_uri: str

    @classmethod
    def from_env(cls) -> Optional["CalendlyOAuthConfig"]:
        """Build from the module settings; None when any credential is missing"""
        if not CALENDLY_CLIENT_ID or not CALENDLY_CLIENT_SECRET:
            return None
        return cls(
            client_id=CALENDLY_CLIENT_ID,
            client_secret=CALENDLY_CLIENT_SECRET,
            redirect_uri=CALENDLY_REDIRECT_URI,
        )
