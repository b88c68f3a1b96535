"""
Webhook Security Module

Signature verification for the Calendly and Stripe webhook endpoints.
- Verifiers only accept the raw request body; JSON is parsed after verification
- Constant-time signature comparison
- Timestamp validation against replay
- A verifier without a configured secret rejects everything
"""

import hashlib
import hmac
import logging
import time
from typing import Optional, Union

import stripe
from fastapi import HTTPException, Request

from .config import WEBHOOK_TOLERANCE_SECONDS

logger = logging.getLogger(__name__)

RawBody = Union[bytes, bytearray, str]


class VerificationFailed(Exception):
    """Raised when a webhook delivery is not authentic or does not match its schema"""

    pass


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_timestamp(timestamp: Optional[str], max_age: int = WEBHOOK_TOLERANCE_SECONDS) -> bool:
    """
    Verify webhook timestamp is within acceptable range.
    Prevents replay attacks by rejecting old webhooks.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds

    Returns:
        True if timestamp is valid, False otherwise
    """
    if not timestamp:
        return False

    try:
        age = abs(int(time.time()) - int(timestamp))
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False

    if age > max_age:
        logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
        return False
    return True


def _raw_bytes(raw_body: RawBody) -> bytes:
    if isinstance(raw_body, (bytes, bytearray)):
        return bytes(raw_body)
    if isinstance(raw_body, str):
        return raw_body.encode("utf-8")
    raise TypeError(
        f"Webhook verification needs the raw request body, got {type(raw_body).__name__}"
    )


class WebhookVerifier:
    """Base verifier; one instance per provider with its secret bound at construction"""

    provider = "generic"
    signature_header = "X-Signature"

    def __init__(self, secret: Optional[str], tolerance: int = WEBHOOK_TOLERANCE_SECONDS):
        self.secret = secret
        self.tolerance = tolerance

    @property
    def configured(self) -> bool:
        return bool(self.secret)

    def verify(self, raw_body: RawBody, signature_header: Optional[str]) -> bool:
        """
        Check a delivery's signature. Returns False on any failure, never raises
        for bad input; passing an already-parsed payload is a TypeError.
        """
        body = _raw_bytes(raw_body)

        if not self.secret:
            logger.error(f"❌ {self.provider} webhook secret not configured - rejecting delivery")
            return False
        if not signature_header or not signature_header.strip():
            logger.warning(f"🚫 {self.provider} webhook missing signature header")
            return False

        try:
            is_valid = self._verify(body, signature_header.strip())
        except Exception as e:
            logger.warning(f"🚫 {self.provider} webhook signature check errored: {type(e).__name__}")
            return False

        if is_valid:
            logger.debug(f"✅ {self.provider} webhook signature verified")
        else:
            logger.warning(f"🚫 {self.provider} webhook signature mismatch")
        return is_valid

    def _verify(self, body: bytes, signature_header: str) -> bool:
        raise NotImplementedError


class CalendlyWebhookVerifier(WebhookVerifier):
    """
    Calendly signs deliveries with HMAC-SHA256 under the subscription's signing key.

    Accepted header forms:
    - "t=<unix>,v1=<hex>" (signed message "<t>.<body>", timestamp checked)
    - "sha256=<hex>" or a bare "<hex>" (signed message is the body itself)
    """

    provider = "calendly"
    signature_header = "Calendly-Webhook-Signature"

    def _verify(self, body: bytes, signature_header: str) -> bool:
        if "v1=" in signature_header:
            elements = dict(
                item.strip().split("=", 1) for item in signature_header.split(",") if "=" in item
            )
            timestamp = elements.get("t")
            signature = elements.get("v1")
            if not timestamp or not signature:
                return False
            if not verify_timestamp(timestamp, self.tolerance):
                return False
            expected = compute_hmac_sha256(self.secret, timestamp.encode("utf-8") + b"." + body)
            return constant_time_compare(expected, signature.lower())

        signature = signature_header
        if signature.startswith("sha256="):
            signature = signature[len("sha256=") :]
        expected = compute_hmac_sha256(self.secret, body)
        return constant_time_compare(expected, signature.lower())


class StripeWebhookVerifier(WebhookVerifier):
    """Stripe's signed envelope ("t=<unix>,v1=<hex>") checked by the Stripe SDK"""

    provider = "stripe"
    signature_header = "Stripe-Signature"

    def _verify(self, body: bytes, signature_header: str) -> bool:
        try:
            stripe.Webhook.construct_event(
                body, signature_header, self.secret, tolerance=self.tolerance
            )
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning(f"🚫 Stripe signature verification failed: {e}")
            return False
        return True


async def read_verified_body(request: Request, verifier: WebhookVerifier) -> bytes:
    """
    Read the raw body BEFORE any parsing and verify it.

    Raises:
        HTTPException(401) when the delivery is not authentic
    """
    raw_body = await request.body()
    signature = request.headers.get(verifier.signature_header, "")
    if not verifier.verify(raw_body, signature):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    return raw_body


def create_webhook_signature(
    secret: str, payload: bytes, provider: str = "generic", timestamp: Optional[int] = None
) -> str:
    """
    Create a webhook signature for testing or outgoing webhooks.

    Args:
        secret: Signing secret
        payload: Request body bytes
        provider: Provider format ('generic', 'calendly', 'stripe')
        timestamp: Unix time to sign with (defaults to now)

    Returns:
        Signature string in provider's format
    """
    if provider in ("calendly", "stripe"):
        timestamp = int(time.time()) if timestamp is None else timestamp
        sig = compute_hmac_sha256(secret, f"{timestamp}.".encode("utf-8") + payload)
        return f"t={timestamp},v1={sig}"
    return compute_hmac_sha256(secret, payload)
