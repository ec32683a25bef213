"""
Stripe webhook signature verification.

Stripe signs each delivery with the endpoint secret and sends:

    Stripe-Signature: t=1700000000,v1=<hex hmac>,v1=<hex hmac>

where each v1 value is HMAC-SHA256(secret, f"{t}.{raw_body}"). More than
one v1 appears while a secret is being rolled.

SECURITY: Verification runs on the raw body before any parsing and uses a
constant-time comparison. Deliveries outside the timestamp tolerance are
rejected to limit replay.

Documentation: https://docs.stripe.com/webhooks#verify-manually
"""

import hashlib
import hmac
import logging
import time
from typing import List, Optional, Tuple

from thirsty.services.billing_errors import AuthenticityError

logger = logging.getLogger(__name__)

SIGNATURE_SCHEME = "v1"
DEFAULT_TOLERANCE_SECONDS = 300


def parse_signature_header(header: str) -> Tuple[int, List[str]]:
    """
    Split a Stripe-Signature header into its timestamp and v1 signatures.

    Raises:
        AuthenticityError: If the header has no timestamp or no v1 signature
    """
    timestamp: Optional[int] = None
    signatures: List[str] = []

    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise AuthenticityError("invalid signature timestamp") from None
        elif key == SIGNATURE_SCHEME:
            signatures.append(value)

    if timestamp is None:
        raise AuthenticityError("signature header has no timestamp")
    if not signatures:
        raise AuthenticityError("signature header has no v1 signature")
    return timestamp, signatures


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    """HMAC-SHA256 hex digest over "{timestamp}.{payload}"."""
    signed_payload = str(timestamp).encode("utf-8") + b"." + payload
    return hmac.new(
        secret.encode("utf-8"),
        signed_payload,
        hashlib.sha256
    ).hexdigest()


def verify_stripe_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> int:
    """
    Verify a Stripe webhook signature.

    Args:
        payload: Raw request body bytes
        signature_header: Stripe-Signature header value
        secret: Endpoint signing secret (whsec_...)
        tolerance_seconds: Maximum age of the signed timestamp (0 disables)
        now: Current unix time (defaults to time.time())

    Returns:
        The signed timestamp

    Raises:
        AuthenticityError: If verification fails for any reason
    """
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise AuthenticityError("webhook secret not configured")
    if not signature_header:
        raise AuthenticityError("missing signature header")

    timestamp, signatures = parse_signature_header(signature_header)
    expected = compute_signature(payload, secret, timestamp)

    # Constant-time comparison to prevent timing attacks
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise AuthenticityError("signature mismatch")

    if tolerance_seconds > 0:
        current = time.time() if now is None else now
        if abs(current - timestamp) > tolerance_seconds:
            raise AuthenticityError("signature timestamp outside tolerance")

    return timestamp
