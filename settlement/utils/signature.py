import hashlib
import hmac
import time
from typing import Optional
from settlement.config.settings import settings
from settlement.utils.exceptions import SignatureInvalid


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    """HMAC-SHA256 of ``"<timestamp>.<payload>"`` as sent in ``Stripe-Signature``."""
    signed_payload = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()


def parse_signature_header(header: str) -> tuple:
    """
    Split a ``t=...,v1=...,v1=...`` header.

    Returns:
        Tuple of (timestamp, list of v1 signatures)
    """
    timestamp = None
    signatures = []
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise SignatureInvalid("Malformed signature timestamp")
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_webhook_signature(
    request_body: bytes,
    signature_header: Optional[str],
    secret: Optional[str] = None,
    tolerance: Optional[int] = None,
    now: Optional[int] = None,
) -> bool:
    """
    Verify a gateway webhook signature.

    Args:
        request_body: Raw request body bytes
        signature_header: Stripe-Signature header value
        secret: Webhook signing secret (defaults to settings)
        tolerance: Maximum age of the signed timestamp in seconds
        now: Current unix time, for tests

    Returns:
        True if signature is valid

    Raises:
        SignatureInvalid
    """
    secret = secret if secret is not None else settings.STRIPE_WEBHOOK_SECRET
    tolerance = tolerance if tolerance is not None else settings.WEBHOOK_TOLERANCE_SECONDS

    if not secret:
        raise SignatureInvalid("Webhook signing secret is not configured")
    if not signature_header:
        raise SignatureInvalid("Missing signature header")

    timestamp, signatures = parse_signature_header(signature_header)
    if timestamp is None or not signatures:
        raise SignatureInvalid("Malformed signature header")

    expected = compute_signature(request_body, timestamp, secret)
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise SignatureInvalid("Webhook signature verification failed")

    current = now if now is not None else int(time.time())
    if tolerance and abs(current - timestamp) > tolerance:
        raise SignatureInvalid("Webhook timestamp outside the tolerance zone")

    return True
