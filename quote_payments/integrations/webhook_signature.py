"""
Webhook signature verification.

Header format: ``t=<unix seconds>,v1=<hex HMAC-SHA256>``, signed over
``"<t>.<raw body>"`` with the endpoint secret. The HMAC comparison is Stripe's
constant-time check; the timestamp window is enforced here in both directions
against an injectable clock.
"""
import hashlib
import hmac
from datetime import datetime
from typing import Optional, Union

import stripe

from quote_payments.core.errors import SignatureInvalid


def parse_timestamp(header: str) -> int:
    """
    Extract the ``t=`` timestamp from a signature header.

    Raises:
        SignatureInvalid: If the header carries no usable timestamp
    """
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                break
    raise SignatureInvalid("Signature header has no valid timestamp", reason="no_timestamp")


def verify_signature(
    payload: Union[bytes, str],
    header: Optional[str],
    secret: str,
    tolerance_seconds: int,
    now: datetime,
) -> int:
    """
    Verify a webhook signature header.

    Args:
        payload: Raw request body, exactly as received
        header: Signature header value
        secret: Endpoint signing secret
        tolerance_seconds: Allowed distance between ``t`` and ``now``
        now: Current time

    Returns:
        int: The verified signing timestamp

    Raises:
        SignatureInvalid: Missing header, stale/future timestamp or bad signature
    """
    if not header:
        raise SignatureInvalid("Missing signature header", reason="missing_header")

    timestamp = parse_timestamp(header)
    skew = abs(int(now.timestamp()) - timestamp)
    if skew > tolerance_seconds:
        raise SignatureInvalid(
            "Signature timestamp outside the tolerance window",
            reason="timestamp_out_of_tolerance",
            skew_seconds=skew,
        )

    try:
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        stripe.WebhookSignature.verify_header(body, header, secret, tolerance=None)
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
        raise SignatureInvalid("Signature does not match payload", reason="mismatch") from e

    return timestamp


def compute_signature(payload: Union[bytes, str], secret: str, timestamp: int) -> str:
    body = payload if isinstance(payload, bytes) else payload.encode("utf-8")
    signed = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def sign_payload(payload: Union[bytes, str], secret: str, timestamp: int) -> str:
    """Build a signature header for ``payload`` (local tooling and tests)."""
    return f"t={timestamp},v1={compute_signature(payload, secret, timestamp)}"
