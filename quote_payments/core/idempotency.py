"""
Idempotency keys for payment processor calls.

Keys are derived, never random: the same business attempt always produces the
same key, so transport retries and caller retries of an unfinished operation
are collapsed by the processor into a single effect.
"""
import hashlib
from typing import Optional


def derive_idempotency_key(
    operation: str, quote_id: int, attempt: int, variant: Optional[str] = None
) -> str:
    """
    Derive the idempotency key for one business attempt.

    Format: {operation}:{quote_id}:{attempt}:{digest}

    Args:
        operation: Gateway operation (create_intent, confirm_intent, create_refund)
        quote_id: Quote the operation belongs to
        attempt: Business attempt number (nth intent or refund for the quote),
            not the transport retry count
        variant: Request parameter that makes a call a different request
            within the same attempt (the payment method of a confirmation).
            Only the digest changes.

    Returns:
        str: Idempotency key

    Raises:
        ValueError: If the attempt number is not positive
    """
    if attempt < 1:
        raise ValueError("Attempt numbers start at 1")

    material = f"{operation}|{quote_id}|{attempt}"
    if variant is not None:
        material = f"{material}|{variant}"
    digest = hashlib.sha256(material.encode()).hexdigest()[:16]
    return f"{operation}:{quote_id}:{attempt}:{digest}"
