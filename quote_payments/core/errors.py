"""
Exception hierarchy for quote and payment operations.

Families:
- Validation (bad input, never retried)
- State conflict (operation illegal for the current quote/payment state)
- Not found
- Authorization (actor may not perform the operation)
- Gateway (transient unavailability vs. definitive rejection)
- Security (webhook authenticity and structure)

Idempotent no-ops are not exceptions; see the webhook outcome types.
"""
from typing import Any, Dict, List, Optional


class QuotePaymentError(Exception):
    """
    Base exception for all service errors.

    Every exception carries:
    - Error code (for client handling)
    - Message safe to show to callers
    - HTTP status code (for API responses)
    - Structured details
    """

    error_code = "quote_payment_error"
    http_status = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "type": self.__class__.__name__,
                "details": self.details,
            }
        }


# ============================================================================
# VALIDATION ERRORS
# ============================================================================


class ValidationError(QuotePaymentError):
    """Raised when caller input is invalid."""

    error_code = "validation_error"
    http_status = 422


class InvalidAmount(ValidationError):
    """Raised for negative, malformed or out-of-range money amounts."""

    error_code = "invalid_amount"


class QuoteValidationError(ValidationError):
    """Raised when quote data fails field-level validation."""

    error_code = "quote_validation_failed"

    def __init__(self, errors: List[Dict[str, str]]):
        super().__init__("Quote validation failed", errors=errors)
        self.errors = errors


# ============================================================================
# STATE CONFLICT ERRORS
# ============================================================================


class StateConflictError(QuotePaymentError):
    """Raised when an operation is illegal for the current state."""

    error_code = "state_conflict"
    http_status = 409


class InvalidStatusTransition(StateConflictError):
    """Raised when a quote status edge is not allowed."""

    error_code = "invalid_status_transition"

    def __init__(self, current: str, target: str, reason: Optional[str] = None):
        message = f"Cannot transition quote from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, current=current, target=target)
        self.current = current
        self.target = target


class QuoteExpired(StateConflictError):
    """Raised when a quote is acted on after its validity deadline."""

    error_code = "quote_expired"

    def __init__(self, quote_id: int):
        super().__init__("Quote has expired", quote_id=quote_id)
        self.quote_id = quote_id


class QuoteNotPayable(StateConflictError):
    """Raised when payment is requested for a quote that cannot be paid."""

    error_code = "quote_not_payable"


class QuoteNotEditable(StateConflictError):
    """Raised when a non-draft quote is edited."""

    error_code = "quote_not_editable"


class IntentAlreadyActive(StateConflictError):
    """Raised when a quote already has a pending payment intent."""

    error_code = "intent_already_active"


class PaymentNotRefundable(StateConflictError):
    """Raised when a refund is requested for a quote that is not paid."""

    error_code = "payment_not_refundable"


class RefundAlreadyPending(StateConflictError):
    """Raised when a refund is requested while another is still settling."""

    error_code = "refund_already_pending"


class ConcurrencyConflict(StateConflictError):
    """Raised when an optimistic version check fails."""

    error_code = "concurrency_conflict"


class DuplicateQuoteNumber(StateConflictError):
    """Raised when a generated quote number collides with an existing one."""

    error_code = "duplicate_quote_number"


class DuplicateEvent(StateConflictError):
    """Raised when a webhook event id is inserted twice."""

    error_code = "duplicate_event"


class EventNotRetryable(StateConflictError):
    """Raised when a webhook event is not failed or has used up its attempts."""

    error_code = "event_not_retryable"


# ============================================================================
# NOT FOUND ERRORS
# ============================================================================


class NotFoundError(QuotePaymentError):
    """Raised when a referenced record does not exist."""

    error_code = "not_found"
    http_status = 404


class QuoteNotFound(NotFoundError):
    """Raised when a quote does not exist."""

    error_code = "quote_not_found"


class IntentNotFound(NotFoundError):
    """Raised when a payment intent is unknown to this service."""

    error_code = "intent_not_found"


class EventNotFound(NotFoundError):
    """Raised when a webhook event id has never been recorded."""

    error_code = "event_not_found"


# ============================================================================
# AUTHORIZATION ERRORS
# ============================================================================


class ActorNotPermitted(QuotePaymentError):
    """Raised when the acting user may not perform the operation."""

    error_code = "actor_not_permitted"
    http_status = 403


# ============================================================================
# GATEWAY ERRORS
# ============================================================================


class GatewayError(QuotePaymentError):
    """Base class for payment processor failures."""

    error_code = "gateway_error"
    http_status = 502


class GatewayUnavailable(GatewayError):
    """Raised when the processor stays unreachable after all retry attempts."""

    error_code = "payment_service_unavailable"
    http_status = 503


class GatewayRejected(GatewayError):
    """Raised when the processor definitively rejects a request (4xx)."""

    error_code = "gateway_rejected"
    http_status = 402


class RefundFailed(GatewayError):
    """Raised when the processor reports the refund as failed."""

    error_code = "refund_failed"
    http_status = 402


# ============================================================================
# SECURITY ERRORS
# ============================================================================


class SecurityError(QuotePaymentError):
    """Base class for webhook authenticity failures."""

    error_code = "security_error"
    http_status = 400


class SignatureInvalid(SecurityError):
    """Raised when a webhook signature is missing, wrong or stale."""

    error_code = "signature_invalid"


class MalformedEvent(SecurityError):
    """Raised when a webhook envelope fails structural validation."""

    error_code = "malformed_event"
