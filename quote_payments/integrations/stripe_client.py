"""
Stripe implementation of the payment gateway port.

Implements:
- Exponential backoff (capped) for transient errors only
- Per-call timeout
- Idempotency keys on every mutating call
- Error classification into unavailable / rejected / declined
"""
import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from quote_payments.config import Settings
from quote_payments.core.errors import GatewayRejected, GatewayUnavailable
from quote_payments.core.models import IntentStatus, RefundStatus
from quote_payments.monitoring.metrics import metrics

from .gateway import ConfirmationOutcome, IntentHandle, PaymentGateway, RefundHandle

logger = structlog.get_logger(__name__)

INTENT_STATUS_MAP: Dict[str, IntentStatus] = {
    "requires_payment_method": IntentStatus.PENDING,
    "requires_confirmation": IntentStatus.PENDING,
    "processing": IntentStatus.PENDING,
    "requires_capture": IntentStatus.PENDING,
    "requires_action": IntentStatus.REQUIRES_ACTION,
    "succeeded": IntentStatus.SUCCEEDED,
    "canceled": IntentStatus.CANCELED,
}

REFUND_STATUS_MAP: Dict[str, RefundStatus] = {
    "pending": RefundStatus.PENDING,
    "requires_action": RefundStatus.PENDING,
    "succeeded": RefundStatus.SUCCEEDED,
    "failed": RefundStatus.FAILED,
    "canceled": RefundStatus.CANCELED,
}


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Surface as unavailable, caller retries later
    CARD = "card"  # Declined payment, an outcome rather than an error


def map_intent_status(status: str, has_payment_error: bool = False) -> IntentStatus:
    """
    Normalise a Stripe PaymentIntent status.

    A ``requires_payment_method`` intent carrying a payment error is a failed attempt.
    """
    if status == "requires_payment_method" and has_payment_error:
        return IntentStatus.FAILED
    return INTENT_STATUS_MAP.get(status, IntentStatus.PENDING)


def map_refund_status(status: Optional[str]) -> RefundStatus:
    return REFUND_STATUS_MAP.get(status or "", RefundStatus.PENDING)


def object_id(value: Any) -> Optional[str]:
    """Stripe returns either an id or an expanded object for references."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


class StripeGateway(PaymentGateway):
    """
    Payment gateway backed by the Stripe API.

    Features:
    - Retry with capped exponential backoff for connection errors,
      timeouts and 5xx responses
    - No retry for 4xx responses
    - Request options passed per call (no global SDK configuration)
    """

    def __init__(
        self,
        api_key: str,
        api_version: str,
        max_attempts: int = 3,
        backoff_base: float = 0.2,
        backoff_factor: float = 2.0,
        backoff_cap: float = 2.0,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize Stripe gateway.

        Args:
            api_key: Stripe secret key
            api_version: Pinned Stripe API version
            max_attempts: Total attempts per call, including the first
            backoff_base: Delay before the first retry (seconds)
            backoff_factor: Multiplier between consecutive delays
            backoff_cap: Maximum delay (seconds)
            timeout: Per-attempt timeout (seconds)
            sleep: Awaitable sleep used between attempts
        """
        self.api_key = api_key
        self.api_version = api_version
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self.backoff_cap = backoff_cap
        self.timeout = timeout
        self._sleep = sleep

        logger.info(
            "stripe_gateway_initialized",
            api_version=api_version,
            test_mode=api_key.startswith("sk_test_"),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(
            api_key=settings.stripe_secret_key,
            api_version=settings.stripe_api_version,
            max_attempts=settings.gateway_max_attempts,
            backoff_base=settings.gateway_backoff_base_seconds,
            backoff_factor=settings.gateway_backoff_factor,
            backoff_cap=settings.gateway_backoff_cap_seconds,
            timeout=settings.gateway_timeout_seconds,
        )

    @staticmethod
    def _classify_error(error: BaseException) -> StripeErrorType:
        """
        Classify an error for retry logic.

        Args:
            error: Raised exception

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, stripe.CardError):
            return StripeErrorType.CARD
        elif isinstance(error, (asyncio.TimeoutError, stripe.APIConnectionError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(error, stripe.StripeError):
            status = error.http_status
            if status is not None and status < 500:
                return StripeErrorType.PERMANENT
            return StripeErrorType.TRANSIENT
        else:
            return StripeErrorType.PERMANENT

    @classmethod
    def _is_transient(cls, error: BaseException) -> bool:
        return cls._classify_error(error) == StripeErrorType.TRANSIENT

    def _request_options(self, idempotency_key: str) -> Dict[str, Any]:
        return {
            "api_key": self.api_key,
            "stripe_version": self.api_version,
            "idempotency_key": idempotency_key,
        }

    async def _call(
        self, operation: str, func: Callable[..., Any], *args: Any, **params: Any
    ) -> Any:
        """
        Run a blocking SDK call with timeout and retries.

        Only the final error is raised; classification into service errors
        happens in the caller.
        """

        def before_sleep(retry_state: RetryCallState) -> None:
            metrics.record_gateway_retry(operation)
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "gateway_call_retrying",
                operation=operation,
                attempt=retry_state.attempt_number,
                error=str(error),
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(self._is_transient),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.backoff_base,
                exp_base=self.backoff_factor,
                max=self.backoff_cap,
            ),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        start = time.time()
        try:
            async for attempt in retrying:
                with attempt:
                    result = await asyncio.wait_for(
                        asyncio.to_thread(func, *args, **params), timeout=self.timeout
                    )
        except Exception as e:
            metrics.record_gateway_call(operation, "error", time.time() - start)
            raise e

        metrics.record_gateway_call(operation, "success", time.time() - start)
        return result

    def _raise_service_error(self, operation: str, error: Exception) -> None:
        """
        Translate a Stripe failure into a service error.

        Raises:
            GatewayUnavailable: Transient failure after retries, or rate limited
            GatewayRejected: Definitive rejection
        """
        error_type = self._classify_error(error)
        metrics.record_gateway_error(error_type.value)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        if error_type in (StripeErrorType.TRANSIENT, StripeErrorType.RATE_LIMIT):
            raise GatewayUnavailable(
                "Payment service is temporarily unavailable", operation=operation
            ) from error
        raise GatewayRejected(
            getattr(error, "user_message", None) or str(error),
            operation=operation,
            code=getattr(error, "code", None),
        ) from error

    async def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> IntentHandle:
        """
        Create a Stripe PaymentIntent.

        Args:
            amount: Amount in minor units
            currency: Currency code
            metadata: Metadata stored on the intent (quote id, quote number)
            idempotency_key: Idempotency key for preventing duplicates

        Returns:
            IntentHandle: Created intent

        Raises:
            GatewayUnavailable: If Stripe stays unreachable
            GatewayRejected: If Stripe rejects the request
        """
        logger.info(
            "creating_payment_intent",
            amount=amount,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        try:
            intent = await self._call(
                "create_intent",
                stripe.PaymentIntent.create,
                amount=amount,
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                **self._request_options(idempotency_key),
            )
        except (stripe.StripeError, asyncio.TimeoutError) as e:
            self._raise_service_error("create_intent", e)

        logger.info("payment_intent_created", payment_intent_id=intent.id, status=intent.status)

        return IntentHandle(
            intent_id=intent.id,
            status=map_intent_status(intent.status),
            amount=intent.amount,
            currency=intent.currency,
            client_secret=intent.client_secret,
        )

    async def confirm_intent(
        self,
        intent_id: str,
        payment_method_ref: str,
        idempotency_key: str,
    ) -> ConfirmationOutcome:
        """
        Confirm a PaymentIntent with a payment method.

        A card decline is returned as a failed outcome.

        Raises:
            GatewayUnavailable: If Stripe stays unreachable
            GatewayRejected: If Stripe rejects the request
        """
        logger.info("confirming_payment_intent", payment_intent_id=intent_id)

        try:
            intent = await self._call(
                "confirm_intent",
                stripe.PaymentIntent.confirm,
                intent_id,
                payment_method=payment_method_ref,
                **self._request_options(idempotency_key),
            )
        except stripe.CardError as e:
            metrics.record_gateway_error(StripeErrorType.CARD.value)
            logger.info(
                "payment_declined",
                payment_intent_id=intent_id,
                decline_code=getattr(e, "code", None),
            )
            return ConfirmationOutcome(
                intent_id=intent_id,
                status=IntentStatus.FAILED,
                failure_reason=e.user_message or str(e),
            )
        except (stripe.StripeError, asyncio.TimeoutError) as e:
            self._raise_service_error("confirm_intent", e)

        payment_error = getattr(intent, "last_payment_error", None)
        status = map_intent_status(intent.status, has_payment_error=payment_error is not None)

        logger.info(
            "payment_intent_confirmed",
            payment_intent_id=intent.id,
            stripe_status=intent.status,
            status=status.value,
        )

        transaction_id = None
        if status == IntentStatus.SUCCEEDED:
            transaction_id = object_id(getattr(intent, "latest_charge", None)) or intent.id

        return ConfirmationOutcome(
            intent_id=intent.id,
            status=status,
            transaction_id=transaction_id,
            amount_received=getattr(intent, "amount_received", None),
            failure_reason=getattr(payment_error, "message", None) if payment_error else None,
        )

    async def create_refund(
        self,
        transaction_id: str,
        amount: int,
        reason: Optional[str],
        idempotency_key: str,
    ) -> RefundHandle:
        """
        Create a refund for a captured charge.

        Args:
            transaction_id: Charge id (or PaymentIntent id) that captured the payment
            amount: Amount to refund in minor units
            reason: Free-text reason, kept in refund metadata
            idempotency_key: Idempotency key

        Returns:
            RefundHandle: Created refund

        Raises:
            GatewayUnavailable: If Stripe stays unreachable
            GatewayRejected: If Stripe rejects the request
        """
        logger.info("creating_refund", transaction_id=transaction_id, amount=amount)

        target = "payment_intent" if transaction_id.startswith("pi_") else "charge"
        params: Dict[str, Any] = {
            target: transaction_id,
            "amount": amount,
            "reason": "requested_by_customer",
        }
        if reason:
            params["metadata"] = {"reason": reason}

        try:
            refund = await self._call(
                "create_refund",
                stripe.Refund.create,
                **params,
                **self._request_options(idempotency_key),
            )
        except (stripe.StripeError, asyncio.TimeoutError) as e:
            self._raise_service_error("create_refund", e)

        logger.info("refund_created", refund_id=refund.id, status=refund.status)

        return RefundHandle(
            refund_id=refund.id,
            status=map_refund_status(refund.status),
            amount=refund.amount,
            failure_reason=getattr(refund, "failure_reason", None),
        )
