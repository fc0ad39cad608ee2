"""Payment gateway port.

The orchestrator talks to the payment processor only through this interface.
Adapters: StripeGateway (production) and FakeGateway (tests, local runs).
Amounts are integer minor units; every mutating call carries an idempotency key.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from quote_payments.core.models import IntentStatus, RefundStatus


@dataclass(frozen=True)
class IntentHandle:
    """Result of registering a payment intent with the processor."""

    intent_id: str
    status: IntentStatus
    amount: int
    currency: str
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class ConfirmationOutcome:
    """Result of confirming an intent with a payment method."""

    intent_id: str
    status: IntentStatus
    transaction_id: Optional[str] = None
    amount_received: Optional[int] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class RefundHandle:
    """Result of requesting a refund."""

    refund_id: str
    status: RefundStatus
    amount: int
    failure_reason: Optional[str] = None


class PaymentGateway(ABC):
    """Abstract payment processor."""

    @abstractmethod
    async def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> IntentHandle:
        """Register an intent to collect ``amount``."""

    @abstractmethod
    async def confirm_intent(
        self,
        intent_id: str,
        payment_method_ref: str,
        idempotency_key: str,
    ) -> ConfirmationOutcome:
        """Attach a payment method and attempt the charge.

        A declined payment is an outcome (status ``failed``), not an exception.
        """

    @abstractmethod
    async def create_refund(
        self,
        transaction_id: str,
        amount: int,
        reason: Optional[str],
        idempotency_key: str,
    ) -> RefundHandle:
        """Refund ``amount`` of a captured transaction."""
