"""Configurable fake payment gateway for development and testing.

Simulates a processor without external calls:
- Honours idempotency keys (same key returns the original result)
- Configurable confirmation and refund outcomes
- Injectable transient outages and latency
- Records every call for assertions
"""

import asyncio
import itertools
from typing import Any, Dict, List, Optional

from quote_payments.core.errors import GatewayRejected, GatewayUnavailable
from quote_payments.core.models import IntentStatus, RefundStatus

from .gateway import ConfirmationOutcome, IntentHandle, PaymentGateway, RefundHandle


class FakeGateway(PaymentGateway):
    """Configurable fake payment gateway."""

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self.confirm_status: IntentStatus = IntentStatus.SUCCEEDED
        self.refund_status: RefundStatus = RefundStatus.SUCCEEDED
        self.failure_reason: str = "Card declined"
        self.calls: List[Dict[str, Any]] = []
        self.intents: Dict[str, IntentHandle] = {}
        self._outages = 0
        self._sequence = itertools.count(1)
        self._results: Dict[str, Any] = {}

    def configure(
        self,
        confirm_status: IntentStatus = IntentStatus.SUCCEEDED,
        refund_status: RefundStatus = RefundStatus.SUCCEEDED,
        failure_reason: str = "Card declined",
    ) -> None:
        """Configure gateway behavior at runtime."""
        self.confirm_status = confirm_status
        self.refund_status = refund_status
        self.failure_reason = failure_reason

    def fail_next(self, count: int = 1) -> None:
        """Make the next ``count`` calls raise GatewayUnavailable."""
        self._outages = count

    @staticmethod
    def transaction_id_for(intent_id: str) -> str:
        """Transaction reference the fake reports for a succeeded intent."""
        return intent_id.replace("pi_", "ch_", 1)

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["method"] == method]

    async def _enter(self, call: Dict[str, Any]) -> Optional[Any]:
        self.calls.append(call)
        if self.latency:
            await asyncio.sleep(self.latency)
        else:
            await asyncio.sleep(0)
        if self._outages > 0:
            self._outages -= 1
            raise GatewayUnavailable("Fake gateway outage", operation=call["method"])
        return self._results.get(call["idempotency_key"])

    async def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> IntentHandle:
        cached = await self._enter(
            {
                "method": "create_intent",
                "amount": amount,
                "currency": currency,
                "metadata": dict(metadata),
                "idempotency_key": idempotency_key,
            }
        )
        if cached is not None:
            return cached

        number = next(self._sequence)
        handle = IntentHandle(
            intent_id=f"pi_fake_{number:06d}",
            status=IntentStatus.PENDING,
            amount=amount,
            currency=currency,
            client_secret=f"pi_fake_{number:06d}_secret",
        )
        self.intents[handle.intent_id] = handle
        self._results[idempotency_key] = handle
        return handle

    async def confirm_intent(
        self,
        intent_id: str,
        payment_method_ref: str,
        idempotency_key: str,
    ) -> ConfirmationOutcome:
        cached = await self._enter(
            {
                "method": "confirm_intent",
                "intent_id": intent_id,
                "payment_method_ref": payment_method_ref,
                "idempotency_key": idempotency_key,
            }
        )
        if cached is not None:
            return cached

        intent = self.intents.get(intent_id)
        if intent is None:
            raise GatewayRejected(f"No such payment intent: {intent_id}", intent_id=intent_id)

        if self.confirm_status == IntentStatus.SUCCEEDED:
            outcome = ConfirmationOutcome(
                intent_id=intent_id,
                status=IntentStatus.SUCCEEDED,
                transaction_id=self.transaction_id_for(intent_id),
                amount_received=intent.amount,
            )
        elif self.confirm_status in (IntentStatus.FAILED, IntentStatus.CANCELED):
            outcome = ConfirmationOutcome(
                intent_id=intent_id,
                status=self.confirm_status,
                failure_reason=self.failure_reason,
            )
        else:
            outcome = ConfirmationOutcome(intent_id=intent_id, status=self.confirm_status)

        self._results[idempotency_key] = outcome
        return outcome

    async def create_refund(
        self,
        transaction_id: str,
        amount: int,
        reason: Optional[str],
        idempotency_key: str,
    ) -> RefundHandle:
        cached = await self._enter(
            {
                "method": "create_refund",
                "transaction_id": transaction_id,
                "amount": amount,
                "reason": reason,
                "idempotency_key": idempotency_key,
            }
        )
        if cached is not None:
            return cached

        handle = RefundHandle(
            refund_id=f"re_fake_{next(self._sequence):06d}",
            status=self.refund_status,
            amount=amount,
            failure_reason=self.failure_reason if self.refund_status == RefundStatus.FAILED else None,
        )
        self._results[idempotency_key] = handle
        return handle
