"""Payment notifications, sent after a state change has been persisted."""
from typing import Optional, Protocol

import structlog

from .models import Quote, Refund

logger = structlog.get_logger(__name__)


class PaymentNotifier(Protocol):
    """Receives payment milestones for a quote. Called at most once per change."""

    async def quote_paid(self, quote: Quote) -> None:
        ...

    async def quote_accepted(self, quote: Quote) -> None:
        ...

    async def payment_failed(self, quote: Quote, reason: Optional[str]) -> None:
        ...

    async def quote_refunded(self, quote: Quote, refund: Refund) -> None:
        ...

    async def payment_disputed(
        self, quote: Quote, dispute_id: str, amount: int, reason: Optional[str]
    ) -> None:
        ...


class LoggingNotifier:
    """Publishes notifications as structured log events."""

    async def quote_paid(self, quote: Quote) -> None:
        logger.info(
            "payment_notification",
            notification="quote_paid",
            quote_id=quote.id,
            quote_number=quote.quote_number,
            provider_id=quote.provider_id,
            client_id=quote.client_id,
            amount=quote.amount_paid,
            currency=quote.currency,
        )

    async def quote_accepted(self, quote: Quote) -> None:
        logger.info(
            "payment_notification",
            notification="quote_accepted",
            quote_id=quote.id,
            quote_number=quote.quote_number,
            provider_id=quote.provider_id,
        )

    async def payment_failed(self, quote: Quote, reason: Optional[str]) -> None:
        logger.info(
            "payment_notification",
            notification="payment_failed",
            quote_id=quote.id,
            quote_number=quote.quote_number,
            client_id=quote.client_id,
            reason=reason,
        )

    async def quote_refunded(self, quote: Quote, refund: Refund) -> None:
        logger.info(
            "payment_notification",
            notification="quote_refunded",
            quote_id=quote.id,
            quote_number=quote.quote_number,
            refund_id=refund.refund_id,
            amount=refund.amount,
        )

    async def payment_disputed(
        self, quote: Quote, dispute_id: str, amount: int, reason: Optional[str]
    ) -> None:
        logger.warning(
            "payment_notification",
            notification="payment_disputed",
            quote_id=quote.id,
            quote_number=quote.quote_number,
            dispute_id=dispute_id,
            amount=amount,
            reason=reason,
        )
