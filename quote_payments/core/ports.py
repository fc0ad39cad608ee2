"""
Persistence interfaces.

Implementations: ``database.repositories`` (SQLAlchemy) and
``database.memory`` (in-process). Both provide the same atomicity:
- quote writes are compare-and-set on ``version``
- at most one active payment intent per quote
- webhook event ids are unique
- webhook event results are fenced on the claimed attempt
"""
from datetime import datetime
from typing import List, Optional, Protocol, Sequence

from .models import (
    PaymentIntent,
    Quote,
    QuoteStatus,
    Refund,
    WebhookEventRecord,
    WebhookEventStatus,
)


class QuoteRepository(Protocol):
    """Storage for quotes."""

    async def add(self, quote: Quote) -> Quote:
        """
        Insert a new quote.

        Assigns ``id`` and sets ``version`` to 1.

        Raises:
            DuplicateQuoteNumber: If the quote number is taken
        """
        ...

    async def get(self, quote_id: int) -> Optional[Quote]:
        """Fetch a quote by id (a detached copy)."""
        ...

    async def get_by_number(self, quote_number: str) -> Optional[Quote]:
        """Fetch a quote by its human-facing number."""
        ...

    async def save(self, quote: Quote, expected_version: int) -> Quote:
        """
        Persist a modified quote if nobody wrote it since ``expected_version``.

        Returns the stored quote with its version incremented.

        Raises:
            ConcurrencyConflict: If the stored version differs
            QuoteNotFound: If the quote does not exist
        """
        ...

    async def list_overdue(self, now: datetime) -> List[Quote]:
        """Sent or viewed quotes whose validity deadline is before ``now``."""
        ...

    async def list_for_provider(
        self,
        provider_id: int,
        statuses: Optional[Sequence[QuoteStatus]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Quote]:
        """A provider's quotes, newest first, optionally limited to ``statuses``."""
        ...

    async def delete(self, quote_id: int, expected_version: int) -> None:
        """
        Remove a quote if nobody wrote it since ``expected_version``.

        Raises:
            ConcurrencyConflict: If the stored version differs
            QuoteNotFound: If the quote does not exist
        """
        ...


class PaymentRepository(Protocol):
    """Storage for payment intents and refunds."""

    async def add_intent(self, intent: PaymentIntent) -> PaymentIntent:
        """
        Insert an intent.

        Raises:
            IntentAlreadyActive: If the quote already has an active intent
                or the intent id is already recorded
        """
        ...

    async def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        ...

    async def get_active_intent(self, quote_id: int) -> Optional[PaymentIntent]:
        ...

    async def count_intents(self, quote_id: int) -> int:
        ...

    async def update_intent(self, intent: PaymentIntent) -> PaymentIntent:
        """Overwrite the mutable fields of an existing intent."""
        ...

    async def add_refund(self, refund: Refund) -> Refund:
        """Insert a refund; if the refund id is already recorded, return the stored one."""
        ...

    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        ...

    async def list_refunds(self, quote_id: int) -> List[Refund]:
        ...

    async def update_refund(self, refund: Refund) -> Refund:
        ...


class WebhookEventStore(Protocol):
    """Dedup ledger for processor events."""

    async def get(self, event_id: str) -> Optional[WebhookEventRecord]:
        ...

    async def insert_received(self, record: WebhookEventRecord) -> WebhookEventRecord:
        """
        Insert a new event in ``received`` state.

        The unique event id is the serialisation point between concurrent
        deliveries of the same event.

        Raises:
            DuplicateEvent: If the event id already exists
        """
        ...

    async def reclaim(
        self,
        event_id: str,
        expected_status: WebhookEventStatus,
        expected_attempts: int,
        now: datetime,
    ) -> bool:
        """
        Move a failed or stale event back to ``received`` for another attempt.

        Compare-and-set on (status, attempts); returns False when another
        delivery got there first.
        """
        ...

    async def mark_processed(
        self, event_id: str, attempt: int, outcome: str, now: datetime
    ) -> bool:
        """
        Finish the claim identified by ``attempt``.

        Only applies while the event is still ``received`` on that attempt;
        returns False when a later delivery has reclaimed it.
        """
        ...

    async def mark_failed(self, event_id: str, attempt: int, error: str, now: datetime) -> bool:
        """Fail the claim identified by ``attempt``; fenced like mark_processed."""
        ...
