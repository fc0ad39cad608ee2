"""
In-process implementations of the persistence ports.

Used for tests and local runs (``DATABASE_URL=memory://``). Each store
serialises its writes with an ``asyncio.Lock`` and hands out deep copies,
so callers observe the same compare-and-set semantics as the SQL store.
"""
import asyncio
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from quote_payments.core.errors import (
    ConcurrencyConflict,
    DuplicateEvent,
    DuplicateQuoteNumber,
    IntentAlreadyActive,
    QuoteNotFound,
)
from quote_payments.core.models import (
    PaymentIntent,
    Quote,
    QuoteStatus,
    Refund,
    WebhookEventRecord,
    WebhookEventStatus,
)


class InMemoryQuoteRepository:
    """Quotes keyed by id."""

    def __init__(self) -> None:
        self._quotes: Dict[int, Quote] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def add(self, quote: Quote) -> Quote:
        async with self._lock:
            if any(q.quote_number == quote.quote_number for q in self._quotes.values()):
                raise DuplicateQuoteNumber(
                    f"Quote number {quote.quote_number} is already taken",
                    quote_number=quote.quote_number,
                )
            stored = quote.model_copy(deep=True, update={"id": self._next_id, "version": 1})
            self._quotes[stored.id] = stored
            self._next_id += 1
            return stored.model_copy(deep=True)

    async def get(self, quote_id: int) -> Optional[Quote]:
        # Yield so concurrent callers interleave between read and write.
        await asyncio.sleep(0)
        quote = self._quotes.get(quote_id)
        return quote.model_copy(deep=True) if quote is not None else None

    async def get_by_number(self, quote_number: str) -> Optional[Quote]:
        for quote in self._quotes.values():
            if quote.quote_number == quote_number:
                return quote.model_copy(deep=True)
        return None

    async def save(self, quote: Quote, expected_version: int) -> Quote:
        await asyncio.sleep(0)
        async with self._lock:
            current = self._quotes.get(quote.id)
            if current is None:
                raise QuoteNotFound(f"Quote {quote.id} not found", quote_id=quote.id)
            if current.version != expected_version:
                raise ConcurrencyConflict(
                    f"Quote {quote.id} was modified concurrently",
                    quote_id=quote.id,
                    expected_version=expected_version,
                )
            stored = quote.model_copy(deep=True, update={"version": expected_version + 1})
            self._quotes[quote.id] = stored
            return stored.model_copy(deep=True)

    async def list_overdue(self, now: datetime) -> List[Quote]:
        overdue = [
            q
            for q in self._quotes.values()
            if q.status in (QuoteStatus.SENT, QuoteStatus.VIEWED) and q.valid_until < now
        ]
        overdue.sort(key=lambda q: q.valid_until)
        return [q.model_copy(deep=True) for q in overdue]

    async def list_for_provider(
        self,
        provider_id: int,
        statuses: Optional[Sequence[QuoteStatus]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Quote]:
        await asyncio.sleep(0)
        quotes = [
            q
            for q in self._quotes.values()
            if q.provider_id == provider_id and (not statuses or q.status in statuses)
        ]
        quotes.sort(key=lambda q: (q.created_at, q.id), reverse=True)
        return [q.model_copy(deep=True) for q in quotes[offset:offset + limit]]

    async def delete(self, quote_id: int, expected_version: int) -> None:
        async with self._lock:
            current = self._quotes.get(quote_id)
            if current is None:
                raise QuoteNotFound(f"Quote {quote_id} not found", quote_id=quote_id)
            if current.version != expected_version:
                raise ConcurrencyConflict(
                    f"Quote {quote_id} was modified concurrently",
                    quote_id=quote_id,
                    expected_version=expected_version,
                )
            del self._quotes[quote_id]


class InMemoryPaymentRepository:
    """Payment intents keyed by processor id, plus refunds."""

    def __init__(self) -> None:
        self._intents: Dict[str, PaymentIntent] = {}
        self._refunds: Dict[str, Refund] = {}
        self._lock = asyncio.Lock()

    async def add_intent(self, intent: PaymentIntent) -> PaymentIntent:
        async with self._lock:
            active = any(
                existing.quote_id == intent.quote_id and existing.status.is_active
                for existing in self._intents.values()
            )
            if intent.intent_id in self._intents or (intent.status.is_active and active):
                raise IntentAlreadyActive(
                    f"Quote {intent.quote_id} already has an active payment intent",
                    quote_id=intent.quote_id,
                    payment_intent_id=intent.intent_id,
                )
            self._intents[intent.intent_id] = intent.model_copy(deep=True)
            return intent.model_copy(deep=True)

    async def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        await asyncio.sleep(0)
        intent = self._intents.get(intent_id)
        return intent.model_copy(deep=True) if intent is not None else None

    async def get_active_intent(self, quote_id: int) -> Optional[PaymentIntent]:
        for intent in self._intents.values():
            if intent.quote_id == quote_id and intent.status.is_active:
                return intent.model_copy(deep=True)
        return None

    async def count_intents(self, quote_id: int) -> int:
        return sum(1 for intent in self._intents.values() if intent.quote_id == quote_id)

    async def update_intent(self, intent: PaymentIntent) -> PaymentIntent:
        async with self._lock:
            self._intents[intent.intent_id] = intent.model_copy(deep=True)
            return intent.model_copy(deep=True)

    async def add_refund(self, refund: Refund) -> Refund:
        async with self._lock:
            existing = self._refunds.get(refund.refund_id)
            if existing is not None:
                return existing.model_copy(deep=True)
            self._refunds[refund.refund_id] = refund.model_copy(deep=True)
            return refund.model_copy(deep=True)

    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        refund = self._refunds.get(refund_id)
        return refund.model_copy(deep=True) if refund is not None else None

    async def list_refunds(self, quote_id: int) -> List[Refund]:
        return [
            refund.model_copy(deep=True)
            for refund in self._refunds.values()
            if refund.quote_id == quote_id
        ]

    async def update_refund(self, refund: Refund) -> Refund:
        async with self._lock:
            self._refunds[refund.refund_id] = refund.model_copy(deep=True)
            return refund.model_copy(deep=True)


class InMemoryWebhookEventStore:
    """Webhook dedup ledger keyed by event id."""

    def __init__(self) -> None:
        self._events: Dict[str, WebhookEventRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, event_id: str) -> Optional[WebhookEventRecord]:
        await asyncio.sleep(0)
        record = self._events.get(event_id)
        return record.model_copy(deep=True) if record is not None else None

    async def insert_received(self, record: WebhookEventRecord) -> WebhookEventRecord:
        async with self._lock:
            if record.event_id in self._events:
                raise DuplicateEvent(
                    f"Webhook event {record.event_id} already recorded",
                    event_id=record.event_id,
                )
            stored = record.model_copy(deep=True, update={"status": WebhookEventStatus.RECEIVED})
            self._events[record.event_id] = stored
            return stored.model_copy(deep=True)

    async def reclaim(
        self,
        event_id: str,
        expected_status: WebhookEventStatus,
        expected_attempts: int,
        now: datetime,
    ) -> bool:
        async with self._lock:
            record = self._events.get(event_id)
            if (
                record is None
                or record.status != expected_status
                or record.attempts != expected_attempts
            ):
                return False
            record.status = WebhookEventStatus.RECEIVED
            record.attempts += 1
            record.last_attempt_at = now
            return True

    def _owned(self, event_id: str, attempt: int) -> Optional[WebhookEventRecord]:
        record = self._events.get(event_id)
        if (
            record is None
            or record.status != WebhookEventStatus.RECEIVED
            or record.attempts != attempt
        ):
            return None
        return record

    async def mark_processed(
        self, event_id: str, attempt: int, outcome: str, now: datetime
    ) -> bool:
        async with self._lock:
            record = self._owned(event_id, attempt)
            if record is None:
                return False
            record.status = WebhookEventStatus.PROCESSED
            record.processed_at = now
            record.outcome = outcome
            record.error = None
            return True

    async def mark_failed(self, event_id: str, attempt: int, error: str, now: datetime) -> bool:
        async with self._lock:
            record = self._owned(event_id, attempt)
            if record is None:
                return False
            record.status = WebhookEventStatus.FAILED
            record.last_attempt_at = now
            record.error = error
            return True

    def all(self) -> List[WebhookEventRecord]:
        """Snapshot of every recorded event."""
        return [record.model_copy(deep=True) for record in self._events.values()]
