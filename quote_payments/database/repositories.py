"""
SQLAlchemy implementations of the persistence ports.

Atomicity comes from the database:
- quote updates are ``UPDATE ... WHERE version = :expected``
- a partial unique index allows one active intent per quote
- the webhook event id is the primary key of the dedup ledger
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quote_payments.core.errors import (
    ConcurrencyConflict,
    DuplicateEvent,
    DuplicateQuoteNumber,
    IntentAlreadyActive,
    QuoteNotFound,
)
from quote_payments.core.models import (
    IntentStatus,
    PaymentIntent,
    Quote,
    QuoteStatus,
    Refund,
    WebhookEventRecord,
    WebhookEventStatus,
)

from .connection import session_scope
from .models import Base, PaymentIntentRecord, QuoteRecord, RefundRecord, WebhookEventRow

logger = structlog.get_logger(__name__)

ACTIVE_INTENT_STATUSES = (IntentStatus.PENDING.value, IntentStatus.REQUIRES_ACTION.value)


def _as_utc(value: Any) -> Any:
    """SQLite hands back naive datetimes; everything is stored in UTC."""
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_dict(row: Base) -> Dict[str, Any]:
    return {
        column.key: _as_utc(getattr(row, column.key))
        for column in row.__table__.columns
    }


def _quote_values(quote: Quote) -> Dict[str, Any]:
    values = quote.model_dump(exclude={"id", "version", "line_items"})
    values["line_items"] = [item.model_dump(mode="json") for item in quote.line_items]
    values["status"] = quote.status.value
    values["payment_status"] = quote.payment_status.value
    return values


def _intent_values(intent: PaymentIntent) -> Dict[str, Any]:
    values = intent.model_dump()
    values["status"] = intent.status.value
    return values


def _refund_values(refund: Refund) -> Dict[str, Any]:
    values = refund.model_dump()
    values["status"] = refund.status.value
    return values


def _to_quote(row: QuoteRecord) -> Quote:
    return Quote.model_validate(_row_to_dict(row))


def _to_intent(row: PaymentIntentRecord) -> PaymentIntent:
    data = _row_to_dict(row)
    data.pop("id")
    return PaymentIntent.model_validate(data)


def _to_refund(row: RefundRecord) -> Refund:
    data = _row_to_dict(row)
    data.pop("id")
    return Refund.model_validate(data)


def _to_event(row: WebhookEventRow) -> WebhookEventRecord:
    return WebhookEventRecord.model_validate(_row_to_dict(row))


class SqlQuoteRepository:
    """Quote storage backed by the ``quotes`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(self, quote: Quote) -> Quote:
        try:
            async with session_scope(self.session_factory) as session:
                row = QuoteRecord(**_quote_values(quote), version=1)
                session.add(row)
                await session.flush()
                stored = _to_quote(row)
        except IntegrityError as e:
            logger.warning(
                "quote_insert_conflict",
                quote_number=quote.quote_number,
                error=str(e.orig),
            )
            raise DuplicateQuoteNumber(
                f"Quote number {quote.quote_number} is already taken",
                quote_number=quote.quote_number,
            )
        return stored

    async def get(self, quote_id: int) -> Optional[Quote]:
        async with self.session_factory() as session:
            row = await session.get(QuoteRecord, quote_id)
            return _to_quote(row) if row is not None else None

    async def get_by_number(self, quote_number: str) -> Optional[Quote]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(QuoteRecord).where(QuoteRecord.quote_number == quote_number)
            )
            row = result.scalar_one_or_none()
            return _to_quote(row) if row is not None else None

    async def save(self, quote: Quote, expected_version: int) -> Quote:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                update(QuoteRecord)
                .where(
                    QuoteRecord.id == quote.id,
                    QuoteRecord.version == expected_version,
                )
                .values(**_quote_values(quote), version=expected_version + 1)
            )
            if result.rowcount != 1:
                exists = await session.scalar(
                    select(func.count()).select_from(QuoteRecord).where(QuoteRecord.id == quote.id)
                )
                if not exists:
                    raise QuoteNotFound(f"Quote {quote.id} not found", quote_id=quote.id)
                raise ConcurrencyConflict(
                    f"Quote {quote.id} was modified concurrently",
                    quote_id=quote.id,
                    expected_version=expected_version,
                )

        return quote.model_copy(update={"version": expected_version + 1})

    async def list_overdue(self, now: datetime) -> List[Quote]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(QuoteRecord)
                .where(
                    QuoteRecord.status.in_([QuoteStatus.SENT.value, QuoteStatus.VIEWED.value]),
                    QuoteRecord.valid_until < now,
                )
                .order_by(QuoteRecord.valid_until)
            )
            return [_to_quote(row) for row in result.scalars()]

    async def list_for_provider(
        self,
        provider_id: int,
        statuses: Optional[Sequence[QuoteStatus]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Quote]:
        query = select(QuoteRecord).where(QuoteRecord.provider_id == provider_id)
        if statuses:
            query = query.where(QuoteRecord.status.in_([s.value for s in statuses]))
        query = (
            query.order_by(QuoteRecord.created_at.desc(), QuoteRecord.id.desc())
            .limit(limit)
            .offset(offset)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [_to_quote(row) for row in result.scalars()]

    async def delete(self, quote_id: int, expected_version: int) -> None:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                delete(QuoteRecord).where(
                    QuoteRecord.id == quote_id,
                    QuoteRecord.version == expected_version,
                )
            )
            if result.rowcount != 1:
                exists = await session.scalar(
                    select(func.count()).select_from(QuoteRecord).where(QuoteRecord.id == quote_id)
                )
                if not exists:
                    raise QuoteNotFound(f"Quote {quote_id} not found", quote_id=quote_id)
                raise ConcurrencyConflict(
                    f"Quote {quote_id} was modified concurrently",
                    quote_id=quote_id,
                    expected_version=expected_version,
                )


class SqlPaymentRepository:
    """Intent and refund storage backed by ``payment_intents`` and ``refunds``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add_intent(self, intent: PaymentIntent) -> PaymentIntent:
        try:
            async with session_scope(self.session_factory) as session:
                session.add(PaymentIntentRecord(**_intent_values(intent)))
        except IntegrityError:
            raise IntentAlreadyActive(
                f"Quote {intent.quote_id} already has an active payment intent",
                quote_id=intent.quote_id,
                payment_intent_id=intent.intent_id,
            )
        return intent

    async def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentIntentRecord).where(PaymentIntentRecord.intent_id == intent_id)
            )
            row = result.scalar_one_or_none()
            return _to_intent(row) if row is not None else None

    async def get_active_intent(self, quote_id: int) -> Optional[PaymentIntent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentIntentRecord).where(
                    PaymentIntentRecord.quote_id == quote_id,
                    PaymentIntentRecord.status.in_(ACTIVE_INTENT_STATUSES),
                )
            )
            row = result.scalars().first()
            return _to_intent(row) if row is not None else None

    async def count_intents(self, quote_id: int) -> int:
        async with self.session_factory() as session:
            count = await session.scalar(
                select(func.count())
                .select_from(PaymentIntentRecord)
                .where(PaymentIntentRecord.quote_id == quote_id)
            )
            return int(count or 0)

    async def update_intent(self, intent: PaymentIntent) -> PaymentIntent:
        values = _intent_values(intent)
        values.pop("intent_id")
        values.pop("created_at")
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(PaymentIntentRecord)
                .where(PaymentIntentRecord.intent_id == intent.intent_id)
                .values(**values)
            )
        return intent

    async def add_refund(self, refund: Refund) -> Refund:
        existing = await self.get_refund(refund.refund_id)
        if existing is not None:
            return existing
        try:
            async with session_scope(self.session_factory) as session:
                session.add(RefundRecord(**_refund_values(refund)))
        except IntegrityError:
            # Recorded concurrently by another delivery.
            existing = await self.get_refund(refund.refund_id)
            if existing is None:
                raise
            return existing
        return refund

    async def get_refund(self, refund_id: str) -> Optional[Refund]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RefundRecord).where(RefundRecord.refund_id == refund_id)
            )
            row = result.scalar_one_or_none()
            return _to_refund(row) if row is not None else None

    async def list_refunds(self, quote_id: int) -> List[Refund]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RefundRecord)
                .where(RefundRecord.quote_id == quote_id)
                .order_by(RefundRecord.id)
            )
            return [_to_refund(row) for row in result.scalars()]

    async def update_refund(self, refund: Refund) -> Refund:
        values = _refund_values(refund)
        values.pop("refund_id")
        values.pop("created_at")
        async with session_scope(self.session_factory) as session:
            await session.execute(
                update(RefundRecord)
                .where(RefundRecord.refund_id == refund.refund_id)
                .values(**values)
            )
        return refund


class SqlWebhookEventStore:
    """Webhook dedup ledger backed by ``webhook_events``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, event_id: str) -> Optional[WebhookEventRecord]:
        async with self.session_factory() as session:
            row = await session.get(WebhookEventRow, event_id)
            return _to_event(row) if row is not None else None

    async def insert_received(self, record: WebhookEventRecord) -> WebhookEventRecord:
        values = record.model_dump()
        values["status"] = WebhookEventStatus.RECEIVED.value
        try:
            async with session_scope(self.session_factory) as session:
                session.add(WebhookEventRow(**values))
        except IntegrityError:
            raise DuplicateEvent(
                f"Webhook event {record.event_id} already recorded",
                event_id=record.event_id,
            )
        return record.model_copy(update={"status": WebhookEventStatus.RECEIVED})

    async def reclaim(
        self,
        event_id: str,
        expected_status: WebhookEventStatus,
        expected_attempts: int,
        now: datetime,
    ) -> bool:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                update(WebhookEventRow)
                .where(
                    WebhookEventRow.event_id == event_id,
                    WebhookEventRow.status == expected_status.value,
                    WebhookEventRow.attempts == expected_attempts,
                )
                .values(
                    status=WebhookEventStatus.RECEIVED.value,
                    attempts=WebhookEventRow.attempts + 1,
                    last_attempt_at=now,
                )
            )
            return result.rowcount == 1

    async def _finish_claim(self, event_id: str, attempt: int, **values: Any) -> bool:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                update(WebhookEventRow)
                .where(
                    WebhookEventRow.event_id == event_id,
                    WebhookEventRow.status == WebhookEventStatus.RECEIVED.value,
                    WebhookEventRow.attempts == attempt,
                )
                .values(**values)
            )
            return result.rowcount == 1

    async def mark_processed(
        self, event_id: str, attempt: int, outcome: str, now: datetime
    ) -> bool:
        return await self._finish_claim(
            event_id,
            attempt,
            status=WebhookEventStatus.PROCESSED.value,
            processed_at=now,
            outcome=outcome,
            error=None,
        )

    async def mark_failed(self, event_id: str, attempt: int, error: str, now: datetime) -> bool:
        return await self._finish_claim(
            event_id,
            attempt,
            status=WebhookEventStatus.FAILED.value,
            last_attempt_at=now,
            error=error,
        )
