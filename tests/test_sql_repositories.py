"""
Integration tests for the SQLAlchemy persistence adapter (SQLite via aiosqlite).
"""
from datetime import timedelta
from pathlib import Path
from typing import Any, AsyncGenerator, Callable

import pytest
import pytest_asyncio

from quote_payments.bootstrap import Services, build_services
from quote_payments.config import Settings
from quote_payments.core.errors import (
    ConcurrencyConflict,
    DuplicateEvent,
    DuplicateQuoteNumber,
    IntentAlreadyActive,
    QuoteNotFound,
)
from quote_payments.core.models import (
    ActorContext,
    ActorRole,
    IntentStatus,
    PaymentIntent,
    PaymentStatus,
    QuoteStatus,
    Refund,
    RefundStatus,
    WebhookEventRecord,
    WebhookEventStatus,
)
from quote_payments.core.quote_service import QuoteDraft
from quote_payments.integrations.fake_gateway import FakeGateway
from quote_payments.integrations.webhook_handler import Accepted, AlreadyProcessed

from .conftest import FrozenClock, RecordingNotifier

EventFactory = Callable[..., bytes]
Signer = Callable[..., str]


@pytest_asyncio.fixture
async def sql_services(
    tmp_path: Path,
    test_settings: Settings,
    gateway: FakeGateway,
    notifier: RecordingNotifier,
    clock: FrozenClock,
) -> AsyncGenerator[Services, Any]:
    """Service graph on a throwaway SQLite database."""
    settings = test_settings.model_copy(
        update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'quotes.db'}"}
    )
    services = build_services(settings, gateway=gateway, notifier=notifier, clock=clock)
    await services.startup()
    yield services
    await services.shutdown()


class TestSqlQuoteRepository:
    """Test suite for SqlQuoteRepository."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_round_trip(
        self, sql_services: Services, provider: ActorContext, sample_draft: QuoteDraft, clock: FrozenClock
    ) -> None:
        created = await sql_services.quote_service.create_quote(provider, sample_draft)

        loaded = await sql_services.quotes.get(created.id)
        by_number = await sql_services.quotes.get_by_number(created.quote_number)

        assert loaded == created
        assert by_number.id == created.id
        assert loaded.valid_until == clock() + timedelta(days=30)
        assert loaded.valid_until.tzinfo is not None
        assert loaded.line_items == sample_draft.line_items

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_compare_and_set(
        self, sql_services: Services, provider: ActorContext, sample_draft: QuoteDraft
    ) -> None:
        created = await sql_services.quote_service.create_quote(provider, sample_draft)
        created.title = "First writer"
        saved = await sql_services.quotes.save(created, expected_version=1)

        stale = created.model_copy(update={"title": "Second writer"})
        with pytest.raises(ConcurrencyConflict):
            await sql_services.quotes.save(stale, expected_version=1)

        stored = await sql_services.quotes.get(created.id)
        assert saved.version == stored.version == 2
        assert stored.title == "First writer"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_save_missing_quote(
        self, sql_services: Services, provider: ActorContext, sample_draft: QuoteDraft
    ) -> None:
        created = await sql_services.quote_service.create_quote(provider, sample_draft)
        ghost = created.model_copy(update={"id": 9999})

        with pytest.raises(QuoteNotFound):
            await sql_services.quotes.save(ghost, expected_version=1)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_quote_number(
        self, sql_services: Services, provider: ActorContext, sample_draft: QuoteDraft
    ) -> None:
        created = await sql_services.quote_service.create_quote(provider, sample_draft)
        duplicate = created.model_copy(update={"id": None})

        with pytest.raises(DuplicateQuoteNumber):
            await sql_services.quotes.add(duplicate)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_overdue(
        self,
        sql_services: Services,
        provider: ActorContext,
        sample_draft: QuoteDraft,
        clock: FrozenClock,
    ) -> None:
        service = sql_services.quote_service
        sent = await service.send_quote((await service.create_quote(provider, sample_draft)).id, provider)
        await service.create_quote(provider, sample_draft)
        clock.advance(days=31)

        overdue = await sql_services.quotes.list_overdue(clock())
        expired = await service.expire_overdue()

        assert [q.id for q in overdue] == [sent.id]
        assert expired == [sent.id]
        assert (await sql_services.quotes.get(sent.id)).status == QuoteStatus.EXPIRED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_list_for_provider(
        self,
        sql_services: Services,
        provider: ActorContext,
        sample_draft: QuoteDraft,
        clock: FrozenClock,
    ) -> None:
        service = sql_services.quote_service
        older = await service.create_quote(provider, sample_draft)
        clock.advance(minutes=5)
        newer = await service.send_quote((await service.create_quote(provider, sample_draft)).id, provider)
        await service.create_quote(ActorContext(actor_id=999, role=ActorRole.PROVIDER), sample_draft)

        everything = await sql_services.quotes.list_for_provider(provider.actor_id)
        sent = await sql_services.quotes.list_for_provider(provider.actor_id, [QuoteStatus.SENT])
        page = await sql_services.quotes.list_for_provider(provider.actor_id, None, limit=1, offset=1)

        assert [q.id for q in everything] == [newer.id, older.id]
        assert [q.id for q in sent] == [newer.id]
        assert [q.id for q in page] == [older.id]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_delete_is_version_checked(
        self, sql_services: Services, provider: ActorContext, sample_draft: QuoteDraft
    ) -> None:
        service = sql_services.quote_service
        draft = await service.create_quote(provider, sample_draft)
        await service.send_quote(draft.id, provider)

        with pytest.raises(ConcurrencyConflict):
            await sql_services.quotes.delete(draft.id, expected_version=draft.version)

        other = await service.create_quote(provider, sample_draft)
        await service.delete_quote(other.id, provider)

        assert await sql_services.quotes.get(other.id) is None
        assert await sql_services.quotes.get(draft.id) is not None
        with pytest.raises(QuoteNotFound):
            await sql_services.quotes.delete(other.id, expected_version=1)


class TestSqlPaymentRepository:
    """Test suite for SqlPaymentRepository."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_one_active_intent_per_quote(
        self, sql_services: Services, provider: ActorContext, sample_draft: QuoteDraft
    ) -> None:
        quote = await sql_services.quote_service.create_quote(provider, sample_draft)
        first = PaymentIntent(
            intent_id="pi_sql_1",
            quote_id=quote.id,
            attempt=1,
            amount=quote.total,
            currency="aud",
            idempotency_key="create_intent:1:1:a",
        )
        await sql_services.payments.add_intent(first)

        with pytest.raises(IntentAlreadyActive):
            await sql_services.payments.add_intent(
                first.model_copy(update={"intent_id": "pi_sql_2", "attempt": 2})
            )

        first.status = IntentStatus.FAILED
        await sql_services.payments.update_intent(first)
        await sql_services.payments.add_intent(
            first.model_copy(update={"intent_id": "pi_sql_3", "attempt": 2, "status": IntentStatus.PENDING})
        )

        assert await sql_services.payments.count_intents(quote.id) == 2
        active = await sql_services.payments.get_active_intent(quote.id)
        assert active.intent_id == "pi_sql_3"
        assert (await sql_services.payments.get_intent("pi_sql_1")).status == IntentStatus.FAILED

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_insert_is_idempotent(
        self, sql_services: Services, provider: ActorContext, sample_draft: QuoteDraft
    ) -> None:
        quote = await sql_services.quote_service.create_quote(provider, sample_draft)
        refund = Refund(refund_id="re_sql_1", quote_id=quote.id, attempt=1, amount=5000)

        await sql_services.payments.add_refund(refund)
        again = await sql_services.payments.add_refund(refund.model_copy(update={"amount": 1}))
        refund.status = RefundStatus.SUCCEEDED
        await sql_services.payments.update_refund(refund)

        assert again.amount == 5000
        [stored] = await sql_services.payments.list_refunds(quote.id)
        assert stored.status == RefundStatus.SUCCEEDED


class TestSqlWebhookEventStore:
    """Test suite for SqlWebhookEventStore."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_event_lifecycle(self, sql_services: Services, clock: FrozenClock) -> None:
        store = sql_services.event_store
        record = WebhookEventRecord(
            event_id="evt_sql_1",
            event_type="payment_intent.succeeded",
            received_at=clock(),
            last_attempt_at=clock(),
            payload={"id": "evt_sql_1"},
        )
        await store.insert_received(record)

        with pytest.raises(DuplicateEvent):
            await store.insert_received(record)

        assert await store.mark_failed("evt_sql_1", 1, "IntentNotFound: pi_x", clock()) is True
        assert await store.reclaim("evt_sql_1", WebhookEventStatus.FAILED, 1, clock()) is True
        # A second claimant with the same view loses.
        assert await store.reclaim("evt_sql_1", WebhookEventStatus.FAILED, 1, clock()) is False

        assert await store.mark_processed("evt_sql_1", 2, "payment_applied", clock()) is True
        stored = await store.get("evt_sql_1")
        assert stored.status == WebhookEventStatus.PROCESSED
        assert stored.attempts == 2
        assert stored.outcome == "payment_applied"
        assert stored.error is None
        assert stored.payload == {"id": "evt_sql_1"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stale_worker_cannot_finish_reclaimed_event(
        self, sql_services: Services, clock: FrozenClock
    ) -> None:
        store = sql_services.event_store
        await store.insert_received(
            WebhookEventRecord(
                event_id="evt_sql_stale",
                event_type="payment_intent.succeeded",
                received_at=clock(),
                last_attempt_at=clock(),
                payload={"id": "evt_sql_stale"},
            )
        )
        clock.advance(seconds=301)
        assert await store.reclaim("evt_sql_stale", WebhookEventStatus.RECEIVED, 1, clock()) is True

        assert await store.mark_processed("evt_sql_stale", 2, "payment_applied", clock()) is True
        # The first worker wakes up and tries to record its failure.
        assert await store.mark_failed("evt_sql_stale", 1, "TimeoutError: late", clock()) is False
        assert await store.mark_processed("evt_sql_stale", 1, "late", clock()) is False

        stored = await store.get("evt_sql_stale")
        assert stored.status == WebhookEventStatus.PROCESSED
        assert stored.outcome == "payment_applied"
        assert stored.error is None


class TestSqlEndToEnd:
    """Full payment flow on the SQL adapter."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pay_then_webhook(
        self,
        sql_services: Services,
        provider: ActorContext,
        client_actor: ActorContext,
        sample_draft: QuoteDraft,
        make_event: EventFactory,
        sign: Signer,
        notifier: RecordingNotifier,
    ) -> None:
        service = sql_services.quote_service
        quote = await service.send_quote((await service.create_quote(provider, sample_draft)).id, provider)

        paid = await sql_services.orchestrator.pay_and_accept(quote.id, "pm_card_visa", client_actor)
        payload = make_event(
            "payment_intent.succeeded", {"id": paid.payment_intent_id, "amount_received": paid.total}
        )
        first = await sql_services.webhook_handler.ingest(payload, sign(payload))
        second = await sql_services.webhook_handler.ingest(payload, sign(payload))

        assert paid.status == QuoteStatus.ACCEPTED
        assert isinstance(first, Accepted)
        assert first.detail == "payment_already_applied"
        assert isinstance(second, AlreadyProcessed)
        assert notifier.count("quote_paid") == 1

        refunded = await sql_services.orchestrator.refund_payment(quote.id, provider)
        assert refunded.payment_status == PaymentStatus.REFUNDED
        assert (await sql_services.quotes.get(quote.id)).amount_refunded == paid.total

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_check_reaches_database(self, sql_services: Services) -> None:
        result = await sql_services.health_check.check_database()

        assert result["status"] == "healthy"
