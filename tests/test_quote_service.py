"""
Tests for quote creation, editing and lifecycle operations.
"""
from datetime import timedelta
from decimal import Decimal

import pytest
from pytest_mock import MockerFixture

from quote_payments.bootstrap import Services
from quote_payments.core.errors import (
    ActorNotPermitted,
    ConcurrencyConflict,
    DuplicateQuoteNumber,
    InvalidAmount,
    QuoteExpired,
    QuoteNotEditable,
    QuoteNotFound,
    QuoteValidationError,
)
from quote_payments.core.models import ActorContext, ActorRole, Quote, QuoteStatus
from quote_payments.core.money import LineItem
from quote_payments.core.quote_service import QuoteChanges, QuoteDraft

from .conftest import CLIENT_ID, PROVIDER_ID, FrozenClock


class TestCreateQuote:
    """Test suite for QuoteService.create_quote."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_quote(
        self, services: Services, provider: ActorContext, sample_draft: QuoteDraft, clock: FrozenClock
    ) -> None:
        quote = await services.quote_service.create_quote(provider, sample_draft)

        assert quote.id is not None
        assert quote.status == QuoteStatus.DRAFT
        assert quote.provider_id == PROVIDER_ID
        assert quote.client_id == CLIENT_ID
        assert (quote.subtotal, quote.tax, quote.total) == (120500, 12050, 132550)
        assert quote.currency == "aud"
        assert quote.valid_until == clock() + timedelta(days=30)
        assert quote.quote_number.startswith("QT")
        assert len(quote.quote_number) == 9
        assert quote.version == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_custom_validity_and_currency(
        self, services: Services, provider: ActorContext, sample_draft: QuoteDraft, clock: FrozenClock
    ) -> None:
        draft = sample_draft.model_copy(update={"valid_days": 7, "currency": "NZD"})

        quote = await services.quote_service.create_quote(provider, draft)

        assert quote.valid_until == clock() + timedelta(days=7)
        assert quote.currency == "nzd"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_cannot_create(
        self, services: Services, client_actor: ActorContext, sample_draft: QuoteDraft
    ) -> None:
        with pytest.raises(ActorNotPermitted):
            await services.quote_service.create_quote(client_actor, sample_draft)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_validation_collects_every_error(
        self, services: Services, provider: ActorContext
    ) -> None:
        draft = QuoteDraft(
            client_id=CLIENT_ID,
            title="   ",
            line_items=[LineItem(description="", quantity=Decimal("0"), unit_price=100)],
            valid_days=400,
        )

        with pytest.raises(QuoteValidationError) as exc_info:
            await services.quote_service.create_quote(provider, draft)

        fields = {error["field"] for error in exc_info.value.errors}
        assert fields == {
            "title",
            "line_items[0].description",
            "line_items[0].quantity",
            "valid_days",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_line_item_limit(self, services: Services, provider: ActorContext) -> None:
        items = [LineItem(description=f"Item {i}", quantity=Decimal("1"), unit_price=100) for i in range(51)]
        draft = QuoteDraft(client_id=CLIENT_ID, title="Big job", line_items=items)

        with pytest.raises(QuoteValidationError, match="validation failed"):
            await services.quote_service.create_quote(provider, draft)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_line_items_rejected(self, services: Services, provider: ActorContext) -> None:
        draft = QuoteDraft(client_id=CLIENT_ID, title="Nothing", line_items=[])

        with pytest.raises(QuoteValidationError):
            await services.quote_service.create_quote(provider, draft)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_negative_price_rejected(self, services: Services, provider: ActorContext) -> None:
        draft = QuoteDraft(
            client_id=CLIENT_ID,
            title="Refund me",
            line_items=[LineItem(description="Credit", quantity=Decimal("1"), unit_price=-500)],
        )

        with pytest.raises(InvalidAmount):
            await services.quote_service.create_quote(provider, draft)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_quote_number_collision_retried(
        self, services: Services, provider: ActorContext, sample_draft: QuoteDraft, mocker: MockerFixture
    ) -> None:
        mocker.patch.object(
            services.quote_service,
            "_generate_quote_number",
            side_effect=["QT0000001", "QT0000001", "QT0000002"],
        )

        first = await services.quote_service.create_quote(provider, sample_draft)
        second = await services.quote_service.create_quote(provider, sample_draft)

        assert first.quote_number == "QT0000001"
        assert second.quote_number == "QT0000002"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_quote_number_attempts_exhausted(
        self, services: Services, provider: ActorContext, sample_draft: QuoteDraft, mocker: MockerFixture
    ) -> None:
        mocker.patch.object(services.quote_service, "_generate_quote_number", return_value="QT0000001")
        await services.quote_service.create_quote(provider, sample_draft)

        with pytest.raises(DuplicateQuoteNumber):
            await services.quote_service.create_quote(provider, sample_draft)


class TestUpdateQuote:
    """Test suite for QuoteService.update_quote."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_recomputes_totals(
        self, services: Services, provider: ActorContext, draft_quote: Quote
    ) -> None:
        changes = QuoteChanges(
            title="Bathroom renovation (revised)",
            line_items=[LineItem(description="Labour", quantity=Decimal("2"), unit_price=10000)],
            tax_enabled=False,
        )

        updated = await services.quote_service.update_quote(draft_quote.id, provider, changes)

        assert updated.title == "Bathroom renovation (revised)"
        assert (updated.subtotal, updated.tax, updated.total) == (20000, 0, 20000)
        assert updated.version == draft_quote.version + 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sent_quote_not_editable(
        self, services: Services, provider: ActorContext, sent_quote: Quote
    ) -> None:
        with pytest.raises(QuoteNotEditable):
            await services.quote_service.update_quote(
                sent_quote.id, provider, QuoteChanges(title="Too late")
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_provider_cannot_edit(
        self, services: Services, draft_quote: Quote
    ) -> None:
        intruder = ActorContext(actor_id=999, role=ActorRole.PROVIDER)

        with pytest.raises(ActorNotPermitted):
            await services.quote_service.update_quote(
                draft_quote.id, intruder, QuoteChanges(title="Mine now")
            )


class TestQuoteLifecycle:
    """Test suite for quote visibility and status operations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_parties_can_read(
        self, services: Services, provider: ActorContext, client_actor: ActorContext, draft_quote: Quote
    ) -> None:
        by_provider = await services.quote_service.get_quote(draft_quote.id, provider)
        by_client = await services.quote_service.get_quote_by_number(
            draft_quote.quote_number, client_actor
        )

        assert by_provider.id == by_client.id == draft_quote.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stranger_cannot_read(self, services: Services, draft_quote: Quote) -> None:
        stranger = ActorContext(actor_id=555, role=ActorRole.CLIENT)

        with pytest.raises(ActorNotPermitted):
            await services.quote_service.get_quote(draft_quote.id, stranger)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_quote_number(self, services: Services, provider: ActorContext) -> None:
        with pytest.raises(QuoteNotFound):
            await services.quote_service.get_quote_by_number("QT9999999", provider)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_view_marks_viewed(
        self, services: Services, client_actor: ActorContext, sent_quote: Quote, clock: FrozenClock
    ) -> None:
        viewed = await services.quote_service.view_quote(sent_quote.id, client_actor)

        assert viewed.status == QuoteStatus.VIEWED
        assert viewed.viewed_at == clock()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_view_leaves_status(
        self, services: Services, provider: ActorContext, sent_quote: Quote
    ) -> None:
        quote = await services.quote_service.view_quote(sent_quote.id, provider)

        assert quote.status == QuoteStatus.SENT
        assert quote.version == sent_quote.version

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeat_view_is_noop(
        self, services: Services, client_actor: ActorContext, sent_quote: Quote
    ) -> None:
        first = await services.quote_service.view_quote(sent_quote.id, client_actor)
        second = await services.quote_service.view_quote(sent_quote.id, client_actor)

        assert second.version == first.version

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_accept_and_reject(
        self, services: Services, provider: ActorContext, client_actor: ActorContext, sample_draft: QuoteDraft
    ) -> None:
        service = services.quote_service
        first = await service.send_quote((await service.create_quote(provider, sample_draft)).id, provider)
        second = await service.send_quote((await service.create_quote(provider, sample_draft)).id, provider)

        accepted = await service.accept_quote(first.id, client_actor)
        rejected = await service.reject_quote(second.id, client_actor, reason="Went with another quote")

        assert accepted.status == QuoteStatus.ACCEPTED
        assert rejected.status == QuoteStatus.REJECTED
        assert rejected.rejection_reason == "Went with another quote"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_accept_after_deadline(
        self, services: Services, client_actor: ActorContext, sent_quote: Quote, clock: FrozenClock
    ) -> None:
        clock.advance(days=31)

        with pytest.raises(QuoteExpired):
            await services.quote_service.accept_quote(sent_quote.id, client_actor)

        stored = await services.quotes.get(sent_quote.id)
        assert stored.status == QuoteStatus.EXPIRED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expire_overdue_sweep(
        self,
        services: Services,
        provider: ActorContext,
        sample_draft: QuoteDraft,
        sent_quote: Quote,
        clock: FrozenClock,
    ) -> None:
        service = services.quote_service
        draft_quote = await service.create_quote(provider, sample_draft)
        long_lived = await service.send_quote(
            (await service.create_quote(provider, sample_draft.model_copy(update={"valid_days": 60}))).id,
            provider,
        )
        clock.advance(days=31)

        expired = await services.quote_service.expire_overdue()

        assert expired == [sent_quote.id]
        assert (await services.quotes.get(sent_quote.id)).status == QuoteStatus.EXPIRED
        assert (await services.quotes.get(draft_quote.id)).status == QuoteStatus.DRAFT
        assert (await services.quotes.get(long_lived.id)).status == QuoteStatus.SENT

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expire_sweep_is_repeatable(
        self, services: Services, sent_quote: Quote, clock: FrozenClock
    ) -> None:
        clock.advance(days=31)

        assert await services.quote_service.expire_overdue() == [sent_quote.id]
        assert await services.quote_service.expire_overdue() == []


class TestListAndDeleteQuotes:
    """Test suite for QuoteService.list_quotes and delete_quote."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_newest_first_with_status_filter(
        self, services: Services, provider: ActorContext, sample_draft: QuoteDraft
    ) -> None:
        service = services.quote_service
        first = await service.create_quote(provider, sample_draft)
        second = await service.send_quote(
            (await service.create_quote(provider, sample_draft)).id, provider
        )
        other = ActorContext(actor_id=999, role=ActorRole.PROVIDER)
        await service.create_quote(other, sample_draft)

        everything = await service.list_quotes(provider)
        drafts = await service.list_quotes(provider, statuses=[QuoteStatus.DRAFT])
        open_quotes = await service.list_quotes(
            provider, statuses=[QuoteStatus.SENT, QuoteStatus.VIEWED]
        )
        page = await service.list_quotes(provider, limit=1, offset=1)

        assert [q.id for q in everything] == [second.id, first.id]
        assert [q.id for q in drafts] == [first.id]
        assert [q.id for q in open_quotes] == [second.id]
        assert [q.id for q in page] == [first.id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_cannot_list(
        self, services: Services, client_actor: ActorContext
    ) -> None:
        with pytest.raises(ActorNotPermitted):
            await services.quote_service.list_quotes(client_actor)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delete_draft(
        self, services: Services, provider: ActorContext, draft_quote: Quote
    ) -> None:
        await services.quote_service.delete_quote(draft_quote.id, provider)

        assert await services.quotes.get(draft_quote.id) is None
        with pytest.raises(QuoteNotFound):
            await services.quote_service.delete_quote(draft_quote.id, provider)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sent_quote_not_deletable(
        self, services: Services, provider: ActorContext, sent_quote: Quote
    ) -> None:
        with pytest.raises(QuoteNotEditable):
            await services.quote_service.delete_quote(sent_quote.id, provider)

        assert (await services.quotes.get(sent_quote.id)).status == QuoteStatus.SENT

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_provider_cannot_delete(
        self, services: Services, draft_quote: Quote
    ) -> None:
        intruder = ActorContext(actor_id=999, role=ActorRole.PROVIDER)

        with pytest.raises(ActorNotPermitted):
            await services.quote_service.delete_quote(draft_quote.id, intruder)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_delete_loses_to_concurrent_send(
        self, services: Services, provider: ActorContext, draft_quote: Quote
    ) -> None:
        await services.quote_service.send_quote(draft_quote.id, provider)

        with pytest.raises(ConcurrencyConflict):
            await services.quotes.delete(draft_quote.id, expected_version=draft_quote.version)

        assert (await services.quotes.get(draft_quote.id)).status == QuoteStatus.SENT
