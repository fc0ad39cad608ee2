"""
Concurrency tests: interleaved confirmations, webhooks and transitions.

The in-memory stores yield to the event loop between reads and writes, so
asyncio.gather interleaves the competing coroutines at every await.
"""
import asyncio
from typing import Any, Callable, List

import pytest

from quote_payments.bootstrap import Services
from quote_payments.core.errors import (
    IntentAlreadyActive,
    InvalidStatusTransition,
)
from quote_payments.core.models import (
    ActorContext,
    PaymentStatus,
    Quote,
    QuoteStatus,
    WebhookEventStatus,
)
from quote_payments.integrations.webhook_handler import Accepted, AlreadyProcessed, Rejected

from .conftest import FrozenClock, RecordingNotifier

EventFactory = Callable[..., bytes]
Signer = Callable[..., str]


class TestPaymentRaces:
    """Confirmation and webhook paths competing for the same payment."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_confirm_and_webhook_apply_once(
        self,
        services: Services,
        client_actor: ActorContext,
        sent_quote: Quote,
        make_event: EventFactory,
        sign: Signer,
        notifier: RecordingNotifier,
    ) -> None:
        intent = await services.orchestrator.create_payment_intent_for_quote(sent_quote.id, client_actor)
        payload = make_event(
            "payment_intent.succeeded",
            {
                "id": intent.intent_id,
                "amount_received": intent.amount,
                "latest_charge": "ch_fake_000001",
            },
        )

        _, outcome = await asyncio.gather(
            services.orchestrator.confirm_payment(intent.intent_id, "pm_card_visa"),
            services.webhook_handler.ingest(payload, sign(payload)),
        )

        assert isinstance(outcome, Accepted)
        stored = await services.quotes.get(sent_quote.id)
        assert stored.status == QuoteStatus.ACCEPTED
        assert stored.payment_status == PaymentStatus.PAID
        assert stored.amount_paid == 132550
        assert notifier.count("quote_paid") == 1
        assert notifier.count("quote_accepted") == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_duplicate_deliveries(
        self,
        services: Services,
        client_actor: ActorContext,
        sent_quote: Quote,
        make_event: EventFactory,
        sign: Signer,
        notifier: RecordingNotifier,
    ) -> None:
        intent = await services.orchestrator.create_payment_intent_for_quote(sent_quote.id, client_actor)
        payload = make_event(
            "payment_intent.succeeded",
            {"id": intent.intent_id, "amount_received": intent.amount},
            event_id="evt_storm",
        )

        outcomes = await asyncio.gather(
            *[services.webhook_handler.ingest(payload, sign(payload)) for _ in range(10)]
        )

        accepted = [o for o in outcomes if isinstance(o, Accepted)]
        assert len(accepted) == 1
        # The rest either saw it processed or in flight; none applied it again.
        assert all(isinstance(o, (AlreadyProcessed, Rejected)) for o in outcomes if o not in accepted)
        assert notifier.count("quote_paid") == 1

        record = await services.event_store.get("evt_storm")
        assert record.status == WebhookEventStatus.PROCESSED
        assert record.attempts == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_succeeded_and_failed_events_race(
        self,
        services: Services,
        client_actor: ActorContext,
        sent_quote: Quote,
        make_event: EventFactory,
        sign: Signer,
    ) -> None:
        """A late failure event can never downgrade a captured payment."""
        intent = await services.orchestrator.create_payment_intent_for_quote(sent_quote.id, client_actor)
        succeeded = make_event("payment_intent.succeeded", {"id": intent.intent_id})
        failed = make_event(
            "payment_intent.payment_failed",
            {"id": intent.intent_id, "last_payment_error": {"message": "Declined"}},
        )

        await asyncio.gather(
            services.webhook_handler.ingest(succeeded, sign(succeeded)),
            services.webhook_handler.ingest(failed, sign(failed)),
        )

        stored = await services.quotes.get(sent_quote.id)
        assert stored.payment_status == PaymentStatus.PAID
        assert stored.status == QuoteStatus.ACCEPTED

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_intent_creation(
        self, services: Services, client_actor: ActorContext, sent_quote: Quote
    ) -> None:
        results: List[Any] = await asyncio.gather(
            *[
                services.orchestrator.create_payment_intent_for_quote(sent_quote.id, client_actor)
                for _ in range(5)
            ],
            return_exceptions=True,
        )

        created = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(created) == 1
        assert len(errors) == 4
        assert all(isinstance(e, IntentAlreadyActive) for e in errors)

        active = await services.payments.get_active_intent(sent_quote.id)
        assert active is not None
        assert active.intent_id == created[0].intent_id
        stored = await services.quotes.get(sent_quote.id)
        assert stored.payment_intent_id == active.intent_id


class TestTransitionRaces:
    """Competing status transitions on one quote."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_accept_and_cancel(
        self,
        services: Services,
        provider: ActorContext,
        client_actor: ActorContext,
        sent_quote: Quote,
    ) -> None:
        results = await asyncio.gather(
            services.quote_service.accept_quote(sent_quote.id, client_actor),
            services.quote_service.cancel_quote(sent_quote.id, provider),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, Quote)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], InvalidStatusTransition)

        stored = await services.quotes.get(sent_quote.id)
        assert stored.status == winners[0].status
        assert stored.version == sent_quote.version + 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_many_viewers(
        self, services: Services, client_actor: ActorContext, sent_quote: Quote
    ) -> None:
        quotes = await asyncio.gather(
            *[services.quote_service.view_quote(sent_quote.id, client_actor) for _ in range(5)]
        )

        assert all(q.status == QuoteStatus.VIEWED for q in quotes)
        stored = await services.quotes.get(sent_quote.id)
        assert stored.version == sent_quote.version + 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_expiry_sweep_and_payment(
        self,
        services: Services,
        client_actor: ActorContext,
        sent_quote: Quote,
        make_event: EventFactory,
        sign: Signer,
        clock: FrozenClock,
    ) -> None:
        """A payment captured just before expiry is kept even if the sweep runs concurrently."""
        intent = await services.orchestrator.create_payment_intent_for_quote(sent_quote.id, client_actor)
        clock.advance(days=31)
        payload = make_event("payment_intent.succeeded", {"id": intent.intent_id})

        await asyncio.gather(
            services.quote_service.expire_overdue(),
            services.webhook_handler.ingest(payload, sign(payload)),
        )

        stored = await services.quotes.get(sent_quote.id)
        assert stored.payment_status == PaymentStatus.PAID
        assert stored.status in (QuoteStatus.ACCEPTED, QuoteStatus.EXPIRED)
