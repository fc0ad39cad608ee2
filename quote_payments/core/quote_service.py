"""
Quote lifecycle operations.

Quotes are created and edited as drafts by their provider; totals always come
from the fee calculator. Status changes are delegated to the state machine.
"""
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

import structlog
from pydantic import BaseModel

from quote_payments.monitoring.metrics import metrics

from .errors import (
    ActorNotPermitted,
    ConcurrencyConflict,
    DuplicateQuoteNumber,
    InvalidStatusTransition,
    QuoteNotEditable,
    QuoteNotFound,
    QuoteValidationError,
)
from .models import ActorContext, ActorRole, Quote, QuoteStatus
from .money import FeeSchedule, LineItem, calculate_quote_totals
from .ports import QuoteRepository
from .quote_state import QuoteStateMachine

logger = structlog.get_logger(__name__)

MIN_VALID_DAYS = 1
MAX_VALID_DAYS = 365
MAX_TITLE_LENGTH = 200
QUOTE_NUMBER_DIGITS = 7
QUOTE_NUMBER_ATTEMPTS = 5


class QuoteDraft(BaseModel):
    """Input for a new quote."""

    client_id: int
    title: str
    line_items: List[LineItem]
    tax_enabled: bool = True
    job_id: Optional[int] = None
    notes: Optional[str] = None
    valid_days: Optional[int] = None
    currency: Optional[str] = None


class QuoteChanges(BaseModel):
    """Editable fields of a draft quote. Unset fields are left as they are."""

    title: Optional[str] = None
    line_items: Optional[List[LineItem]] = None
    tax_enabled: Optional[bool] = None
    notes: Optional[str] = None
    valid_days: Optional[int] = None


class QuoteService:
    """
    Creates, edits and moves quotes through their lifecycle.

    Payment-linked fields are never touched here; see PaymentOrchestrator.
    """

    def __init__(
        self,
        quotes: QuoteRepository,
        state_machine: QuoteStateMachine,
        fee_schedule: FeeSchedule,
        default_currency: str = "aud",
        default_valid_days: int = 30,
        max_line_items: int = 50,
        quote_number_prefix: str = "QT",
    ):
        self.quotes = quotes
        self.state_machine = state_machine
        self.fee_schedule = fee_schedule
        self.default_currency = default_currency
        self.default_valid_days = default_valid_days
        self.max_line_items = max_line_items
        self.quote_number_prefix = quote_number_prefix

    @classmethod
    def from_settings(
        cls, settings: Any, quotes: QuoteRepository, state_machine: QuoteStateMachine
    ) -> "QuoteService":
        return cls(
            quotes=quotes,
            state_machine=state_machine,
            fee_schedule=FeeSchedule.from_settings(settings),
            default_currency=settings.default_currency,
            default_valid_days=settings.default_valid_days,
            max_line_items=settings.max_line_items,
            quote_number_prefix=settings.quote_number_prefix,
        )

    def _generate_quote_number(self) -> str:
        return f"{self.quote_number_prefix}{secrets.randbelow(10 ** QUOTE_NUMBER_DIGITS):0{QUOTE_NUMBER_DIGITS}d}"

    def _validate(
        self,
        title: Optional[str],
        line_items: Optional[List[LineItem]],
        valid_days: Optional[int],
    ) -> None:
        errors: List[Dict[str, str]] = []

        if title is not None and not title.strip():
            errors.append({"field": "title", "message": "Title is required"})
        elif title is not None and len(title) > MAX_TITLE_LENGTH:
            errors.append(
                {"field": "title", "message": f"Title cannot exceed {MAX_TITLE_LENGTH} characters"}
            )

        if line_items is not None:
            if not line_items:
                errors.append({"field": "line_items", "message": "At least one line item is required"})
            elif len(line_items) > self.max_line_items:
                errors.append(
                    {
                        "field": "line_items",
                        "message": f"Maximum {self.max_line_items} line items per quote",
                    }
                )
            for index, item in enumerate(line_items):
                if not item.description.strip():
                    errors.append(
                        {"field": f"line_items[{index}].description", "message": "Description is required"}
                    )
                if item.quantity == 0:
                    errors.append(
                        {
                            "field": f"line_items[{index}].quantity",
                            "message": "Quantity must be greater than zero",
                        }
                    )

        if valid_days is not None and not MIN_VALID_DAYS <= valid_days <= MAX_VALID_DAYS:
            errors.append(
                {
                    "field": "valid_days",
                    "message": f"Validity must be between {MIN_VALID_DAYS} and {MAX_VALID_DAYS} days",
                }
            )

        if errors:
            raise QuoteValidationError(errors)

    @staticmethod
    def _ensure_owner(quote: Quote, actor: ActorContext) -> None:
        if actor.role == ActorRole.SYSTEM:
            return
        if actor.role != ActorRole.PROVIDER or actor.actor_id != quote.provider_id:
            raise ActorNotPermitted(
                "Only the quote's provider may edit it", quote_id=quote.id
            )

    async def create_quote(self, actor: ActorContext, draft: QuoteDraft) -> Quote:
        """
        Create a draft quote owned by the acting provider.

        Args:
            actor: Provider creating the quote
            draft: Quote content

        Returns:
            Quote: Stored draft quote

        Raises:
            ActorNotPermitted: If the actor is not a provider
            QuoteValidationError: If fields are invalid
            InvalidAmount: If amounts are negative or too large
        """
        if actor.role != ActorRole.PROVIDER:
            raise ActorNotPermitted("Only providers may create quotes")

        valid_days = draft.valid_days if draft.valid_days is not None else self.default_valid_days
        self._validate(draft.title, draft.line_items, valid_days)
        totals = calculate_quote_totals(draft.line_items, draft.tax_enabled, self.fee_schedule)

        now = self.state_machine.clock()
        for _ in range(QUOTE_NUMBER_ATTEMPTS):
            quote = Quote(
                quote_number=self._generate_quote_number(),
                provider_id=actor.actor_id,
                client_id=draft.client_id,
                job_id=draft.job_id,
                title=draft.title.strip(),
                notes=draft.notes,
                line_items=draft.line_items,
                tax_enabled=draft.tax_enabled,
                subtotal=totals.subtotal,
                tax=totals.tax,
                total=totals.total,
                currency=(draft.currency or self.default_currency).lower(),
                valid_until=now + timedelta(days=valid_days),
                status=QuoteStatus.DRAFT,
                created_at=now,
                updated_at=now,
            )
            try:
                stored = await self.quotes.add(quote)
            except DuplicateQuoteNumber:
                logger.info("quote_number_collision", quote_number=quote.quote_number)
                continue

            metrics.record_quote_created(stored.currency)
            logger.info(
                "quote_created",
                quote_id=stored.id,
                quote_number=stored.quote_number,
                provider_id=stored.provider_id,
                total=stored.total,
                currency=stored.currency,
            )
            return stored

        raise DuplicateQuoteNumber("Could not allocate a unique quote number")

    async def update_quote(
        self, quote_id: int, actor: ActorContext, changes: QuoteChanges
    ) -> Quote:
        """
        Edit a draft quote and recompute its totals.

        Raises:
            QuoteNotEditable: If the quote is no longer a draft
            ActorNotPermitted: If the actor does not own the quote
            QuoteValidationError: If fields are invalid
        """
        self._validate(changes.title, changes.line_items, changes.valid_days)
        now = self.state_machine.clock()

        def mutate(quote: Quote) -> Quote:
            self._ensure_owner(quote, actor)
            if quote.status != QuoteStatus.DRAFT:
                raise QuoteNotEditable(
                    f"Quote {quote_id} is {quote.status.value} and can no longer be edited",
                    quote_id=quote_id,
                    status=quote.status.value,
                )

            if changes.title is not None:
                quote.title = changes.title.strip()
            if changes.notes is not None:
                quote.notes = changes.notes
            if changes.line_items is not None:
                quote.line_items = changes.line_items
            if changes.tax_enabled is not None:
                quote.tax_enabled = changes.tax_enabled
            if changes.valid_days is not None:
                quote.valid_until = now + timedelta(days=changes.valid_days)

            totals = calculate_quote_totals(quote.line_items, quote.tax_enabled, self.fee_schedule)
            quote.subtotal, quote.tax, quote.total = totals.subtotal, totals.tax, totals.total
            quote.updated_at = now
            return quote

        quote, _ = await self.state_machine.modify(quote_id, mutate)
        logger.info("quote_updated", quote_id=quote_id, total=quote.total)
        return quote

    async def get_quote(self, quote_id: int, actor: ActorContext) -> Quote:
        """
        Fetch a quote visible to the actor.

        Raises:
            QuoteNotFound: If the quote does not exist
            ActorNotPermitted: If the actor is neither party to the quote
        """
        quote = await self.state_machine.load(quote_id)
        self._ensure_party(quote, actor)
        return quote

    async def get_quote_by_number(self, quote_number: str, actor: ActorContext) -> Quote:
        quote = await self.quotes.get_by_number(quote_number)
        if quote is None:
            raise QuoteNotFound(f"Quote {quote_number} not found", quote_number=quote_number)
        self._ensure_party(quote, actor)
        return quote

    async def list_quotes(
        self,
        actor: ActorContext,
        statuses: Optional[Sequence[QuoteStatus]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Quote]:
        """
        The acting provider's quotes, newest first.

        Args:
            actor: Provider whose quotes are listed
            statuses: Only quotes in one of these statuses (all when empty)
            limit: Page size
            offset: Number of quotes to skip

        Raises:
            ActorNotPermitted: If the actor is not a provider
        """
        if actor.role != ActorRole.PROVIDER:
            raise ActorNotPermitted("Only providers may list their quotes")
        return await self.quotes.list_for_provider(actor.actor_id, statuses, limit, offset)

    async def delete_quote(self, quote_id: int, actor: ActorContext) -> None:
        """
        Delete a draft quote.

        The delete is conditional on the version read here, so a quote sent
        in the meantime is not removed.

        Raises:
            QuoteNotEditable: If the quote is no longer a draft
            ActorNotPermitted: If the actor does not own the quote
            ConcurrencyConflict: If the quote changed while being deleted
        """
        quote = await self.state_machine.load(quote_id)
        self._ensure_owner(quote, actor)
        if quote.status != QuoteStatus.DRAFT:
            raise QuoteNotEditable(
                f"Quote {quote_id} is {quote.status.value}; only drafts can be deleted",
                quote_id=quote_id,
                status=quote.status.value,
            )

        await self.quotes.delete(quote_id, expected_version=quote.version)
        logger.info("quote_deleted", quote_id=quote_id, quote_number=quote.quote_number)

    @staticmethod
    def _ensure_party(quote: Quote, actor: ActorContext) -> None:
        if actor.role == ActorRole.SYSTEM:
            return
        if actor.role == ActorRole.PROVIDER and actor.actor_id == quote.provider_id:
            return
        if actor.role == ActorRole.CLIENT and actor.actor_id == quote.client_id:
            return
        raise ActorNotPermitted("Quote belongs to another account", quote_id=quote.id)

    async def send_quote(self, quote_id: int, actor: ActorContext) -> Quote:
        return await self.state_machine.transition(quote_id, QuoteStatus.SENT, actor)

    async def view_quote(self, quote_id: int, actor: ActorContext) -> Quote:
        """
        Record that the client opened the quote.

        Only a sent quote moves to viewed; in any other state the quote is
        returned unchanged.
        """
        quote = await self.get_quote(quote_id, actor)
        if quote.status != QuoteStatus.SENT or actor.role != ActorRole.CLIENT:
            return quote
        try:
            return await self.state_machine.transition(quote_id, QuoteStatus.VIEWED, actor)
        except InvalidStatusTransition:
            # Another request moved it on first.
            return await self.state_machine.load(quote_id)

    async def accept_quote(self, quote_id: int, actor: ActorContext) -> Quote:
        return await self.state_machine.transition(quote_id, QuoteStatus.ACCEPTED, actor)

    async def reject_quote(
        self, quote_id: int, actor: ActorContext, reason: Optional[str] = None
    ) -> Quote:
        return await self.state_machine.transition(
            quote_id, QuoteStatus.REJECTED, actor, reason=reason
        )

    async def cancel_quote(self, quote_id: int, actor: ActorContext) -> Quote:
        return await self.state_machine.transition(quote_id, QuoteStatus.CANCELLED, actor)

    async def expire_quote(self, quote_id: int, actor: ActorContext) -> Quote:
        return await self.state_machine.transition(quote_id, QuoteStatus.EXPIRED, actor)

    async def expire_overdue(self) -> List[int]:
        """
        Expire every sent or viewed quote whose deadline has passed.

        Quotes that another writer moved on in the meantime are skipped.

        Returns:
            List[int]: Ids of the quotes that were expired
        """
        now = self.state_machine.clock()
        overdue = await self.quotes.list_overdue(now)
        system = ActorContext.system()
        expired: List[int] = []

        for quote in overdue:
            try:
                await self.state_machine.transition(quote.id, QuoteStatus.EXPIRED, system)
            except (InvalidStatusTransition, ConcurrencyConflict) as e:
                logger.info("quote_expiry_skipped", quote_id=quote.id, reason=str(e))
                continue
            expired.append(quote.id)

        logger.info("quote_expiry_sweep_completed", candidates=len(overdue), expired=len(expired))
        return expired
