"""
Payment orchestration for quotes.

Flow:
1. Create an intent for a sent/viewed quote (one active intent at a time)
2. Confirm it with a payment method
3. Apply the outcome to the quote exactly once

Synchronous confirmation and processor webhooks both end in the same
apply primitives (apply_payment_succeeded / apply_payment_failed /
apply_refund_update). Those are keyed by intent and refund ids and written
through the quote state machine's compare-and-set, so whichever path arrives
second is a no-op.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog

from quote_payments.integrations.gateway import PaymentGateway
from quote_payments.monitoring.metrics import metrics

from .errors import (
    ActorNotPermitted,
    IntentAlreadyActive,
    IntentNotFound,
    InvalidAmount,
    InvalidStatusTransition,
    PaymentNotRefundable,
    QuoteNotPayable,
    RefundAlreadyPending,
    RefundFailed,
)
from .idempotency import derive_idempotency_key
from .models import (
    ActorContext,
    ActorRole,
    IntentStatus,
    PaymentIntent,
    PaymentStatus,
    Quote,
    QuoteStatus,
    Refund,
    RefundStatus,
)
from .money import FeeBreakdown, FeeSchedule, calculate_fees, calculate_quote_totals
from .notifications import LoggingNotifier, PaymentNotifier
from .ports import PaymentRepository
from .quote_state import QuoteStateMachine, apply_status

logger = structlog.get_logger(__name__)

PAYABLE_STATUSES = (QuoteStatus.SENT, QuoteStatus.VIEWED)
PAYABLE_PAYMENT_STATUSES = (PaymentStatus.UNPAID, PaymentStatus.FAILED)
SETTLED_PAYMENT_STATUSES = (PaymentStatus.PAID, PaymentStatus.REFUNDED)


@dataclass(frozen=True)
class PaymentApplication:
    """Result of an apply primitive. ``applied`` is False for a repeat."""

    quote: Quote
    applied: bool


class PaymentOrchestrator:
    """
    Coordinates quotes, the payment gateway and payment records.

    All quote writes go through QuoteStateMachine.modify, which serialises
    them per quote.
    """

    def __init__(
        self,
        state_machine: QuoteStateMachine,
        payments: PaymentRepository,
        gateway: PaymentGateway,
        fee_schedule: FeeSchedule,
        notifier: Optional[PaymentNotifier] = None,
        min_charge: int = 50,
    ):
        """
        Initialize payment orchestrator.

        Args:
            state_machine: Quote state machine (owns the quote repository)
            payments: Intent and refund repository
            gateway: Payment processor
            fee_schedule: Rates for totals and fees
            notifier: Receives milestones after they are persisted
            min_charge: Smallest chargeable amount in minor units
        """
        self.state_machine = state_machine
        self.payments = payments
        self.gateway = gateway
        self.fee_schedule = fee_schedule
        self.notifier = notifier or LoggingNotifier()
        self.min_charge = min_charge

        logger.info("payment_orchestrator_initialized", gateway=type(gateway).__name__)

    @property
    def clock(self) -> Callable[[], datetime]:
        return self.state_machine.clock

    async def _notify(self, milestone: str, *args: Any) -> None:
        """Deliver a notification; delivery problems never undo persisted state."""
        try:
            await getattr(self.notifier, milestone)(*args)
        except Exception as e:
            logger.error("payment_notification_failed", milestone=milestone, error=str(e))

    @staticmethod
    def _ensure_client(quote: Quote, actor: ActorContext) -> None:
        if actor.role == ActorRole.SYSTEM:
            return
        if actor.role != ActorRole.CLIENT or actor.actor_id != quote.client_id:
            raise ActorNotPermitted("Only the quote's client may pay for it", quote_id=quote.id)

    @staticmethod
    def _ensure_provider(quote: Quote, actor: ActorContext) -> None:
        if actor.role == ActorRole.SYSTEM:
            return
        if actor.role != ActorRole.PROVIDER or actor.actor_id != quote.provider_id:
            raise ActorNotPermitted("Only the quote's provider may refund it", quote_id=quote.id)

    async def _get_intent(self, intent_id: str) -> PaymentIntent:
        intent = await self.payments.get_intent(intent_id)
        if intent is None:
            raise IntentNotFound(f"Payment intent {intent_id} not found", intent_id=intent_id)
        return intent

    async def get_payment_intent(self, intent_id: str) -> PaymentIntent:
        return await self._get_intent(intent_id)

    async def fee_breakdown(self, quote_id: int) -> FeeBreakdown:
        """Fees and net payable the provider would receive for the quote total."""
        quote = await self.state_machine.load(quote_id)
        return calculate_fees(quote.total, self.fee_schedule)

    async def create_payment_intent_for_quote(
        self, quote_id: int, actor: ActorContext
    ) -> PaymentIntent:
        """
        Register a payment intent for a quote.

        Flow:
        1. Validate quote status and deadline
        2. Reject if an intent is already active, then check payment status
        3. Compute amount and fees
        4. Create the intent with a derived idempotency key
        5. Persist the intent and link it to the quote

        Args:
            quote_id: Quote to pay
            actor: Paying client

        Returns:
            PaymentIntent: Stored intent (includes the client secret)

        Raises:
            QuoteNotPayable: Wrong status, past its deadline or already paid
            IntentAlreadyActive: Another intent is still pending
            GatewayUnavailable: Processor unreachable (nothing persisted)
        """
        quote = await self.state_machine.load(quote_id)
        self._ensure_client(quote, actor)
        now = self.clock()

        if quote.status not in PAYABLE_STATUSES:
            raise QuoteNotPayable(
                f"Quote is {quote.status.value} and cannot be paid",
                quote_id=quote_id,
                status=quote.status.value,
            )

        if quote.is_past_deadline(now):
            try:
                await self.state_machine.transition(
                    quote_id, QuoteStatus.EXPIRED, ActorContext.system()
                )
            except InvalidStatusTransition as e:
                logger.info("quote_expiry_raced", quote_id=quote_id, error=str(e))
            raise QuoteNotPayable("Quote has expired", quote_id=quote_id, status="expired")

        active = await self.payments.get_active_intent(quote_id)
        if active is not None:
            raise IntentAlreadyActive(
                "Quote already has an active payment intent",
                quote_id=quote_id,
                intent_id=active.intent_id,
            )

        if quote.payment_status not in PAYABLE_PAYMENT_STATUSES:
            raise QuoteNotPayable(
                f"Quote payment is already {quote.payment_status.value}",
                quote_id=quote_id,
                payment_status=quote.payment_status.value,
            )

        totals = calculate_quote_totals(quote.line_items, quote.tax_enabled, self.fee_schedule)
        if totals.total != quote.total:
            logger.warning(
                "quote_total_recomputed",
                quote_id=quote_id,
                stored_total=quote.total,
                computed_total=totals.total,
            )
        amount = totals.total
        if amount < self.min_charge:
            raise InvalidAmount(
                "Quote total is below the minimum chargeable amount",
                amount=amount,
                minimum=self.min_charge,
            )
        fees = calculate_fees(amount, self.fee_schedule)

        attempt = await self.payments.count_intents(quote_id) + 1
        idempotency_key = derive_idempotency_key("create_intent", quote_id, attempt)

        handle = await self.gateway.create_intent(
            amount=amount,
            currency=quote.currency,
            metadata={"quote_id": str(quote_id), "quote_number": quote.quote_number},
            idempotency_key=idempotency_key,
        )

        intent = await self.payments.add_intent(
            PaymentIntent(
                intent_id=handle.intent_id,
                quote_id=quote_id,
                attempt=attempt,
                amount=amount,
                currency=quote.currency,
                status=handle.status,
                client_secret=handle.client_secret,
                processor_fee=fees.processor_fee,
                platform_fee=fees.platform_fee,
                net_payable=fees.net_payable,
                idempotency_key=idempotency_key,
                created_at=now,
                updated_at=now,
            )
        )

        def link_intent(q: Quote) -> Quote:
            if q.status not in PAYABLE_STATUSES or q.payment_status not in PAYABLE_PAYMENT_STATUSES:
                raise QuoteNotPayable(
                    "Quote changed while the payment was being set up",
                    quote_id=quote_id,
                    status=q.status.value,
                )
            q.payment_intent_id = intent.intent_id
            q.payment_status = PaymentStatus.PENDING
            q.payment_failure_reason = None
            q.updated_at = now
            return q

        try:
            await self.state_machine.modify(quote_id, link_intent)
        except QuoteNotPayable:
            intent.status = IntentStatus.CANCELED
            intent.updated_at = now
            await self.payments.update_intent(intent)
            raise

        logger.info(
            "payment_intent_registered",
            quote_id=quote_id,
            payment_intent_id=intent.intent_id,
            amount=amount,
            attempt=attempt,
        )
        return intent

    async def confirm_payment(self, intent_id: str, payment_method_ref: str) -> Quote:
        """
        Confirm an intent with a payment method and apply the outcome.

        Gateway exceptions propagate and leave the quote in its last good state.

        Args:
            intent_id: Intent to confirm
            payment_method_ref: Processor payment method reference

        Returns:
            Quote: Quote after the outcome is applied

        Raises:
            IntentNotFound: Unknown intent
            QuoteNotPayable: Intent already failed or canceled
            GatewayUnavailable / GatewayRejected: Processor errors
        """
        intent = await self._get_intent(intent_id)

        if intent.status == IntentStatus.SUCCEEDED:
            logger.info("payment_already_confirmed", payment_intent_id=intent_id)
            return await self.state_machine.load(intent.quote_id)
        if intent.status.is_terminal:
            raise QuoteNotPayable(
                f"Payment intent is {intent.status.value}; create a new one",
                intent_id=intent_id,
                status=intent.status.value,
            )

        # One key per payment method within the attempt.
        idempotency_key = derive_idempotency_key(
            "confirm_intent", intent.quote_id, intent.attempt, variant=payment_method_ref
        )
        outcome = await self.gateway.confirm_intent(
            intent_id=intent_id,
            payment_method_ref=payment_method_ref,
            idempotency_key=idempotency_key,
        )

        if outcome.status == IntentStatus.SUCCEEDED:
            result = await self.apply_payment_succeeded(
                intent_id,
                transaction_id=outcome.transaction_id or intent_id,
                amount=outcome.amount_received,
                source="confirm",
            )
            return result.quote

        if outcome.status in (IntentStatus.FAILED, IntentStatus.CANCELED):
            result = await self.apply_payment_failed(
                intent_id, reason=outcome.failure_reason, status=outcome.status, source="confirm"
            )
            return result.quote

        if outcome.status != intent.status:
            intent.status = outcome.status
            intent.updated_at = self.clock()
            await self.payments.update_intent(intent)
        logger.info(
            "payment_confirmation_pending",
            payment_intent_id=intent_id,
            status=outcome.status.value,
        )
        return await self.state_machine.load(intent.quote_id)

    async def pay_and_accept(
        self, quote_id: int, payment_method_ref: str, actor: ActorContext
    ) -> Quote:
        """Create an intent and confirm it in one call."""
        intent = await self.create_payment_intent_for_quote(quote_id, actor)
        return await self.confirm_payment(intent.intent_id, payment_method_ref)

    def _mark_paid(
        self,
        quote: Quote,
        intent_id: Optional[str],
        transaction_id: Optional[str],
        amount: int,
        now: datetime,
        flags: Dict[str, Any],
    ) -> Quote:
        quote.payment_status = PaymentStatus.PAID
        if intent_id:
            quote.payment_intent_id = intent_id
        quote.payment_transaction_id = transaction_id
        quote.amount_paid = amount
        quote.paid_at = now
        quote.payment_failure_reason = None
        quote.updated_at = now

        if quote.status in PAYABLE_STATUSES:
            flags["accepted_from"] = quote.status
            apply_status(quote, QuoteStatus.ACCEPTED, now)
        elif quote.status != QuoteStatus.ACCEPTED:
            logger.error(
                "payment_captured_on_closed_quote",
                quote_id=quote.id,
                status=quote.status.value,
                transaction_id=transaction_id,
            )
        return quote

    async def _after_paid(
        self, quote: Quote, amount: int, source: str, flags: Dict[str, Any]
    ) -> None:
        metrics.record_payment_applied("paid", source, amount)
        logger.info(
            "payment_applied",
            quote_id=quote.id,
            payment_intent_id=quote.payment_intent_id,
            transaction_id=quote.payment_transaction_id,
            amount=amount,
            source=source,
        )
        await self._notify("quote_paid", quote)
        if "accepted_from" in flags:
            metrics.record_quote_transition(flags["accepted_from"].value, QuoteStatus.ACCEPTED.value)
            await self._notify("quote_accepted", quote)

    async def apply_payment_succeeded(
        self,
        intent_id: str,
        transaction_id: str,
        amount: Optional[int] = None,
        source: str = "webhook",
    ) -> PaymentApplication:
        """
        Record a captured payment on the intent's quote, exactly once.

        In one quote write: payment status paid, transaction reference, amount
        and paid-at, plus acceptance if the quote is still sent or viewed.
        A quote already settled by this payment is left untouched.

        Args:
            intent_id: Intent that succeeded
            transaction_id: Processor transaction reference
            amount: Captured amount (defaults to the intent amount)
            source: confirm or webhook, for logs and metrics

        Returns:
            PaymentApplication: Stored quote and whether this call applied it

        Raises:
            IntentNotFound: Intent not (yet) recorded here
        """
        intent = await self._get_intent(intent_id)
        captured = amount if amount is not None else intent.amount
        now = self.clock()
        flags: Dict[str, Any] = {}

        def mutate(q: Quote) -> Optional[Quote]:
            flags.clear()
            if q.payment_status in SETTLED_PAYMENT_STATUSES:
                if q.payment_intent_id != intent_id:
                    logger.error(
                        "payment_succeeded_for_settled_quote",
                        quote_id=q.id,
                        settled_intent_id=q.payment_intent_id,
                        payment_intent_id=intent_id,
                        transaction_id=transaction_id,
                    )
                return None
            return self._mark_paid(q, intent_id, transaction_id, captured, now, flags)

        quote, applied = await self.state_machine.modify(intent.quote_id, mutate)

        if intent.status != IntentStatus.SUCCEEDED:
            intent.status = IntentStatus.SUCCEEDED
            intent.transaction_id = transaction_id
            intent.failure_reason = None
            intent.updated_at = now
            await self.payments.update_intent(intent)

        if applied:
            await self._after_paid(quote, captured, source, flags)
        else:
            logger.info(
                "payment_already_applied",
                quote_id=quote.id,
                payment_intent_id=intent_id,
                source=source,
            )
        return PaymentApplication(quote=quote, applied=applied)

    async def apply_payment_failed(
        self,
        intent_id: str,
        reason: Optional[str],
        status: IntentStatus = IntentStatus.FAILED,
        source: str = "webhook",
    ) -> PaymentApplication:
        """
        Record a failed or canceled intent.

        The quote's payment status becomes failed (unpaid for a cancellation)
        only while this intent is the quote's pending payment. A settled quote
        is never downgraded, and the quote status is preserved.
        """
        intent = await self._get_intent(intent_id)
        now = self.clock()

        def mutate(q: Quote) -> Optional[Quote]:
            if q.payment_intent_id != intent_id or q.payment_status != PaymentStatus.PENDING:
                return None
            q.payment_status = (
                PaymentStatus.UNPAID if status == IntentStatus.CANCELED else PaymentStatus.FAILED
            )
            q.payment_failure_reason = reason
            q.updated_at = now
            return q

        quote, applied = await self.state_machine.modify(intent.quote_id, mutate)

        if intent.status.is_active:
            intent.status = status
            intent.failure_reason = reason
            intent.updated_at = now
            await self.payments.update_intent(intent)

        if applied:
            metrics.record_payment_applied(status.value, source)
            logger.info(
                "payment_failure_applied",
                quote_id=quote.id,
                payment_intent_id=intent_id,
                status=status.value,
                reason=reason,
                source=source,
            )
            await self._notify("payment_failed", quote, reason)
        return PaymentApplication(quote=quote, applied=applied)

    async def refund_payment(
        self,
        quote_id: int,
        actor: ActorContext,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Quote:
        """
        Refund a paid quote, fully or partially.

        Args:
            quote_id: Paid quote
            actor: Owning provider
            amount: Amount to refund (defaults to the amount paid)
            reason: Free-text reason

        Returns:
            Quote: Quote after the refund (refunded once the processor settles)

        Raises:
            PaymentNotRefundable: Quote is not paid
            RefundAlreadyPending: A refund is still settling
            InvalidAmount: Amount not in (0, amount paid less amount already refunded]
            RefundFailed: Processor refused the refund
        """
        quote = await self.state_machine.load(quote_id)
        self._ensure_provider(quote, actor)

        if quote.payment_status != PaymentStatus.PAID:
            raise PaymentNotRefundable(
                f"Quote payment is {quote.payment_status.value}, not paid",
                quote_id=quote_id,
                payment_status=quote.payment_status.value,
            )

        refunds = await self.payments.list_refunds(quote_id)
        pending = [r for r in refunds if r.status == RefundStatus.PENDING]
        if pending:
            raise RefundAlreadyPending(
                "A refund for this quote is still being processed",
                quote_id=quote_id,
                refund_id=pending[0].refund_id,
            )

        refundable = quote.amount_paid - quote.amount_refunded
        refund_amount = refundable if amount is None else amount
        if refund_amount <= 0 or refund_amount > refundable:
            raise InvalidAmount(
                "Refund amount must be positive and no more than the amount still refundable",
                amount=refund_amount,
                amount_paid=quote.amount_paid,
                amount_refunded=quote.amount_refunded,
            )

        attempt = len(refunds) + 1
        idempotency_key = derive_idempotency_key("create_refund", quote_id, attempt)
        handle = await self.gateway.create_refund(
            transaction_id=quote.payment_transaction_id or quote.payment_intent_id,
            amount=refund_amount,
            reason=reason,
            idempotency_key=idempotency_key,
        )

        now = self.clock()
        refund = await self.payments.add_refund(
            Refund(
                refund_id=handle.refund_id,
                quote_id=quote_id,
                intent_id=quote.payment_intent_id,
                attempt=attempt,
                amount=handle.amount,
                status=handle.status,
                reason=reason,
                idempotency_key=idempotency_key,
                created_at=now,
                updated_at=now,
            )
        )

        if handle.status == RefundStatus.SUCCEEDED:
            return (await self._apply_refund_succeeded(refund, source="refund")).quote

        if handle.status in (RefundStatus.FAILED, RefundStatus.CANCELED):
            logger.warning(
                "refund_failed",
                quote_id=quote_id,
                refund_id=refund.refund_id,
                reason=handle.failure_reason,
            )
            raise RefundFailed(
                handle.failure_reason or "The payment processor could not refund this payment",
                quote_id=quote_id,
                refund_id=refund.refund_id,
            )

        def track_refund(q: Quote) -> Optional[Quote]:
            if q.payment_status != PaymentStatus.PAID:
                return None
            q.refund_id = refund.refund_id
            q.updated_at = now
            return q

        quote, _ = await self.state_machine.modify(quote_id, track_refund)
        logger.info("refund_pending", quote_id=quote_id, refund_id=refund.refund_id)
        return quote

    async def _apply_refund_succeeded(self, refund: Refund, source: str) -> PaymentApplication:
        """
        Fold a settled refund into the quote.

        ``amount_refunded`` is the sum of succeeded refund records, so a repeat
        of the same refund changes nothing. The quote is refunded once the
        whole captured amount has been returned; until then it stays paid.
        """
        now = self.clock()
        refunds = await self.payments.list_refunds(refund.quote_id)
        settled = sum(r.amount for r in refunds if r.status == RefundStatus.SUCCEEDED)

        def mutate(q: Quote) -> Optional[Quote]:
            if q.payment_status != PaymentStatus.PAID or settled <= q.amount_refunded:
                return None
            q.amount_refunded = min(settled, q.amount_paid)
            if q.amount_refunded >= q.amount_paid:
                q.payment_status = PaymentStatus.REFUNDED
            q.refund_id = refund.refund_id
            q.refunded_at = now
            q.updated_at = now
            return q

        quote, applied = await self.state_machine.modify(refund.quote_id, mutate)
        if applied:
            fully = quote.payment_status == PaymentStatus.REFUNDED
            metrics.record_payment_applied("refunded" if fully else "partially_refunded", source)
            logger.info(
                "refund_applied",
                quote_id=quote.id,
                refund_id=refund.refund_id,
                amount=refund.amount,
                source=source,
            )
            await self._notify("quote_refunded", quote, refund)
        return PaymentApplication(quote=quote, applied=applied)

    async def apply_refund_update(
        self,
        refund_id: str,
        status: RefundStatus,
        amount: int,
        intent_id: Optional[str] = None,
        source: str = "webhook",
    ) -> PaymentApplication:
        """
        Apply a processor refund status to its quote.

        Refunds issued outside this service are recorded on first sight via
        their payment intent.

        Raises:
            IntentNotFound: Refund and its intent are both unknown here
        """
        refund = await self.payments.get_refund(refund_id)
        now = self.clock()

        if refund is None:
            if not intent_id:
                raise IntentNotFound(
                    f"Refund {refund_id} has no known payment intent", refund_id=refund_id
                )
            intent = await self._get_intent(intent_id)
            refund = await self.payments.add_refund(
                Refund(
                    refund_id=refund_id,
                    quote_id=intent.quote_id,
                    intent_id=intent_id,
                    attempt=0,
                    amount=amount,
                    status=RefundStatus.PENDING,
                    created_at=now,
                    updated_at=now,
                )
            )
            logger.info("external_refund_recorded", refund_id=refund_id, quote_id=refund.quote_id)

        if refund.status != status and refund.status != RefundStatus.SUCCEEDED:
            refund.status = status
            refund.updated_at = now
            refund = await self.payments.update_refund(refund)

        if status == RefundStatus.SUCCEEDED:
            return await self._apply_refund_succeeded(refund, source=source)

        if status in (RefundStatus.FAILED, RefundStatus.CANCELED):

            def release(q: Quote) -> Optional[Quote]:
                if q.refund_id != refund_id or q.payment_status != PaymentStatus.PAID:
                    return None
                q.refund_id = None
                q.updated_at = now
                return q

            quote, applied = await self.state_machine.modify(refund.quote_id, release)
            logger.warning("refund_failed", quote_id=quote.id, refund_id=refund_id, source=source)
            return PaymentApplication(quote=quote, applied=applied)

        return PaymentApplication(
            quote=await self.state_machine.load(refund.quote_id), applied=False
        )

    async def apply_invoice_paid(
        self,
        quote_id: int,
        invoice_id: str,
        transaction_id: Optional[str],
        amount: int,
        intent_id: Optional[str] = None,
    ) -> PaymentApplication:
        """Record a paid invoice; an unpaid quote is marked paid by it."""
        now = self.clock()
        flags: Dict[str, Any] = {}

        def mutate(q: Quote) -> Optional[Quote]:
            flags.clear()
            if q.payment_status in SETTLED_PAYMENT_STATUSES:
                if q.invoice_id == invoice_id:
                    return None
                q.invoice_id = invoice_id
                q.updated_at = now
                return q
            q.invoice_id = invoice_id
            flags["paid"] = True
            return self._mark_paid(q, intent_id, transaction_id, amount, now, flags)

        quote, applied = await self.state_machine.modify(quote_id, mutate)
        if applied and flags.get("paid"):
            await self._after_paid(quote, amount, "invoice", flags)
        return PaymentApplication(quote=quote, applied=applied)

    async def apply_invoice_failed(
        self, quote_id: int, invoice_id: str, reason: Optional[str]
    ) -> PaymentApplication:
        """Record a failed invoice payment. Settled quotes are left untouched."""
        now = self.clock()

        def mutate(q: Quote) -> Optional[Quote]:
            if q.payment_status in SETTLED_PAYMENT_STATUSES or q.payment_status == PaymentStatus.FAILED:
                return None
            q.invoice_id = invoice_id
            q.payment_status = PaymentStatus.FAILED
            q.payment_failure_reason = reason
            q.updated_at = now
            return q

        quote, applied = await self.state_machine.modify(quote_id, mutate)
        if applied:
            metrics.record_payment_applied("failed", "invoice")
            await self._notify("payment_failed", quote, reason)
        return PaymentApplication(quote=quote, applied=applied)

    async def record_dispute(
        self, intent_id: str, dispute_id: str, amount: int, reason: Optional[str]
    ) -> PaymentApplication:
        """
        Surface a chargeback for manual handling.

        Only the dispute reference is recorded; quote and payment status are
        unchanged. Keyed on ``dispute_id``, so a dispute reported again under
        a new event id is not notified twice.
        """
        intent = await self._get_intent(intent_id)
        now = self.clock()

        def mutate(q: Quote) -> Optional[Quote]:
            if q.dispute_id == dispute_id:
                return None
            q.dispute_id = dispute_id
            q.disputed_at = now
            q.updated_at = now
            return q

        quote, applied = await self.state_machine.modify(intent.quote_id, mutate)
        if not applied:
            logger.info("dispute_already_recorded", quote_id=quote.id, dispute_id=dispute_id)
            return PaymentApplication(quote=quote, applied=False)

        logger.warning(
            "payment_disputed",
            quote_id=quote.id,
            payment_intent_id=intent_id,
            dispute_id=dispute_id,
            amount=amount,
            reason=reason,
        )
        await self._notify("payment_disputed", quote, dispute_id, amount, reason)
        return PaymentApplication(quote=quote, applied=True)
