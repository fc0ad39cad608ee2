"""Quote lifecycle, money rules and payment reconciliation."""
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
    WebhookEventRecord,
    WebhookEventStatus,
)
from .money import FeeBreakdown, FeeSchedule, LineItem, LineItemType, QuoteTotals
from .payment_orchestrator import PaymentApplication, PaymentOrchestrator
from .quote_service import QuoteChanges, QuoteDraft, QuoteService
from .quote_state import QuoteStateMachine

__all__ = [
    "ActorContext",
    "ActorRole",
    "IntentStatus",
    "PaymentIntent",
    "PaymentStatus",
    "Quote",
    "QuoteStatus",
    "Refund",
    "RefundStatus",
    "WebhookEventRecord",
    "WebhookEventStatus",
    "FeeBreakdown",
    "FeeSchedule",
    "LineItem",
    "LineItemType",
    "QuoteTotals",
    "PaymentApplication",
    "PaymentOrchestrator",
    "QuoteChanges",
    "QuoteDraft",
    "QuoteService",
    "QuoteStateMachine",
]
