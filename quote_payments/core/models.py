"""Domain records for quotes, payment intents, refunds and webhook events."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .money import LineItem


def utcnow() -> datetime:
    """Timezone-aware current UTC time. The default clock."""
    return datetime.now(timezone.utc)


class QuoteStatus(str, Enum):
    """Commercial lifecycle of a quote."""

    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment sub-state tracked on a quote."""

    UNPAID = "unpaid"
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class IntentStatus(str, Enum):
    """Processor-side intent status, normalised."""

    PENDING = "pending"
    REQUIRES_ACTION = "requires_action"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_active(self) -> bool:
        return self in (IntentStatus.PENDING, IntentStatus.REQUIRES_ACTION)

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


class RefundStatus(str, Enum):
    """Processor-side refund status, normalised."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class WebhookEventStatus(str, Enum):
    """Processing state of a received webhook event."""

    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class ActorRole(str, Enum):
    """Role of the caller, as established by the auth layer."""

    PROVIDER = "provider"
    CLIENT = "client"
    SYSTEM = "system"


class ActorContext(BaseModel):
    """Authenticated caller identity. Trusted as supplied."""

    model_config = ConfigDict(frozen=True)

    actor_id: int
    role: ActorRole

    @classmethod
    def system(cls) -> ActorContext:
        return cls(actor_id=0, role=ActorRole.SYSTEM)


class Quote(BaseModel):
    """
    A priced offer from a provider to a client.

    Monetary fields are minor units. ``version`` is bumped on every persisted
    change and used for compare-and-set writes.
    """

    id: Optional[int] = None
    quote_number: str
    provider_id: int
    client_id: int
    job_id: Optional[int] = None
    title: str
    notes: Optional[str] = None
    line_items: List[LineItem]
    tax_enabled: bool = True
    subtotal: int
    tax: int
    total: int
    currency: str
    valid_until: datetime
    status: QuoteStatus = QuoteStatus.DRAFT

    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    payment_status: PaymentStatus = PaymentStatus.UNPAID
    payment_intent_id: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    amount_paid: int = 0
    paid_at: Optional[datetime] = None
    payment_failure_reason: Optional[str] = None
    refund_id: Optional[str] = None
    amount_refunded: int = 0
    refunded_at: Optional[datetime] = None
    invoice_id: Optional[str] = None
    dispute_id: Optional[str] = None
    disputed_at: Optional[datetime] = None

    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_past_deadline(self, now: datetime) -> bool:
        """True when ``now`` is strictly after the validity deadline."""
        return now > self.valid_until


class PaymentIntent(BaseModel):
    """A payment attempt registered with the processor for a quote."""

    intent_id: str
    quote_id: int
    attempt: int
    amount: int
    currency: str
    status: IntentStatus = IntentStatus.PENDING
    client_secret: Optional[str] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    processor_fee: int = 0
    platform_fee: int = 0
    net_payable: int = 0
    idempotency_key: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Refund(BaseModel):
    """A refund issued against a quote's captured payment."""

    refund_id: str
    quote_id: int
    intent_id: Optional[str] = None
    attempt: int
    amount: int
    status: RefundStatus = RefundStatus.PENDING
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WebhookEventRecord(BaseModel):
    """Dedup ledger entry for one processor event. Never deleted."""

    event_id: str
    event_type: str
    status: WebhookEventStatus = WebhookEventStatus.RECEIVED
    attempts: int = 1
    received_at: datetime
    last_attempt_at: datetime
    processed_at: Optional[datetime] = None
    outcome: Optional[str] = None
    error: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
