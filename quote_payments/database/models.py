"""SQLAlchemy database models for quotes, payments and webhook events."""
from datetime import datetime
from typing import Any, Dict, List

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer, "sqlite")
JSONDocument = JSON().with_variant(JSONB, "postgresql")

ACTIVE_INTENT_CONDITION = "status IN ('pending', 'requires_action')"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class QuoteRecord(Base):
    """
    Quotes table.

    One row per quote with its commercial status and payment sub-state.
    ``version`` is incremented on every write and checked on update.
    """

    __tablename__ = "quotes"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    quote_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    provider_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    client_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    job_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    line_items: Mapped[List[Dict[str, Any]]] = mapped_column(JSONDocument, nullable=False)
    tax_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    subtotal: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payment_status: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    payment_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount_paid: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount_refunded: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    dispute_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    disputed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("total = subtotal + tax", name="total_is_subtotal_plus_tax"),
        CheckConstraint("subtotal >= 0 AND tax >= 0", name="non_negative_amounts"),
        CheckConstraint("amount_paid >= 0 AND amount_refunded >= 0", name="non_negative_payments"),
        CheckConstraint(
            "status IN ('draft', 'sent', 'viewed', 'accepted', 'rejected', 'expired', 'cancelled')",
            name="valid_quote_status",
        ),
        CheckConstraint(
            "payment_status IN ('unpaid', 'pending', 'paid', 'failed', 'refunded')",
            name="valid_payment_status",
        ),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_quotes_status_valid_until", "status", "valid_until"),
    )

    def __repr__(self) -> str:
        """String representation of QuoteRecord."""
        return (
            f"<QuoteRecord(id={self.id}, number={self.quote_number}, "
            f"status={self.status}, payment_status={self.payment_status})>"
        )


class PaymentIntentRecord(Base):
    """
    Payment intents table.

    A partial unique index allows at most one active (pending or
    requires_action) intent per quote.
    """

    __tablename__ = "payment_intents"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    intent_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    quote_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("quotes.id"), nullable=False, index=True
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    client_secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    processor_fee: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    platform_fee: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    net_payable: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_intent_amount"),
        CheckConstraint(
            "status IN ('pending', 'requires_action', 'succeeded', 'failed', 'canceled')",
            name="valid_intent_status",
        ),
        Index(
            "uq_payment_intents_active_per_quote",
            "quote_id",
            unique=True,
            postgresql_where=text(ACTIVE_INTENT_CONDITION),
            sqlite_where=text(ACTIVE_INTENT_CONDITION),
        ),
    )

    def __repr__(self) -> str:
        """String representation of PaymentIntentRecord."""
        return (
            f"<PaymentIntentRecord(intent_id={self.intent_id}, quote_id={self.quote_id}, "
            f"status={self.status})>"
        )


class RefundRecord(Base):
    """Refunds table."""

    __tablename__ = "refunds"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    refund_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    quote_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("quotes.id"), nullable=False, index=True
    )
    intent_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_refund_amount"),
        CheckConstraint(
            "status IN ('pending', 'succeeded', 'failed', 'canceled')",
            name="valid_refund_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of RefundRecord."""
        return f"<RefundRecord(refund_id={self.refund_id}, status={self.status})>"


class WebhookEventRow(Base):
    """
    Webhook event dedup ledger.

    The primary key on the processor's event id serialises concurrent
    deliveries of the same event. Rows are never deleted.
    """

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('received', 'processed', 'failed')",
            name="valid_webhook_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of WebhookEventRow."""
        return (
            f"<WebhookEventRow(event_id={self.event_id}, type={self.event_type}, "
            f"status={self.status})>"
        )
