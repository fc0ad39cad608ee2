"""Persistence adapters: SQLAlchemy and in-memory."""
from .connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    init_db,
    session_scope,
)
from .memory import InMemoryPaymentRepository, InMemoryQuoteRepository, InMemoryWebhookEventStore
from .models import Base, PaymentIntentRecord, QuoteRecord, RefundRecord, WebhookEventRow
from .repositories import SqlPaymentRepository, SqlQuoteRepository, SqlWebhookEventStore

__all__ = [
    "Base",
    "QuoteRecord",
    "PaymentIntentRecord",
    "RefundRecord",
    "WebhookEventRow",
    "create_engine_from_settings",
    "create_session_factory",
    "session_scope",
    "init_db",
    "close_db",
    "SqlQuoteRepository",
    "SqlPaymentRepository",
    "SqlWebhookEventStore",
    "InMemoryQuoteRepository",
    "InMemoryPaymentRepository",
    "InMemoryWebhookEventStore",
]
