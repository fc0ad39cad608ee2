"""
Service wiring.

Builds every component from explicit settings. Selects the in-memory or
SQLAlchemy persistence adapter from ``database_url`` and the fake or Stripe
gateway from ``payment_gateway``.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from quote_payments.config import Settings
from quote_payments.core.models import utcnow
from quote_payments.core.money import FeeSchedule
from quote_payments.core.notifications import LoggingNotifier, PaymentNotifier
from quote_payments.core.payment_orchestrator import PaymentOrchestrator
from quote_payments.core.ports import PaymentRepository, QuoteRepository, WebhookEventStore
from quote_payments.core.quote_service import QuoteService
from quote_payments.core.quote_state import QuoteStateMachine
from quote_payments.database import (
    InMemoryPaymentRepository,
    InMemoryQuoteRepository,
    InMemoryWebhookEventStore,
    SqlPaymentRepository,
    SqlQuoteRepository,
    SqlWebhookEventStore,
    close_db,
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from quote_payments.integrations.fake_gateway import FakeGateway
from quote_payments.integrations.gateway import PaymentGateway
from quote_payments.integrations.stripe_client import StripeGateway
from quote_payments.integrations.webhook_handler import WebhookHandler
from quote_payments.monitoring.audit import SecurityAuditSink
from quote_payments.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Everything the API layer needs, built once per application."""

    settings: Settings
    quotes: QuoteRepository
    payments: PaymentRepository
    event_store: WebhookEventStore
    gateway: PaymentGateway
    state_machine: QuoteStateMachine
    quote_service: QuoteService
    orchestrator: PaymentOrchestrator
    webhook_handler: WebhookHandler
    health_check: HealthCheck
    engine: Optional[AsyncEngine] = None
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def startup(self) -> None:
        """Create tables when running against a SQL database."""
        if self.engine is not None:
            await init_db(self.engine)
            logger.info("database_initialized")

    async def shutdown(self) -> None:
        if self.engine is not None:
            await close_db(self.engine)
            logger.info("database_connections_closed")


def build_gateway(settings: Settings) -> PaymentGateway:
    """Gateway selected by ``payment_gateway``."""
    if settings.payment_gateway == "fake":
        return FakeGateway()
    return StripeGateway.from_settings(settings)


def build_services(
    settings: Settings,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[PaymentNotifier] = None,
    audit_sink: Optional[SecurityAuditSink] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    """
    Assemble the service graph.

    Args:
        settings: Application settings
        gateway: Gateway override (tests pass a FakeGateway)
        notifier: Notification sink, defaults to LoggingNotifier
        audit_sink: Security audit sink, defaults to structlog
        clock: Time source shared by every component

    Returns:
        Services: Wired components
    """
    engine: Optional[AsyncEngine] = None
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    if settings.uses_memory_store:
        quotes: QuoteRepository = InMemoryQuoteRepository()
        payments: PaymentRepository = InMemoryPaymentRepository()
        event_store: WebhookEventStore = InMemoryWebhookEventStore()
    else:
        engine = create_engine_from_settings(settings)
        session_factory = create_session_factory(engine)
        quotes = SqlQuoteRepository(session_factory)
        payments = SqlPaymentRepository(session_factory)
        event_store = SqlWebhookEventStore(session_factory)

    gateway = gateway or build_gateway(settings)
    state_machine = QuoteStateMachine(quotes, clock=clock)
    quote_service = QuoteService.from_settings(settings, quotes, state_machine)
    orchestrator = PaymentOrchestrator(
        state_machine=state_machine,
        payments=payments,
        gateway=gateway,
        fee_schedule=FeeSchedule.from_settings(settings),
        notifier=notifier or LoggingNotifier(),
        min_charge=settings.min_charge_cents,
    )
    webhook_handler = WebhookHandler.from_settings(
        settings,
        event_store=event_store,
        orchestrator=orchestrator,
        audit_sink=audit_sink,
        clock=clock,
    )

    logger.info(
        "services_built",
        store="memory" if settings.uses_memory_store else "sql",
        gateway=type(gateway).__name__,
    )

    return Services(
        settings=settings,
        quotes=quotes,
        payments=payments,
        event_store=event_store,
        gateway=gateway,
        state_machine=state_machine,
        quote_service=quote_service,
        orchestrator=orchestrator,
        webhook_handler=webhook_handler,
        health_check=HealthCheck(session_factory),
        engine=engine,
        session_factory=session_factory,
    )
