"""
Pytest configuration and fixtures.
"""
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from quote_payments.api.main import create_app
from quote_payments.bootstrap import Services, build_services
from quote_payments.config import Settings
from quote_payments.core.models import ActorContext, ActorRole, Quote, Refund
from quote_payments.core.money import LineItem, LineItemType
from quote_payments.core.quote_service import QuoteDraft
from quote_payments.integrations.fake_gateway import FakeGateway
from quote_payments.integrations.webhook_signature import sign_payload

WEBHOOK_SECRET = "whsec_test_fake_secret"
PROVIDER_ID = 101
CLIENT_ID = 202


class FrozenClock:
    """Controllable time source shared by every component under test."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingNotifier:
    """Collects notifications instead of sending them."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, int]] = []

    def count(self, milestone: str) -> int:
        return sum(1 for name, _ in self.sent if name == milestone)

    async def quote_paid(self, quote: Quote) -> None:
        self.sent.append(("quote_paid", quote.id))

    async def quote_accepted(self, quote: Quote) -> None:
        self.sent.append(("quote_accepted", quote.id))

    async def payment_failed(self, quote: Quote, reason: Optional[str]) -> None:
        self.sent.append(("payment_failed", quote.id))

    async def quote_refunded(self, quote: Quote, refund: Refund) -> None:
        self.sent.append(("quote_refunded", quote.id))

    async def payment_disputed(
        self, quote: Quote, dispute_id: str, amount: int, reason: Optional[str]
    ) -> None:
        self.sent.append(("payment_disputed", quote.id))


class RecordingAuditSink:
    """Collects security events."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def record(self, event: str, **details: Any) -> None:
        self.events.append((event, details))


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        payment_gateway="fake",
        database_url="memory://",
        app_name="quote-payments-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def services(
    test_settings: Settings,
    gateway: FakeGateway,
    notifier: RecordingNotifier,
    audit_sink: RecordingAuditSink,
    clock: FrozenClock,
) -> Services:
    """In-memory service graph with a fake gateway and frozen clock."""
    return build_services(
        test_settings,
        gateway=gateway,
        notifier=notifier,
        audit_sink=audit_sink,
        clock=clock,
    )


@pytest.fixture
def provider() -> ActorContext:
    return ActorContext(actor_id=PROVIDER_ID, role=ActorRole.PROVIDER)


@pytest.fixture
def client_actor() -> ActorContext:
    return ActorContext(actor_id=CLIENT_ID, role=ActorRole.CLIENT)


@pytest.fixture
def sample_line_items() -> List[LineItem]:
    """Two lines: subtotal 1205.00, GST 120.50, total 1325.50."""
    return [
        LineItem(
            description="Tiling labour",
            quantity=Decimal("8"),
            unit_price=8500,
            item_type=LineItemType.LABOUR,
        ),
        LineItem(
            description="Floor tiles",
            quantity=Decimal("12.5"),
            unit_price=4200,
            item_type=LineItemType.MATERIAL,
        ),
    ]


@pytest.fixture
def sample_draft(sample_line_items: List[LineItem]) -> QuoteDraft:
    return QuoteDraft(
        client_id=CLIENT_ID,
        title="Bathroom renovation",
        line_items=sample_line_items,
        tax_enabled=True,
    )


@pytest_asyncio.fixture
async def draft_quote(
    services: Services, provider: ActorContext, sample_draft: QuoteDraft
) -> Quote:
    return await services.quote_service.create_quote(provider, sample_draft)


@pytest_asyncio.fixture
async def sent_quote(services: Services, provider: ActorContext, draft_quote: Quote) -> Quote:
    return await services.quote_service.send_quote(draft_quote.id, provider)


@pytest_asyncio.fixture
async def paid_quote(
    services: Services, client_actor: ActorContext, sent_quote: Quote
) -> Quote:
    return await services.orchestrator.pay_and_accept(sent_quote.id, "pm_card_visa", client_actor)


@pytest.fixture
def make_event() -> Callable[..., bytes]:
    """Build a raw processor event body."""
    counter = {"n": 0}

    def factory(
        event_type: str,
        obj: Dict[str, Any],
        event_id: Optional[str] = None,
        created: int = 1740992400,
    ) -> bytes:
        counter["n"] += 1
        event = {
            "id": event_id or f"evt_test_{counter['n']:04d}",
            "object": "event",
            "type": event_type,
            "created": created,
            "data": {"object": obj},
        }
        return json.dumps(event).encode("utf-8")

    return factory


@pytest.fixture
def sign(clock: FrozenClock) -> Callable[..., str]:
    """Sign a body the way the processor does, at the frozen time."""

    def signer(payload: bytes, secret: str = WEBHOOK_SECRET, offset: int = 0) -> str:
        return sign_payload(payload, secret, int(clock().timestamp()) + offset)

    return signer


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
