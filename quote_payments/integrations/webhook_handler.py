"""
Webhook ingestion with signature verification and exactly-once application.

Pipeline:
1. Authenticate (signature + timestamp window); nothing is stored on failure
2. Validate the event envelope
3. Idempotency gate on the event store
4. Dispatch by event type
5. Apply through the orchestrator's idempotent primitives
6. Record the event as processed or failed, fenced on the claimed attempt

Every delivery ends in a tagged outcome (Accepted / AlreadyProcessed /
Rejected); duplicates are not exceptions.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from quote_payments.config import Settings
from quote_payments.core.errors import (
    DuplicateEvent,
    EventNotFound,
    EventNotRetryable,
    MalformedEvent,
    SignatureInvalid,
)
from quote_payments.core.models import (
    IntentStatus,
    WebhookEventRecord,
    WebhookEventStatus,
    utcnow,
)
from quote_payments.core.payment_orchestrator import PaymentOrchestrator
from quote_payments.core.ports import WebhookEventStore
from quote_payments.monitoring.audit import SecurityAuditSink, StructlogAuditSink
from quote_payments.monitoring.metrics import metrics

from .stripe_client import map_refund_status, object_id
from .webhook_signature import verify_signature

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[str]]


class EventData(BaseModel):
    """``data`` member of an event envelope."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    obj: Dict[str, Any] = Field(alias="object")


class WebhookEnvelope(BaseModel):
    """Structural contract every processor event must satisfy."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1, max_length=255)
    type: str = Field(pattern=r"^[a-z][a-z_]*(\.[a-z_]+)+$", max_length=128)
    created: int = Field(ge=0)
    data: EventData


class RejectionReason(str, Enum):
    """Why a delivery was not accepted."""

    SIGNATURE_INVALID = "signature_invalid"
    MALFORMED_EVENT = "malformed_event"
    EVENT_IN_FLIGHT = "event_in_flight"
    HANDLER_FAILED = "handler_failed"


@dataclass(frozen=True)
class Accepted:
    """Event applied (or acknowledged as a no-op for an unhandled type)."""

    event_id: str
    event_type: str
    handled: bool
    detail: Optional[str] = None


@dataclass(frozen=True)
class AlreadyProcessed:
    """Event id was processed before; nothing was done."""

    event_id: str
    event_type: str


@dataclass(frozen=True)
class Rejected:
    """Delivery refused. ``retryable`` tells the processor to redeliver."""

    reason: RejectionReason
    message: str
    event_id: Optional[str] = None
    retryable: bool = False


IngestionOutcome = Union[Accepted, AlreadyProcessed, Rejected]


class ClaimResult(str, Enum):
    """Result of the idempotency gate."""

    NEW = "new"
    RECLAIMED = "reclaimed"
    ALREADY_PROCESSED = "already_processed"
    IN_FLIGHT = "in_flight"


def _require(obj: Dict[str, Any], key: str) -> Any:
    value = obj.get(key)
    if value in (None, ""):
        raise MalformedEvent(f"Event object is missing '{key}'", field=key)
    return value


def _in_flight(event_id: str) -> Rejected:
    return Rejected(
        reason=RejectionReason.EVENT_IN_FLIGHT,
        message="Event is being processed by another delivery",
        event_id=event_id,
        retryable=True,
    )


def _metric_status(outcome: IngestionOutcome) -> str:
    if isinstance(outcome, Rejected):
        return outcome.reason.value
    if isinstance(outcome, AlreadyProcessed):
        return "duplicate"
    return "accepted" if outcome.handled else "ignored"


class WebhookHandler:
    """
    Ingests processor webhooks.

    Features:
    - Signature verification with a bounded timestamp window
    - Envelope validation
    - Durable deduplication on event id (received / processed / failed)
    - Reclaiming of failed or abandoned deliveries, fenced on the attempt number
    - Operator retry of failed events from their stored payload
    - Event type routing to registered handlers
    """

    def __init__(
        self,
        event_store: WebhookEventStore,
        orchestrator: PaymentOrchestrator,
        webhook_secret: str,
        tolerance_seconds: int = 300,
        processing_lease_seconds: int = 300,
        max_attempts: int = 5,
        audit_sink: Optional[SecurityAuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize webhook handler.

        Args:
            event_store: Dedup ledger
            orchestrator: Applies payment outcomes
            webhook_secret: Endpoint signing secret
            tolerance_seconds: Allowed signature timestamp skew
            processing_lease_seconds: Age after which a 'received' event is
                considered abandoned and may be reclaimed
            max_attempts: Attempts after which a failed event is no longer
                retried by an operator
            audit_sink: Receives security rejections
            clock: Source of the current time
        """
        self.event_store = event_store
        self.orchestrator = orchestrator
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds
        self.processing_lease = timedelta(seconds=processing_lease_seconds)
        self.max_attempts = max_attempts
        self.audit_sink = audit_sink or StructlogAuditSink()
        self.clock = clock
        self.event_handlers: Dict[str, EventHandler] = {}

        self._register_default_handlers()
        logger.info("webhook_handler_initialized", handled_types=sorted(self.event_handlers))

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        event_store: WebhookEventStore,
        orchestrator: PaymentOrchestrator,
        audit_sink: Optional[SecurityAuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "WebhookHandler":
        return cls(
            event_store=event_store,
            orchestrator=orchestrator,
            webhook_secret=settings.stripe_webhook_secret,
            tolerance_seconds=settings.webhook_tolerance_seconds,
            processing_lease_seconds=settings.webhook_processing_lease_seconds,
            max_attempts=settings.webhook_max_attempts,
            audit_sink=audit_sink,
            clock=clock,
        )

    def _register_default_handlers(self) -> None:
        self.register_handler("payment_intent.succeeded", self.handle_payment_intent_succeeded)
        self.register_handler("payment_intent.payment_failed", self.handle_payment_intent_failed)
        self.register_handler("payment_intent.canceled", self.handle_payment_intent_canceled)
        for event_type in ("refund.created", "refund.updated", "charge.refund.updated"):
            self.register_handler(event_type, self.handle_refund_updated)
        for event_type in ("invoice.paid", "invoice.payment_succeeded"):
            self.register_handler(event_type, self.handle_invoice_paid)
        self.register_handler("invoice.payment_failed", self.handle_invoice_payment_failed)
        self.register_handler("charge.dispute.created", self.handle_dispute_created)

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Event type (e.g., 'payment_intent.succeeded')
            handler: Async callable receiving ``data.object`` and returning
                a short outcome summary
        """
        self.event_handlers[event_type] = handler

    @staticmethod
    def parse_envelope(payload: bytes) -> WebhookEnvelope:
        """
        Validate the event envelope.

        Raises:
            MalformedEvent: If the body is not a well-formed event
        """
        try:
            return WebhookEnvelope.model_validate_json(payload)
        except PydanticValidationError as e:
            fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
            raise MalformedEvent("Event envelope failed validation", fields=fields) from e

    def _reject_insecure(self, reason: RejectionReason, error: Exception) -> Rejected:
        details = getattr(error, "details", {})
        self.audit_sink.record(reason.value, detail=str(error), **details)
        metrics.record_security_rejection(reason.value)
        logger.warning("webhook_rejected", reason=reason.value, error=str(error))
        return Rejected(reason=reason, message=str(error))

    async def ingest(
        self, payload: bytes, signature_header: Optional[str]
    ) -> IngestionOutcome:
        """
        Process one webhook delivery.

        Args:
            payload: Raw request body, exactly as received
            signature_header: Signature header value

        Returns:
            IngestionOutcome: Accepted, AlreadyProcessed or Rejected
        """
        start = time.time()
        now = self.clock()

        try:
            verify_signature(
                payload, signature_header, self.webhook_secret, self.tolerance_seconds, now
            )
        except SignatureInvalid as e:
            return self._reject_insecure(RejectionReason.SIGNATURE_INVALID, e)

        try:
            envelope = self.parse_envelope(payload)
        except MalformedEvent as e:
            return self._reject_insecure(RejectionReason.MALFORMED_EVENT, e)

        event_id, event_type = envelope.id, envelope.type
        logger.info("processing_webhook_event", event_id=event_id, event_type=event_type)

        claim, attempt = await self._claim(envelope, now)

        if claim == ClaimResult.ALREADY_PROCESSED:
            logger.info("webhook_event_already_processed", event_id=event_id, event_type=event_type)
            metrics.record_webhook_event(event_type, "duplicate", time.time() - start)
            return AlreadyProcessed(event_id=event_id, event_type=event_type)

        if claim == ClaimResult.IN_FLIGHT:
            logger.info("webhook_event_in_flight", event_id=event_id, event_type=event_type)
            metrics.record_webhook_event(event_type, "in_flight", time.time() - start)
            return _in_flight(event_id)

        outcome = await self._dispatch(envelope, attempt)
        metrics.record_webhook_event(event_type, _metric_status(outcome), time.time() - start)
        return outcome

    async def retry_failed_event(self, event_id: str) -> IngestionOutcome:
        """
        Reprocess a failed event from its stored payload.

        Operator path for events the processor has stopped redelivering. The
        stored envelope was authenticated when it first arrived, so no
        signature is checked here.

        Raises:
            EventNotFound: Event id was never recorded
            EventNotRetryable: Event is not failed, or has used up its attempts
        """
        start = time.time()
        record = await self.event_store.get(event_id)
        if record is None:
            raise EventNotFound(f"Webhook event {event_id} not found", event_id=event_id)

        if record.status != WebhookEventStatus.FAILED:
            raise EventNotRetryable(
                f"Webhook event {event_id} is {record.status.value}, not failed",
                event_id=event_id,
                status=record.status.value,
            )
        if record.attempts >= self.max_attempts:
            raise EventNotRetryable(
                f"Webhook event {event_id} has used all {self.max_attempts} attempts",
                event_id=event_id,
                attempts=record.attempts,
            )

        reclaimed = await self.event_store.reclaim(
            event_id, WebhookEventStatus.FAILED, record.attempts, self.clock()
        )
        if not reclaimed:
            logger.info("webhook_retry_raced", event_id=event_id)
            return _in_flight(event_id)

        envelope = WebhookEnvelope.model_validate(record.payload)
        logger.info(
            "webhook_event_retry",
            event_id=event_id,
            event_type=envelope.type,
            attempt=record.attempts + 1,
        )
        outcome = await self._dispatch(envelope, record.attempts + 1)
        metrics.record_webhook_event(envelope.type, _metric_status(outcome), time.time() - start)
        return outcome

    async def _claim(self, envelope: WebhookEnvelope, now: datetime) -> Tuple[ClaimResult, int]:
        """
        Idempotency gate.

        - processed: already done
        - received within the lease: another delivery is working on it
        - failed, or received past the lease: reclaim and process again
        - absent: insert as received (unique event id decides concurrent inserts)

        Returns the claim and, for NEW / RECLAIMED, the attempt number this
        delivery owns. Finishing the event is fenced on that attempt.
        """
        record = await self.event_store.get(envelope.id)

        if record is None:
            try:
                await self.event_store.insert_received(
                    WebhookEventRecord(
                        event_id=envelope.id,
                        event_type=envelope.type,
                        status=WebhookEventStatus.RECEIVED,
                        attempts=1,
                        received_at=now,
                        last_attempt_at=now,
                        payload=envelope.model_dump(mode="json", by_alias=True),
                    )
                )
                return ClaimResult.NEW, 1
            except DuplicateEvent:
                record = await self.event_store.get(envelope.id)
                if record is None:
                    return ClaimResult.IN_FLIGHT, 0

        if record.status == WebhookEventStatus.PROCESSED:
            return ClaimResult.ALREADY_PROCESSED, record.attempts

        abandoned = (
            record.status == WebhookEventStatus.RECEIVED
            and now - record.last_attempt_at > self.processing_lease
        )
        if record.status == WebhookEventStatus.FAILED or abandoned:
            reclaimed = await self.event_store.reclaim(
                envelope.id, record.status, record.attempts, now
            )
            if reclaimed:
                logger.info(
                    "webhook_event_reclaimed",
                    event_id=envelope.id,
                    previous_status=record.status.value,
                    attempt=record.attempts + 1,
                )
                return ClaimResult.RECLAIMED, record.attempts + 1

        return ClaimResult.IN_FLIGHT, record.attempts

    async def _superseded(self, event_id: str, event_type: str, attempt: int) -> IngestionOutcome:
        """Outcome for a delivery whose claim was taken over before it finished."""
        record = await self.event_store.get(event_id)
        logger.warning(
            "webhook_event_superseded",
            event_id=event_id,
            event_type=event_type,
            attempt=attempt,
            current_attempt=record.attempts if record else None,
        )
        if record is not None and record.status == WebhookEventStatus.PROCESSED:
            return AlreadyProcessed(event_id=event_id, event_type=event_type)
        return _in_flight(event_id)

    async def _dispatch(self, envelope: WebhookEnvelope, attempt: int) -> IngestionOutcome:
        event_id, event_type = envelope.id, envelope.type
        handler = self.event_handlers.get(event_type)

        if handler is None:
            logger.info("webhook_event_ignored", event_id=event_id, event_type=event_type)
            if not await self.event_store.mark_processed(
                event_id, attempt, "ignored", self.clock()
            ):
                return await self._superseded(event_id, event_type, attempt)
            return Accepted(event_id=event_id, event_type=event_type, handled=False, detail="ignored")

        try:
            detail = await handler(envelope.data.obj)
        except MalformedEvent as e:
            if not await self.event_store.mark_failed(event_id, attempt, str(e), self.clock()):
                return await self._superseded(event_id, event_type, attempt)
            logger.error(
                "webhook_event_malformed_object",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
            )
            return Rejected(
                reason=RejectionReason.MALFORMED_EVENT, message=str(e), event_id=event_id
            )
        except Exception as e:
            if not await self.event_store.mark_failed(
                event_id, attempt, f"{type(e).__name__}: {e}", self.clock()
            ):
                return await self._superseded(event_id, event_type, attempt)
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
                error_type=type(e).__name__,
            )
            return Rejected(
                reason=RejectionReason.HANDLER_FAILED,
                message=f"Failed to process event {event_id}",
                event_id=event_id,
                retryable=True,
            )

        if not await self.event_store.mark_processed(event_id, attempt, detail, self.clock()):
            return await self._superseded(event_id, event_type, attempt)
        logger.info(
            "webhook_event_processed_successfully",
            event_id=event_id,
            event_type=event_type,
            detail=detail,
        )
        return Accepted(event_id=event_id, event_type=event_type, handled=True, detail=detail)

    async def handle_payment_intent_succeeded(self, payment_intent: Dict[str, Any]) -> str:
        """Handle payment_intent.succeeded."""
        intent_id = _require(payment_intent, "id")
        transaction_id = object_id(payment_intent.get("latest_charge")) or intent_id
        amount = payment_intent.get("amount_received") or payment_intent.get("amount")

        result = await self.orchestrator.apply_payment_succeeded(
            intent_id, transaction_id=transaction_id, amount=amount, source="webhook"
        )
        return "payment_applied" if result.applied else "payment_already_applied"

    async def handle_payment_intent_failed(self, payment_intent: Dict[str, Any]) -> str:
        """Handle payment_intent.payment_failed."""
        intent_id = _require(payment_intent, "id")
        error = payment_intent.get("last_payment_error") or {}
        reason = error.get("message") or "Payment failed"

        result = await self.orchestrator.apply_payment_failed(
            intent_id, reason=reason, status=IntentStatus.FAILED, source="webhook"
        )
        return "failure_applied" if result.applied else "failure_ignored"

    async def handle_payment_intent_canceled(self, payment_intent: Dict[str, Any]) -> str:
        """Handle payment_intent.canceled."""
        intent_id = _require(payment_intent, "id")
        reason = payment_intent.get("cancellation_reason") or "Payment canceled"

        result = await self.orchestrator.apply_payment_failed(
            intent_id, reason=reason, status=IntentStatus.CANCELED, source="webhook"
        )
        return "cancellation_applied" if result.applied else "cancellation_ignored"

    async def handle_refund_updated(self, refund: Dict[str, Any]) -> str:
        """Handle refund.created / refund.updated / charge.refund.updated."""
        refund_id = _require(refund, "id")
        status = map_refund_status(refund.get("status"))

        result = await self.orchestrator.apply_refund_update(
            refund_id,
            status=status,
            amount=refund.get("amount") or 0,
            intent_id=object_id(refund.get("payment_intent")),
        )
        return f"refund_{status.value}" if result.applied else "refund_unchanged"

    @staticmethod
    def _invoice_quote_id(invoice: Dict[str, Any]) -> Optional[int]:
        quote_id = (invoice.get("metadata") or {}).get("quote_id")
        if quote_id is None:
            return None
        try:
            return int(quote_id)
        except (TypeError, ValueError) as e:
            raise MalformedEvent("Invoice metadata quote_id is not an integer") from e

    async def handle_invoice_paid(self, invoice: Dict[str, Any]) -> str:
        """Handle invoice.paid / invoice.payment_succeeded."""
        invoice_id = _require(invoice, "id")
        quote_id = self._invoice_quote_id(invoice)
        if quote_id is None:
            logger.info("invoice_without_quote", invoice_id=invoice_id)
            return "ignored_no_quote"

        result = await self.orchestrator.apply_invoice_paid(
            quote_id,
            invoice_id=invoice_id,
            transaction_id=object_id(invoice.get("charge")),
            amount=invoice.get("amount_paid") or 0,
            intent_id=object_id(invoice.get("payment_intent")),
        )
        return "invoice_applied" if result.applied else "invoice_already_applied"

    async def handle_invoice_payment_failed(self, invoice: Dict[str, Any]) -> str:
        """Handle invoice.payment_failed."""
        invoice_id = _require(invoice, "id")
        quote_id = self._invoice_quote_id(invoice)
        if quote_id is None:
            logger.info("invoice_without_quote", invoice_id=invoice_id)
            return "ignored_no_quote"

        result = await self.orchestrator.apply_invoice_failed(
            quote_id, invoice_id=invoice_id, reason="Invoice payment failed"
        )
        return "invoice_failure_applied" if result.applied else "invoice_failure_ignored"

    async def handle_dispute_created(self, dispute: Dict[str, Any]) -> str:
        """Handle charge.dispute.created. Records the dispute reference and notifies once."""
        dispute_id = _require(dispute, "id")
        intent_id = object_id(dispute.get("payment_intent"))
        if not intent_id:
            logger.warning("dispute_without_payment_intent", dispute_id=dispute_id)
            return "ignored_no_intent"

        result = await self.orchestrator.record_dispute(
            intent_id,
            dispute_id=dispute_id,
            amount=dispute.get("amount") or 0,
            reason=dispute.get("reason"),
        )
        return "dispute_recorded" if result.applied else "dispute_already_recorded"
