"""
API routes for quotes, payments and processor webhooks.

Domain errors propagate to the application's QuotePaymentError handler.
"""
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from quote_payments.bootstrap import Services
from quote_payments.core.errors import ActorNotPermitted
from quote_payments.core.models import ActorContext, ActorRole, PaymentIntent, Quote, QuoteStatus
from quote_payments.integrations.webhook_handler import (
    Accepted,
    AlreadyProcessed,
    IngestionOutcome,
    RejectionReason,
)

from .schemas import (
    ConfirmPaymentRequest,
    CreateQuoteRequest,
    ExpireQuotesResponse,
    FeeBreakdownResponse,
    HealthCheckResponse,
    PaymentIntentResponse,
    QuoteResponse,
    RefundRequest,
    RefundResponse,
    RejectQuoteRequest,
    UpdateQuoteRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
quote_router = APIRouter(prefix="/quotes", tags=["quotes"])
payment_router = APIRouter(prefix="/payment-intents", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])

REJECTION_STATUS_CODES = {
    RejectionReason.SIGNATURE_INVALID: status.HTTP_400_BAD_REQUEST,
    RejectionReason.MALFORMED_EVENT: status.HTTP_400_BAD_REQUEST,
    RejectionReason.EVENT_IN_FLIGHT: status.HTTP_409_CONFLICT,
    RejectionReason.HANDLER_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_services(request: Request) -> Services:
    """Service container attached to the application at startup."""
    return request.app.state.services


def get_actor(
    actor_id: int = Header(..., alias="X-Actor-Id"),
    actor_role: ActorRole = Header(..., alias="X-Actor-Role"),
) -> ActorContext:
    """Caller identity, set by the upstream auth layer."""
    return ActorContext(actor_id=actor_id, role=actor_role)


def quote_response(quote: Quote) -> QuoteResponse:
    return QuoteResponse.model_validate(quote)


def intent_response(intent: PaymentIntent) -> PaymentIntentResponse:
    return PaymentIntentResponse.model_validate(intent)


# ============================================================================
# QUOTES
# ============================================================================


@quote_router.post(
    "",
    response_model=QuoteResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a quote",
    description="Create a draft quote; totals are computed from the line items",
)
async def create_quote(
    request: CreateQuoteRequest,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> QuoteResponse:
    logger.info(
        "api_create_quote_request",
        provider_id=actor.actor_id,
        client_id=request.client_id,
        line_items=len(request.line_items),
    )
    quote = await services.quote_service.create_quote(actor, request.to_draft())
    return quote_response(quote)


@quote_router.get(
    "",
    response_model=List[QuoteResponse],
    summary="List my quotes",
    description="The calling provider's quotes, newest first, optionally filtered by status",
)
async def list_quotes(
    status_filter: Optional[List[QuoteStatus]] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> List[QuoteResponse]:
    quotes = await services.quote_service.list_quotes(
        actor, statuses=status_filter, limit=limit, offset=offset
    )
    return [quote_response(quote) for quote in quotes]


@quote_router.get(
    "/by-number/{quote_number}",
    response_model=QuoteResponse,
    summary="Get a quote by number",
)
async def get_quote_by_number(
    quote_number: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> QuoteResponse:
    quote = await services.quote_service.get_quote_by_number(quote_number, actor)
    return quote_response(quote)


@quote_router.get("/{quote_id}", response_model=QuoteResponse, summary="Get a quote")
async def get_quote(
    quote_id: int,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> QuoteResponse:
    quote = await services.quote_service.get_quote(quote_id, actor)
    return quote_response(quote)


@quote_router.patch(
    "/{quote_id}",
    response_model=QuoteResponse,
    summary="Edit a draft quote",
)
async def update_quote(
    quote_id: int,
    request: UpdateQuoteRequest,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> QuoteResponse:
    quote = await services.quote_service.update_quote(quote_id, actor, request.to_changes())
    return quote_response(quote)


@quote_router.delete(
    "/{quote_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a draft quote",
)
async def delete_quote(
    quote_id: int,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> Response:
    await services.quote_service.delete_quote(quote_id, actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@quote_router.post("/{quote_id}/send", response_model=QuoteResponse, summary="Send to client")
async def send_quote(
    quote_id: int,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> QuoteResponse:
    return quote_response(await services.quote_service.send_quote(quote_id, actor))


@quote_router.post("/{quote_id}/view", response_model=QuoteResponse, summary="Record a view")
async def view_quote(
    quote_id: int,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> QuoteResponse:
    return quote_response(await services.quote_service.view_quote(quote_id, actor))


@quote_router.post("/{quote_id}/accept", response_model=QuoteResponse, summary="Accept")
async def accept_quote(
    quote_id: int,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> QuoteResponse:
    return quote_response(await services.quote_service.accept_quote(quote_id, actor))


@quote_router.post("/{quote_id}/reject", response_model=QuoteResponse, summary="Reject")
async def reject_quote(
    quote_id: int,
    request: Optional[RejectQuoteRequest] = None,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> QuoteResponse:
    reason = request.reason if request is not None else None
    return quote_response(await services.quote_service.reject_quote(quote_id, actor, reason))


@quote_router.post("/{quote_id}/cancel", response_model=QuoteResponse, summary="Cancel")
async def cancel_quote(
    quote_id: int,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> QuoteResponse:
    return quote_response(await services.quote_service.cancel_quote(quote_id, actor))


@quote_router.get(
    "/{quote_id}/fees",
    response_model=FeeBreakdownResponse,
    summary="Fee breakdown",
    description="Processor and platform fees on the quote total, and the provider's net",
)
async def get_fees(
    quote_id: int,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> FeeBreakdownResponse:
    await services.quote_service.get_quote(quote_id, actor)
    breakdown = await services.orchestrator.fee_breakdown(quote_id)
    return FeeBreakdownResponse.model_validate(breakdown)


# ============================================================================
# PAYMENTS
# ============================================================================


@quote_router.post(
    "/{quote_id}/payment-intents",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start paying a quote",
    description="Register a payment intent for the quote total",
)
async def create_payment_intent(
    quote_id: int,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> PaymentIntentResponse:
    intent = await services.orchestrator.create_payment_intent_for_quote(quote_id, actor)
    logger.info(
        "api_payment_intent_created",
        quote_id=quote_id,
        payment_intent_id=intent.intent_id,
        amount=intent.amount,
    )
    return intent_response(intent)


@quote_router.post(
    "/{quote_id}/pay",
    response_model=QuoteResponse,
    summary="Pay and accept",
    description="Create and confirm a payment intent in one call",
)
async def pay_quote(
    quote_id: int,
    request: ConfirmPaymentRequest,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> QuoteResponse:
    quote = await services.orchestrator.pay_and_accept(quote_id, request.payment_method, actor)
    return quote_response(quote)


@payment_router.get(
    "/{intent_id}",
    response_model=PaymentIntentResponse,
    summary="Get a payment intent",
)
async def get_payment_intent(
    intent_id: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> PaymentIntentResponse:
    intent = await services.orchestrator.get_payment_intent(intent_id)
    await services.quote_service.get_quote(intent.quote_id, actor)
    return intent_response(intent)


@payment_router.post(
    "/{intent_id}/confirm",
    response_model=QuoteResponse,
    summary="Confirm a payment",
    description="Confirm the intent with a payment method and apply the outcome",
)
async def confirm_payment(
    intent_id: str,
    request: ConfirmPaymentRequest,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> QuoteResponse:
    intent = await services.orchestrator.get_payment_intent(intent_id)
    quote = await services.quote_service.get_quote(intent.quote_id, actor)
    if actor.role not in (ActorRole.CLIENT, ActorRole.SYSTEM):
        raise ActorNotPermitted("Only the quote's client may pay for it", quote_id=quote.id)

    quote = await services.orchestrator.confirm_payment(intent_id, request.payment_method)
    logger.info(
        "api_payment_confirmed",
        quote_id=quote.id,
        payment_intent_id=intent_id,
        payment_status=quote.payment_status.value,
    )
    return quote_response(quote)


@quote_router.post(
    "/{quote_id}/refunds",
    response_model=QuoteResponse,
    summary="Refund a quote",
    description="Create a full or partial refund of the captured payment",
)
async def refund_quote(
    quote_id: int,
    request: RefundRequest,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> QuoteResponse:
    logger.info(
        "api_refund_request",
        quote_id=quote_id,
        amount_cents=request.amount_cents,
        reason=request.reason,
    )
    quote = await services.orchestrator.refund_payment(
        quote_id, actor, amount=request.amount_cents, reason=request.reason
    )
    return quote_response(quote)


@quote_router.get(
    "/{quote_id}/refunds",
    response_model=List[RefundResponse],
    summary="List refunds",
)
async def list_refunds(
    quote_id: int,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> List[RefundResponse]:
    await services.quote_service.get_quote(quote_id, actor)
    refunds = await services.payments.list_refunds(quote_id)
    return [RefundResponse.model_validate(refund) for refund in refunds]


# ============================================================================
# WEBHOOKS
# ============================================================================


def webhook_outcome_response(outcome: IngestionOutcome) -> JSONResponse:
    """Map an ingestion outcome to the status code the processor acts on."""
    if isinstance(outcome, Accepted):
        content = WebhookResponse(
            status="accepted",
            event_id=outcome.event_id,
            event_type=outcome.event_type,
            detail=outcome.detail,
        )
        return JSONResponse(status_code=status.HTTP_200_OK, content=content.model_dump())

    if isinstance(outcome, AlreadyProcessed):
        content = WebhookResponse(
            status="already_processed",
            event_id=outcome.event_id,
            event_type=outcome.event_type,
        )
        return JSONResponse(status_code=status.HTTP_200_OK, content=content.model_dump())

    logger.warning(
        "api_webhook_rejected",
        reason=outcome.reason.value,
        event_id=outcome.event_id,
        retryable=outcome.retryable,
    )
    content = WebhookResponse(
        status="rejected",
        event_id=outcome.event_id,
        detail=outcome.reason.value,
    )
    return JSONResponse(
        status_code=REJECTION_STATUS_CODES[outcome.reason], content=content.model_dump()
    )


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify, deduplicate and apply a Stripe event",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """
    Handle Stripe webhook events.

    Non-2xx responses make Stripe redeliver, so only retryable rejections
    should be answered with 409/500.
    """
    body = await request.body()
    outcome = await services.webhook_handler.ingest(body, stripe_signature)
    return webhook_outcome_response(outcome)


# ============================================================================
# ADMIN
# ============================================================================


@admin_router.post(
    "/webhooks/{event_id}/retry",
    response_model=WebhookResponse,
    summary="Retry a failed webhook event",
    description="Reprocess a failed event from its stored payload",
)
async def retry_webhook_event(
    event_id: str,
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> JSONResponse:
    if actor.role != ActorRole.SYSTEM:
        raise ActorNotPermitted("Only the system may retry webhook events")

    outcome = await services.webhook_handler.retry_failed_event(event_id)
    logger.info("api_webhook_retry_completed", event_id=event_id, outcome=type(outcome).__name__)
    return webhook_outcome_response(outcome)


@admin_router.post(
    "/quotes/expire",
    response_model=ExpireQuotesResponse,
    summary="Expire overdue quotes",
    description="Expire every sent or viewed quote whose deadline has passed",
)
async def expire_quotes(
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> ExpireQuotesResponse:
    if actor.role != ActorRole.SYSTEM:
        raise ActorNotPermitted("Only the system may run the expiry sweep")

    expired = await services.quote_service.expire_overdue()
    logger.info("api_expiry_sweep_completed", expired=len(expired))
    return ExpireQuotesResponse(expired=expired, count=len(expired))


# ============================================================================
# MONITORING
# ============================================================================


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await services.health_check.readiness()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
)
async def readiness(
    response: Response, services: Services = Depends(get_services)
) -> Dict[str, Any]:
    result = await services.health_check.readiness()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Metrics in Prometheus exposition format",
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
