"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from quote_payments.core.models import IntentStatus, PaymentStatus, QuoteStatus, RefundStatus
from quote_payments.core.money import LineItem
from quote_payments.core.quote_service import QuoteChanges, QuoteDraft


class CreateQuoteRequest(BaseModel):
    """Request schema for creating a draft quote."""

    client_id: int = Field(..., gt=0, description="Client the quote is addressed to")
    title: str = Field(..., min_length=1, max_length=200, description="Short title")
    line_items: List[LineItem] = Field(..., min_length=1, description="Priced line items")
    tax_enabled: bool = Field(default=True, description="Apply tax to the subtotal")
    job_id: Optional[int] = Field(default=None, description="Related job, if any")
    notes: Optional[str] = Field(default=None, description="Free-text notes for the client")
    valid_days: Optional[int] = Field(
        default=None, ge=1, le=365, description="Days the quote stays open once created"
    )
    currency: Optional[str] = Field(
        default=None, min_length=3, max_length=3, description="Currency code (e.g., aud)"
    )

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Currency codes are stored lowercase."""
        return v.lower() if v is not None else v

    def to_draft(self) -> QuoteDraft:
        return QuoteDraft(**self.model_dump())

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "client_id": 42,
                    "title": "Bathroom renovation",
                    "line_items": [
                        {
                            "description": "Tiling labour",
                            "quantity": "8",
                            "unit_price": 8500,
                            "item_type": "labour",
                        },
                        {
                            "description": "Floor tiles",
                            "quantity": "12.5",
                            "unit_price": 4200,
                            "item_type": "material",
                        },
                    ],
                    "tax_enabled": True,
                    "valid_days": 30,
                }
            ]
        }
    }


class UpdateQuoteRequest(BaseModel):
    """Request schema for editing a draft quote. Omitted fields are unchanged."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    line_items: Optional[List[LineItem]] = Field(default=None, min_length=1)
    tax_enabled: Optional[bool] = None
    notes: Optional[str] = None
    valid_days: Optional[int] = Field(default=None, ge=1, le=365)

    def to_changes(self) -> QuoteChanges:
        return QuoteChanges(**self.model_dump())


class RejectQuoteRequest(BaseModel):
    """Request schema for rejecting a quote."""

    reason: Optional[str] = Field(default=None, max_length=1000, description="Why the quote was declined")


class ConfirmPaymentRequest(BaseModel):
    """Request schema for confirming a payment intent."""

    payment_method: str = Field(..., min_length=1, description="Processor payment method reference")

    model_config = {"json_schema_extra": {"examples": [{"payment_method": "pm_card_visa"}]}}


class RefundRequest(BaseModel):
    """Request schema for refunding a paid quote."""

    amount_cents: Optional[int] = Field(
        default=None, gt=0, description="Partial refund amount (full refund if not specified)"
    )
    reason: Optional[str] = Field(default=None, description="Refund reason")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"amount_cents": 5000, "reason": "Materials not used"},
                {"reason": "Job cancelled"},
            ]
        }
    }


class QuoteResponse(BaseModel):
    """Response schema for a quote."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    quote_number: str
    provider_id: int
    client_id: int
    job_id: Optional[int] = None
    title: str
    notes: Optional[str] = None
    line_items: List[LineItem]
    tax_enabled: bool
    subtotal: int = Field(..., description="Subtotal in minor units")
    tax: int = Field(..., description="Tax in minor units")
    total: int = Field(..., description="Total in minor units")
    currency: str
    valid_until: datetime
    status: QuoteStatus
    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None
    payment_status: PaymentStatus
    payment_intent_id: Optional[str] = None
    amount_paid: int
    paid_at: Optional[datetime] = None
    payment_failure_reason: Optional[str] = None
    amount_refunded: int
    refunded_at: Optional[datetime] = None
    dispute_id: Optional[str] = None
    version: int
    created_at: datetime
    updated_at: datetime


class PaymentIntentResponse(BaseModel):
    """Response schema for a payment intent."""

    model_config = ConfigDict(from_attributes=True)

    intent_id: str = Field(..., description="Processor PaymentIntent ID")
    quote_id: int
    attempt: int
    amount: int = Field(..., description="Amount in minor units")
    currency: str
    status: IntentStatus
    client_secret: Optional[str] = Field(
        default=None, description="Secret the client uses to complete payment"
    )
    processor_fee: int
    platform_fee: int
    net_payable: int
    created_at: datetime


class FeeBreakdownResponse(BaseModel):
    """Response schema for the fees on a quote total."""

    model_config = ConfigDict(from_attributes=True)

    gross: int
    processor_fee: int
    platform_fee: int
    total_fees: int
    net_payable: int


class RefundResponse(BaseModel):
    """Response schema for a refund."""

    model_config = ConfigDict(from_attributes=True)

    refund_id: str
    quote_id: int
    intent_id: Optional[str] = None
    amount: int
    status: RefundStatus
    reason: Optional[str] = None
    created_at: datetime


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="accepted, already_processed or rejected")
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    detail: Optional[str] = None


class ExpireQuotesResponse(BaseModel):
    """Response schema for the expiry sweep."""

    expired: List[int] = Field(..., description="Ids of quotes that were expired")
    count: int


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    message: Optional[str] = None
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual component checks")
