"""
Money arithmetic for quotes and payment fees.

All amounts are integers in the currency's minor unit (cents). Intermediate
arithmetic is exact (Decimal) and round-half-up is applied once, when a value
leaves the calculator. Decimal conversion happens only at the boundaries
(to_minor_units / to_display).
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Iterable, Sequence

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidAmount

BPS_DIVISOR = Decimal("10000")
MINOR_UNIT = Decimal("1")
CENTS_PER_UNIT = Decimal("100")


class LineItemType(str, Enum):
    """Kinds of work or goods a quote line can describe."""

    LABOUR = "labour"
    MATERIAL = "material"
    EQUIPMENT = "equipment"
    SUBCONTRACTOR = "subcontractor"
    PERMIT = "permit"
    TRAVEL = "travel"
    MARKUP = "markup"
    DISCOUNT = "discount"


class LineItem(BaseModel):
    """A single priced line on a quote. ``unit_price`` is in minor units."""

    model_config = ConfigDict(frozen=True)

    description: str = Field(..., max_length=500)
    quantity: Decimal
    unit_price: int
    item_type: LineItemType = LineItemType.LABOUR


class QuoteTotals(BaseModel):
    """Computed quote amounts. ``total == subtotal + tax`` always holds."""

    model_config = ConfigDict(frozen=True)

    subtotal: int
    tax: int
    total: int


class FeeBreakdown(BaseModel):
    """Fees deducted from a gross charge and the net paid out to the provider."""

    model_config = ConfigDict(frozen=True)

    gross: int
    processor_fee: int
    platform_fee: int
    net_payable: int

    @property
    def total_fees(self) -> int:
        return self.processor_fee + self.platform_fee


class FeeSchedule(BaseModel):
    """
    Rates used by the calculator.

    Percentages are basis points (1 bps = 0.01%), fixed fees are minor units.
    """

    model_config = ConfigDict(frozen=True)

    tax_rate_bps: int = Field(default=1000, ge=0)
    processor_fee_bps: int = Field(default=175, ge=0)
    processor_fixed_fee: int = Field(default=30, ge=0)
    platform_fee_bps: int = Field(default=500, ge=0)
    max_transaction: int = Field(default=10_000_000, gt=0)

    @classmethod
    def from_settings(cls, settings) -> FeeSchedule:
        """Build the schedule from application settings."""
        return cls(
            tax_rate_bps=settings.tax_rate_bps,
            processor_fee_bps=settings.processor_fee_bps,
            processor_fixed_fee=settings.processor_fixed_fee_cents,
            platform_fee_bps=settings.platform_fee_bps,
            max_transaction=settings.max_transaction_cents,
        )


def _round(value: Decimal) -> int:
    return int(value.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP))


def _bps(amount: Decimal, bps: int) -> Decimal:
    return amount * Decimal(bps) / BPS_DIVISOR


def _check_amount(amount: int, schedule: FeeSchedule, label: str) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"{label} must be an integer amount in minor units", field=label)
    if amount < 0:
        raise InvalidAmount(f"{label} cannot be negative", field=label, amount=amount)
    if amount > schedule.max_transaction:
        raise InvalidAmount(
            f"{label} exceeds the maximum transaction amount",
            field=label,
            amount=amount,
            maximum=schedule.max_transaction,
        )


def calculate_subtotal(items: Iterable[LineItem]) -> Decimal:
    """
    Sum line items exactly.

    Args:
        items: Quote line items

    Returns:
        Decimal: Unrounded subtotal in minor units

    Raises:
        InvalidAmount: If a quantity or unit price is negative
    """
    subtotal = Decimal(0)
    for index, item in enumerate(items):
        if item.quantity < 0:
            raise InvalidAmount(
                "Line item quantity cannot be negative", line=index, quantity=str(item.quantity)
            )
        if item.unit_price < 0:
            raise InvalidAmount(
                "Line item unit price cannot be negative", line=index, unit_price=item.unit_price
            )
        subtotal += item.quantity * Decimal(item.unit_price)
    return subtotal


def calculate_quote_totals(
    items: Sequence[LineItem], tax_enabled: bool, schedule: FeeSchedule
) -> QuoteTotals:
    """
    Compute subtotal, tax and total for a quote.

    Tax is computed from the exact subtotal; both are rounded half-up once and
    the total is their sum.

    Args:
        items: Quote line items
        tax_enabled: Whether tax applies to this quote
        schedule: Fee schedule carrying the tax rate

    Returns:
        QuoteTotals: Rounded totals in minor units

    Raises:
        InvalidAmount: On negative inputs or a total above the maximum
    """
    exact_subtotal = calculate_subtotal(items)
    exact_tax = _bps(exact_subtotal, schedule.tax_rate_bps) if tax_enabled else Decimal(0)

    subtotal = _round(exact_subtotal)
    tax = _round(exact_tax)
    total = subtotal + tax

    if total > schedule.max_transaction:
        raise InvalidAmount(
            "Quote total exceeds the maximum transaction amount",
            total=total,
            maximum=schedule.max_transaction,
        )
    return QuoteTotals(subtotal=subtotal, tax=tax, total=total)


def calculate_fees(gross: int, schedule: FeeSchedule) -> FeeBreakdown:
    """
    Compute processor and platform fees for a gross charge.

    Args:
        gross: Charged amount in minor units
        schedule: Fee schedule

    Returns:
        FeeBreakdown: Fees and net payable (never negative)

    Raises:
        InvalidAmount: If gross is negative or above the maximum
    """
    _check_amount(gross, schedule, "gross")
    exact_gross = Decimal(gross)

    processor_fee = _round(_bps(exact_gross, schedule.processor_fee_bps)) + schedule.processor_fixed_fee
    if gross == 0:
        processor_fee = 0
    platform_fee = _round(_bps(exact_gross, schedule.platform_fee_bps))
    net_payable = max(0, gross - processor_fee - platform_fee)

    return FeeBreakdown(
        gross=gross,
        processor_fee=processor_fee,
        platform_fee=platform_fee,
        net_payable=net_payable,
    )


def calculate_refund_fees(original: int, refund: int, schedule: FeeSchedule) -> FeeBreakdown:
    """
    Prorate the original charge's fees over a (partial) refund.

    The returned breakdown describes the refunded slice: ``gross`` is the refund
    amount, the fees are the share of the original fees attributable to it and
    ``net_payable`` is what is clawed back from the provider.
    """
    _check_amount(original, schedule, "original")
    _check_amount(refund, schedule, "refund")
    if refund > original:
        raise InvalidAmount(
            "Refund cannot exceed the original charge", refund=refund, original=original
        )

    fees = calculate_fees(original, schedule)
    if original == 0:
        return FeeBreakdown(gross=0, processor_fee=0, platform_fee=0, net_payable=0)

    ratio = Decimal(refund) / Decimal(original)
    processor_fee = _round(Decimal(fees.processor_fee) * ratio)
    platform_fee = _round(Decimal(fees.platform_fee) * ratio)
    return FeeBreakdown(
        gross=refund,
        processor_fee=processor_fee,
        platform_fee=platform_fee,
        net_payable=max(0, refund - processor_fee - platform_fee),
    )


def to_minor_units(value: Decimal | str | int) -> int:
    """
    Convert a major-unit decimal value (e.g. "12.34") to minor units.

    Raises:
        InvalidAmount: If the value is not a finite number
    """
    try:
        amount = Decimal(str(value))
    except InvalidOperation as e:
        raise InvalidAmount(f"Not a valid amount: {value!r}") from e
    if not amount.is_finite():
        raise InvalidAmount(f"Not a valid amount: {value!r}")
    return _round(amount * CENTS_PER_UNIT)


def to_display(minor: int) -> Decimal:
    """Convert minor units to a two-place major-unit decimal for display."""
    return (Decimal(minor) / CENTS_PER_UNIT).quantize(Decimal("0.01"))
