"""
Unit tests for quote totals and fee calculation.
"""
from decimal import Decimal
from typing import List

import pytest

from quote_payments.config import Settings
from quote_payments.core.errors import InvalidAmount
from quote_payments.core.money import (
    FeeSchedule,
    LineItem,
    calculate_fees,
    calculate_quote_totals,
    calculate_refund_fees,
    to_display,
    to_minor_units,
)

SCHEDULE = FeeSchedule()


def item(quantity: str, unit_price: int) -> LineItem:
    return LineItem(description="Work", quantity=Decimal(quantity), unit_price=unit_price)


class TestQuoteTotals:
    """Test suite for calculate_quote_totals."""

    @pytest.mark.unit
    def test_sample_quote_totals(self, sample_line_items: List[LineItem]) -> None:
        totals = calculate_quote_totals(sample_line_items, True, SCHEDULE)

        assert totals.subtotal == 120500
        assert totals.tax == 12050
        assert totals.total == 132550

    @pytest.mark.unit
    def test_total_is_subtotal_plus_tax(self) -> None:
        """Tax rounding never breaks total = subtotal + tax."""
        for quantity in ("0.333", "1.005", "2.5", "7.777", "19.99"):
            totals = calculate_quote_totals([item(quantity, 1999)], True, SCHEDULE)
            assert totals.total == totals.subtotal + totals.tax

    @pytest.mark.unit
    def test_rounds_once_at_the_end(self) -> None:
        """Three half-cent lines sum to 1.5 and round to 2, not 3."""
        items = [item("0.5", 1), item("0.5", 1), item("0.5", 1)]

        totals = calculate_quote_totals(items, False, SCHEDULE)

        assert totals.subtotal == 2

    @pytest.mark.unit
    def test_tax_rounds_half_up(self) -> None:
        totals = calculate_quote_totals([item("1", 5)], True, SCHEDULE)

        assert totals.subtotal == 5
        assert totals.tax == 1
        assert totals.total == 6

    @pytest.mark.unit
    def test_tax_disabled(self, sample_line_items: List[LineItem]) -> None:
        totals = calculate_quote_totals(sample_line_items, False, SCHEDULE)

        assert totals.tax == 0
        assert totals.total == totals.subtotal == 120500

    @pytest.mark.unit
    def test_empty_quote_is_zero(self) -> None:
        totals = calculate_quote_totals([], True, SCHEDULE)

        assert (totals.subtotal, totals.tax, totals.total) == (0, 0, 0)

    @pytest.mark.unit
    def test_negative_quantity_rejected(self) -> None:
        with pytest.raises(InvalidAmount, match="quantity"):
            calculate_quote_totals([item("-1", 100)], True, SCHEDULE)

    @pytest.mark.unit
    def test_negative_unit_price_rejected(self) -> None:
        with pytest.raises(InvalidAmount, match="unit price"):
            calculate_quote_totals([item("1", -100)], True, SCHEDULE)

    @pytest.mark.unit
    def test_total_above_maximum_rejected(self) -> None:
        with pytest.raises(InvalidAmount, match="maximum"):
            calculate_quote_totals([item("1", 10_000_000)], True, SCHEDULE)

    @pytest.mark.unit
    def test_total_at_maximum_allowed(self) -> None:
        totals = calculate_quote_totals([item("1", 10_000_000)], False, SCHEDULE)

        assert totals.total == 10_000_000


class TestFees:
    """Test suite for calculate_fees and calculate_refund_fees."""

    @pytest.mark.unit
    def test_fee_breakdown(self) -> None:
        fees = calculate_fees(132550, SCHEDULE)

        assert fees.processor_fee == 2350  # 2319.625 -> 2320, plus 30 fixed
        assert fees.platform_fee == 6628  # 6627.5 rounds half up
        assert fees.total_fees == 8978
        assert fees.net_payable == 123572
        assert fees.gross == fees.net_payable + fees.total_fees

    @pytest.mark.unit
    def test_zero_gross_has_no_fees(self) -> None:
        fees = calculate_fees(0, SCHEDULE)

        assert fees.processor_fee == 0
        assert fees.platform_fee == 0
        assert fees.net_payable == 0

    @pytest.mark.unit
    def test_net_payable_never_negative(self) -> None:
        fees = calculate_fees(10, SCHEDULE)

        assert fees.processor_fee == 30
        assert fees.platform_fee == 1
        assert fees.net_payable == 0

    @pytest.mark.unit
    @pytest.mark.parametrize("gross", [-1, 10_000_001, 10.5, True])
    def test_invalid_gross_rejected(self, gross: object) -> None:
        with pytest.raises(InvalidAmount):
            calculate_fees(gross, SCHEDULE)  # type: ignore[arg-type]

    @pytest.mark.unit
    def test_partial_refund_prorates_fees(self) -> None:
        fees = calculate_refund_fees(10000, 5000, SCHEDULE)

        assert fees.gross == 5000
        assert fees.processor_fee == 103  # half of 205, rounded half up
        assert fees.platform_fee == 250
        assert fees.net_payable == 4647

    @pytest.mark.unit
    def test_full_refund_returns_all_fees(self) -> None:
        original = calculate_fees(10000, SCHEDULE)
        refund = calculate_refund_fees(10000, 10000, SCHEDULE)

        assert refund.processor_fee == original.processor_fee
        assert refund.platform_fee == original.platform_fee

    @pytest.mark.unit
    def test_refund_above_original_rejected(self) -> None:
        with pytest.raises(InvalidAmount, match="exceed"):
            calculate_refund_fees(10000, 10001, SCHEDULE)

    @pytest.mark.unit
    def test_schedule_from_settings(self, test_settings: Settings) -> None:
        schedule = FeeSchedule.from_settings(test_settings)

        assert schedule.tax_rate_bps == 1000
        assert schedule.processor_fee_bps == 175
        assert schedule.processor_fixed_fee == 30
        assert schedule.platform_fee_bps == 500
        assert schedule.max_transaction == 10_000_000


class TestConversions:
    """Test suite for boundary conversions."""

    @pytest.mark.unit
    def test_to_minor_units(self) -> None:
        assert to_minor_units("12.34") == 1234
        assert to_minor_units(Decimal("0.005")) == 1
        assert to_minor_units(7) == 700

    @pytest.mark.unit
    @pytest.mark.parametrize("value", ["abc", "NaN", "Infinity"])
    def test_to_minor_units_rejects_non_numbers(self, value: str) -> None:
        with pytest.raises(InvalidAmount):
            to_minor_units(value)

    @pytest.mark.unit
    def test_to_display(self) -> None:
        assert to_display(132550) == Decimal("1325.50")
        assert to_display(5) == Decimal("0.05")
