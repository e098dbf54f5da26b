"""
Tests for line-item and document total arithmetic in freelancedesk/money.py.
"""
from decimal import Decimal

from freelancedesk.money import compute_aggregate, compute_item_total, quantize_money


class TestComputeItemTotal:
    """Tests for compute_item_total."""

    def test_quantity_price_and_tax(self):
        """2 x 100.00 with 10% tax is 220.00."""
        total = compute_item_total(Decimal("2"), Decimal("100"), Decimal("10"), Decimal("0"))
        assert total == Decimal("220.00")

    def test_discount_applies_before_tax(self):
        """Tax is charged on the discounted net amount."""
        total = compute_item_total(Decimal("1"), Decimal("200"), Decimal("10"), Decimal("10"))
        assert total == Decimal("198.00")

    def test_discount_only(self):
        total = compute_item_total(Decimal("1"), Decimal("200"), None, Decimal("10"))
        assert total == Decimal("180.00")

    def test_missing_inputs_are_neutral(self):
        """Quantity defaults to 1; price, tax and discount default to 0."""
        assert compute_item_total() == Decimal("0.00")
        assert compute_item_total(unit_price=Decimal("50")) == Decimal("50.00")

    def test_percent_rounded_to_four_places_first(self):
        """12.345% becomes 0.1235 before it is applied, not 0.12345."""
        total = compute_item_total(Decimal("1"), Decimal("1000"), Decimal("12.345"), Decimal("0"))
        assert total == Decimal("1123.50")

    def test_final_total_rounds_half_up(self):
        assert compute_item_total(Decimal("1"), Decimal("0.125")) == Decimal("0.13")
        assert compute_item_total(Decimal("3"), Decimal("0.335")) == Decimal("1.01")

    def test_negative_inputs_are_not_rejected(self):
        assert compute_item_total(Decimal("-1"), Decimal("10")) == Decimal("-10.00")

    def test_same_inputs_same_total(self):
        args = (Decimal("3.5"), Decimal("19.99"), Decimal("7.25"), Decimal("2.5"))
        assert compute_item_total(*args) == compute_item_total(*args)

    def test_accepts_plain_numbers(self):
        assert compute_item_total(2, "12.50", 0, 0) == Decimal("25.00")


class TestComputeAggregate:
    """Tests for compute_aggregate."""

    def test_subtotal_and_total(self):
        aggregate = compute_aggregate(
            [Decimal("220.00"), Decimal("30.50")],
            Decimal("10"),
            Decimal("5"),
        )
        assert aggregate.subtotal == Decimal("250.50")
        assert aggregate.total_amount == Decimal("255.50")

    def test_no_items(self):
        aggregate = compute_aggregate([])
        assert aggregate.subtotal == Decimal("0.00")
        assert aggregate.total_amount == Decimal("0.00")

    def test_total_is_not_floored_at_zero(self):
        """A discount larger than the subtotal yields a negative total."""
        aggregate = compute_aggregate([Decimal("100.00")], Decimal("0"), Decimal("300"))
        assert aggregate.total_amount == Decimal("-200.00")


def test_quantize_money_half_up():
    assert quantize_money(Decimal("2.675")) == Decimal("2.68")
    assert quantize_money(Decimal("-2.675")) == Decimal("-2.68")
