"""Minor-unit money helper tests."""

from decimal import Decimal

from landedcost.services.money import apply_factor, format_minor, percent_of, round_minor, to_minor


class TestRounding:
    def test_half_up(self):
        assert round_minor(Decimal("0.5")) == 1
        assert round_minor(Decimal("1.5")) == 2
        assert round_minor(Decimal("2.5")) == 3
        assert round_minor(Decimal("2.49")) == 2

    def test_apply_factor(self):
        assert apply_factor(1000, Decimal("1.25")) == 1250
        assert apply_factor(999, Decimal("1.5")) == 1499  # 1498.5

    def test_percent_of(self):
        assert percent_of(10000, Decimal("15")) == 1500
        assert percent_of(1003, Decimal("2.5")) == 25
        assert percent_of(333, Decimal("15")) == 50  # 49.95

    def test_to_minor(self):
        assert to_minor(12.5) == 1250
        assert to_minor("12.345") == 1235
        assert to_minor(Decimal("0.01")) == 1

    def test_format_minor(self):
        assert format_minor(1250) == "12.50 USD"
        assert format_minor(5, "TRY") == "0.05 TRY"
